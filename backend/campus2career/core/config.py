import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[2]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)


def _env_float(name: str, default: float) -> float:
    try:
        return float(str(os.getenv(name) or default).strip())
    except ValueError:
        return float(default)


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name) or default).strip())
    except ValueError:
        return int(default)


API_BASE_URL = str(os.getenv("C2C_API_BASE_URL") or "http://localhost:5000").strip().rstrip("/")
API_TOKEN = str(os.getenv("C2C_API_TOKEN") or "").strip()
HTTP_TIMEOUT_SEC = max(1.0, _env_float("C2C_HTTP_TIMEOUT_SEC", 10.0))

SILENCE_TIMEOUT_SEC = max(0.5, _env_float("TURN_SILENCE_TIMEOUT_SEC", 5.0))
SPEECH_GRACE_DELAY_SEC = max(0.0, _env_float("TURN_SPEECH_GRACE_DELAY_SEC", 1.5))
NEXT_QUESTION_DELAY_SEC = max(0.0, _env_float("TURN_NEXT_QUESTION_DELAY_SEC", 0.2))
MAX_SILENT_CYCLES = max(0, _env_int("TURN_MAX_SILENT_CYCLES", 0))  # 0 = wait forever

OPENAI_API_KEY = str(os.getenv("OPENAI_API_KEY") or "").strip()
FEEDBACK_MODEL = str(os.getenv("FEEDBACK_MODEL") or "gpt-4o-mini").strip()
FEEDBACK_TIMEOUT_SEC = max(1.0, _env_float("FEEDBACK_TIMEOUT_SEC", 20.0))

DEFAULT_TOTAL_QUESTIONS = max(1, min(_env_int("C2C_DEFAULT_TOTAL_QUESTIONS", 10), 20))


@dataclass(frozen=True)
class TurnConfig:
    """Timing and endpoint settings handed to a TurnController at construction."""

    api_base_url: str = API_BASE_URL
    silence_timeout_sec: float = SILENCE_TIMEOUT_SEC
    speech_grace_delay_sec: float = SPEECH_GRACE_DELAY_SEC
    next_question_delay_sec: float = NEXT_QUESTION_DELAY_SEC
    max_silent_cycles: int = MAX_SILENT_CYCLES

    @classmethod
    def from_env(cls) -> "TurnConfig":
        return cls(
            api_base_url=str(os.getenv("C2C_API_BASE_URL") or API_BASE_URL).strip().rstrip("/"),
            silence_timeout_sec=max(0.5, _env_float("TURN_SILENCE_TIMEOUT_SEC", SILENCE_TIMEOUT_SEC)),
            speech_grace_delay_sec=max(0.0, _env_float("TURN_SPEECH_GRACE_DELAY_SEC", SPEECH_GRACE_DELAY_SEC)),
            next_question_delay_sec=max(0.0, _env_float("TURN_NEXT_QUESTION_DELAY_SEC", NEXT_QUESTION_DELAY_SEC)),
            max_silent_cycles=max(0, _env_int("TURN_MAX_SILENT_CYCLES", MAX_SILENT_CYCLES)),
        )
