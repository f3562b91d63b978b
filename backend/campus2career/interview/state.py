from dataclasses import asdict, dataclass
from enum import Enum


class TurnPhase(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"
    LISTENING_ARMED = "listening_armed"
    LISTENING = "listening"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    ERROR = "error"


class LoadOutcome(str, Enum):
    NOT_STARTED = "not_started"
    RESUMED = "resumed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class TurnSnapshot:
    session_id: str
    phase: TurnPhase
    question_index: int = 0
    total_questions: int = 0
    question_text: str = ""
    spoken_question: str = ""
    answer_buffer: str = ""
    watchdog_armed: bool = False
    time_spent: int = 0
    error: dict | None = None

    @property
    def completed(self) -> bool:
        return self.phase == TurnPhase.COMPLETED

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        payload["type"] = "turn_state"
        return payload
