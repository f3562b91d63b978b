import asyncio
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from campus2career.core.config import TurnConfig  # noqa: E402
from campus2career.interview.errors import SpeechCaptureUnavailable  # noqa: E402
from campus2career.speech.ports import (  # noqa: E402
    SpeechEventSource,
    SpeechInputEvent,
    SpeechInputEventType,
    SpeechOutputEvent,
    SpeechOutputEventType,
)
from campus2career.store.memory_store import InMemoryInterviewSessionStore  # noqa: E402


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("C2C_API_BASE_URL", "http://c2c.test")
    monkeypatch.setenv("C2C_API_TOKEN", "test-token")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")


class FakeSpeechInput(SpeechEventSource):
    def __init__(self):
        super().__init__()
        self.active = False
        self.start_calls = 0
        self.stop_calls = 0
        self.start_error: Exception | None = None

    async def start(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error
        self.active = True

    async def stop(self) -> None:
        self.stop_calls += 1
        self.active = False

    def final(self, text: str) -> None:
        self._emit(SpeechInputEvent(type=SpeechInputEventType.FINAL, text=text))

    def interim(self, text: str) -> None:
        self._emit(SpeechInputEvent(type=SpeechInputEventType.INTERIM, text=text))

    def ended(self) -> None:
        self.active = False
        self._emit(SpeechInputEvent(type=SpeechInputEventType.ENDED))

    def error(self, reason: str, fatal: bool = False) -> None:
        self.active = False
        if fatal:
            self.start_error = SpeechCaptureUnavailable(reason)
        self._emit(SpeechInputEvent(type=SpeechInputEventType.ERROR, reason=reason, fatal=fatal))


class FakeSpeechOutput(SpeechEventSource):
    def __init__(self):
        super().__init__()
        self.spoken: list[str] = []
        self.cancel_calls = 0
        self.current: str | None = None

    async def speak(self, text: str) -> str:
        self.spoken.append(text)
        self.current = f"u{len(self.spoken)}"
        return self.current

    async def cancel(self) -> None:
        self.cancel_calls += 1
        self.current = None

    def started(self, utterance_id: str | None = None) -> None:
        self._emit(SpeechOutputEvent(type=SpeechOutputEventType.STARTED, utterance_id=utterance_id or self.current))

    def finish(self, utterance_id: str | None = None) -> None:
        utterance_id = utterance_id or self.current
        self.current = None
        self._emit(SpeechOutputEvent(type=SpeechOutputEventType.ENDED, utterance_id=utterance_id))


class RecordingStore(InMemoryInterviewSessionStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.submissions: list[tuple[str, str, int]] = []
        self.fail_submits = 0
        self.end_calls = 0
        self.end_error: Exception | None = None

    async def submit_answer(self, session_id, answer, transcript, time_spent):
        if self.fail_submits > 0:
            self.fail_submits -= 1
            raise ConnectionError("store unreachable")
        self.submissions.append((answer, transcript, time_spent))
        return await super().submit_answer(session_id, answer, transcript, time_spent)

    async def end_session(self, session_id):
        self.end_calls += 1
        if self.end_error is not None:
            raise self.end_error
        return await super().end_session(session_id)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def speech_input() -> FakeSpeechInput:
    return FakeSpeechInput()


@pytest.fixture
def speech_output() -> FakeSpeechOutput:
    return FakeSpeechOutput()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def fast_config() -> TurnConfig:
    return TurnConfig(
        api_base_url="http://c2c.test",
        silence_timeout_sec=0.08,
        speech_grace_delay_sec=0.01,
        next_question_delay_sec=0.01,
        max_silent_cycles=0,
    )


@pytest.fixture
def wait():
    return wait_until
