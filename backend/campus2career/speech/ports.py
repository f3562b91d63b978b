from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

logger = logging.getLogger("speech")


class SpeechInputEventType(str, Enum):
    INTERIM = "interim"
    FINAL = "final"
    STARTED = "started"
    ENDED = "ended"
    ERROR = "error"


class SpeechOutputEventType(str, Enum):
    STARTED = "started"
    ENDED = "ended"


@dataclass(frozen=True)
class SpeechInputEvent:
    type: SpeechInputEventType
    text: str = ""
    reason: str = ""
    # Capability lost for good (permission denied, no device), as opposed to a transient failure.
    fatal: bool = False


@dataclass(frozen=True)
class SpeechOutputEvent:
    type: SpeechOutputEventType
    utterance_id: str


SpeechInputHandler = Callable[[SpeechInputEvent], None]
SpeechOutputHandler = Callable[[SpeechOutputEvent], None]


class SpeechInputPort(Protocol):
    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    def subscribe(self, handler: SpeechInputHandler) -> None:
        ...

    def unsubscribe(self, handler: SpeechInputHandler) -> None:
        ...


class SpeechOutputPort(Protocol):
    async def speak(self, text: str) -> str:
        ...

    async def cancel(self) -> None:
        ...

    def subscribe(self, handler: SpeechOutputHandler) -> None:
        ...

    def unsubscribe(self, handler: SpeechOutputHandler) -> None:
        ...


class SpeechEventSource:
    """Handler registry shared by the speech adapters."""

    def __init__(self):
        self._handlers: list[Callable] = []

    def subscribe(self, handler: Callable) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: Callable) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            logger.debug("Speech handler already unsubscribed")

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    def _emit(self, event) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Speech event handler failed | event=%s", getattr(event, "type", event))
