"""
Speech adapters for a browser client that owns the real engines.

The server sends commands through `send_fn`; the browser reports engine
callbacks back as JSON payloads which are fed to `handle_client_payload`.
"""
from __future__ import annotations

import logging
import uuid
from typing import Awaitable, Callable

from campus2career.interview.errors import SpeechCaptureUnavailable
from campus2career.speech.ports import (
    SpeechEventSource,
    SpeechInputEvent,
    SpeechInputEventType,
    SpeechOutputEvent,
    SpeechOutputEventType,
)

logger = logging.getLogger("speech.relay")

SendFn = Callable[[dict], Awaitable[None]]

INPUT_PAYLOAD_TYPES = {"transcript", "capture_started", "capture_ended", "capture_error", "capture_unavailable"}
OUTPUT_PAYLOAD_TYPES = {"utterance_started", "utterance_ended"}


class RelaySpeechInput(SpeechEventSource):

    def __init__(self, send_fn: SendFn):
        super().__init__()
        self._send_fn = send_fn
        self._active = False
        self._unavailable_reason = ""

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> None:
        if self._unavailable_reason:
            raise SpeechCaptureUnavailable(self._unavailable_reason)
        if self._active:
            return
        self._active = True
        await self._send_fn({"type": "capture_start"})

    async def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._send_fn({"type": "capture_stop"})

    def handle_client_payload(self, payload: dict) -> bool:
        kind = str(payload.get("type") or "")
        if kind not in INPUT_PAYLOAD_TYPES:
            return False

        if kind == "transcript":
            text = str(payload.get("text") or "")
            if not text:
                return True
            event_type = SpeechInputEventType.FINAL if bool(payload.get("is_final")) else SpeechInputEventType.INTERIM
            self._emit(SpeechInputEvent(type=event_type, text=text))
        elif kind == "capture_started":
            self._emit(SpeechInputEvent(type=SpeechInputEventType.STARTED))
        elif kind == "capture_ended":
            self._active = False
            self._emit(SpeechInputEvent(type=SpeechInputEventType.ENDED))
        elif kind == "capture_error":
            self._active = False
            reason = str(payload.get("reason") or "unknown")
            fatal = reason in {"not-allowed", "service-not-allowed", "audio-capture"}
            if fatal:
                self._unavailable_reason = reason
            self._emit(SpeechInputEvent(type=SpeechInputEventType.ERROR, reason=reason, fatal=fatal))
        else:
            self._active = False
            self._unavailable_reason = str(payload.get("reason") or "speech recognition not supported")
            self._emit(SpeechInputEvent(
                type=SpeechInputEventType.ERROR,
                reason=self._unavailable_reason,
                fatal=True,
            ))
        return True


class RelaySpeechOutput(SpeechEventSource):

    def __init__(self, send_fn: SendFn):
        super().__init__()
        self._send_fn = send_fn
        self._current_utterance: str | None = None

    @property
    def speaking(self) -> bool:
        return self._current_utterance is not None

    async def speak(self, text: str) -> str:
        utterance_id = uuid.uuid4().hex
        self._current_utterance = utterance_id
        await self._send_fn({"type": "speak", "utterance_id": utterance_id, "text": text})
        return utterance_id

    async def cancel(self) -> None:
        utterance_id = self._current_utterance
        if utterance_id is None:
            return
        self._current_utterance = None
        await self._send_fn({"type": "cancel_speech", "utterance_id": utterance_id})

    def handle_client_payload(self, payload: dict) -> bool:
        kind = str(payload.get("type") or "")
        if kind not in OUTPUT_PAYLOAD_TYPES:
            return False

        utterance_id = str(payload.get("utterance_id") or "")
        if not utterance_id:
            logger.warning("Utterance event without utterance_id ignored | type=%s", kind)
            return True

        if kind == "utterance_started":
            self._emit(SpeechOutputEvent(type=SpeechOutputEventType.STARTED, utterance_id=utterance_id))
        else:
            if self._current_utterance == utterance_id:
                self._current_utterance = None
            self._emit(SpeechOutputEvent(type=SpeechOutputEventType.ENDED, utterance_id=utterance_id))
        return True
