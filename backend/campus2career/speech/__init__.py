from campus2career.speech.ports import (
    SpeechEventSource,
    SpeechInputEvent,
    SpeechInputEventType,
    SpeechInputPort,
    SpeechOutputEvent,
    SpeechOutputEventType,
    SpeechOutputPort,
)
from campus2career.speech.relay import RelaySpeechInput, RelaySpeechOutput

__all__ = [
    "SpeechEventSource",
    "SpeechInputEvent",
    "SpeechInputEventType",
    "SpeechInputPort",
    "SpeechOutputEvent",
    "SpeechOutputEventType",
    "SpeechOutputPort",
    "RelaySpeechInput",
    "RelaySpeechOutput",
]
