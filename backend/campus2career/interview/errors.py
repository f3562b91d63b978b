class TurnError(Exception):
    """Base class for failures surfaced by the interview turn engine."""

    code = "turn_error"
    recoverable = False

    def __init__(self, message: str = "", *, session_id: str = ""):
        super().__init__(message or self.code)
        self.session_id = session_id

    def to_payload(self) -> dict:
        return {
            "code": self.code,
            "message": str(self),
            "recoverable": self.recoverable,
        }


class SessionNotFound(TurnError):
    code = "session_not_found"


class StoreError(TurnError):
    """Transport or server failure talking to the session store."""

    code = "store_error"
    recoverable = True

    def __init__(self, message: str = "", *, session_id: str = "", status_code: int | None = None):
        super().__init__(message, session_id=session_id)
        self.status_code = status_code


class SpeechCaptureUnavailable(TurnError):
    code = "speech_capture_unavailable"


class SpeechCaptureError(TurnError):
    code = "speech_capture_error"
    recoverable = True


class SubmissionFailure(TurnError):
    code = "submission_failure"
    recoverable = True


class EmptyAnswer(TurnError):
    code = "empty_answer"
    recoverable = True


class AnswerTimeout(TurnError):
    code = "answer_timeout"
    recoverable = True


class InvalidTransition(TurnError):
    code = "invalid_transition"
    recoverable = True
