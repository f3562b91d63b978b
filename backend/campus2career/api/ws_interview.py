import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from campus2career.core.config import TurnConfig
from campus2career.core.logger import log_event
from campus2career.feedback.generator import LLMFeedbackGenerator
from campus2career.interview.controller import TurnController
from campus2career.interview.errors import TurnError
from campus2career.interview.state import TurnPhase, TurnSnapshot
from campus2career.speech.relay import RelaySpeechInput, RelaySpeechOutput
from campus2career.store.http_store import HttpInterviewSessionStore

router = APIRouter()
logger = logging.getLogger("ws_interview")

ACTIONS = {
    "start": "start_interview",
    "submit": "submit_answer",
    "replay": "replay_current_question",
    "resume": "resume_listening",
    "interrupt": "interrupt",
    "end": "end_interview_early",
}


class InterviewDependencies:
    """Collaborators shared by every interview socket; assign to override."""

    def __init__(self):
        self.store = None
        self.feedback = None
        self.config: TurnConfig | None = None
        self._owned_store = None
        self._owned_feedback = None

    def session_store(self):
        if self.store is None:
            self.store = HttpInterviewSessionStore()
            self._owned_store = self.store
        return self.store

    def feedback_generator(self):
        if self.feedback is None:
            self.feedback = LLMFeedbackGenerator(self.session_store())
            self._owned_feedback = self.feedback
        return self.feedback

    def turn_config(self) -> TurnConfig:
        return self.config or TurnConfig.from_env()

    async def aclose(self) -> None:
        # Stores assigned from outside are closed by whoever assigned them.
        owned, self._owned_store = self._owned_store, None
        if owned is None:
            return
        await owned.aclose()
        if self.store is owned:
            self.store = None
        if self.feedback is self._owned_feedback:
            self.feedback = None
        self._owned_feedback = None


dependencies = InterviewDependencies()


@router.websocket("/ws/interview/{session_id}")
async def interview_ws(websocket: WebSocket, session_id: str):
    await websocket.accept()
    send_lock = asyncio.Lock()

    async def _safe_send(payload: dict) -> None:
        if websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            encoded = json.dumps(payload, default=str)
        except Exception as exc:
            logger.warning("ws payload encode failed | session_id=%s err=%s", session_id, exc)
            return
        try:
            async with send_lock:
                await websocket.send_text(encoded)
        except Exception as exc:
            logger.warning("ws send failed | session_id=%s err=%s", session_id, exc)

    async def _send_error(error: Exception) -> None:
        if isinstance(error, TurnError):
            await _safe_send({"type": "error", **error.to_payload()})
        else:
            await _safe_send({"type": "error", "code": "bad_request", "message": str(error), "recoverable": True})

    async def _on_change(snapshot: TurnSnapshot) -> None:
        await _safe_send(snapshot.to_payload())

    speech_input = RelaySpeechInput(_safe_send)
    speech_output = RelaySpeechOutput(_safe_send)
    controller = TurnController(
        session_id,
        dependencies.session_store(),
        speech_input,
        speech_output,
        config=dependencies.turn_config(),
        on_change=_on_change,
    )

    async def _deliver_feedback() -> None:
        await controller.wait_completed()
        if controller.phase != TurnPhase.COMPLETED:
            return
        try:
            feedback = await dependencies.feedback_generator().generate_feedback(session_id)
        except Exception as exc:
            logger.warning("feedback generation failed | session_id=%s err=%s", session_id, exc)
            await _send_error(exc)
            return
        await _safe_send({"type": "feedback", **feedback.to_payload()})
        log_event("ws_interview", "feedback_sent", session_id, total_score=feedback.total_score)

    feedback_task = asyncio.create_task(_deliver_feedback())
    log_event("ws_interview", "connect", session_id)

    try:
        try:
            outcome = await controller.load_session()
            await _safe_send({"type": "session_loaded", "outcome": outcome.value})
        except TurnError as exc:
            await _send_error(exc)
            if not exc.recoverable:
                await websocket.close(code=1008, reason=exc.code)
                return

        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except ValueError:
                await _send_error(ValueError("Invalid JSON payload"))
                continue
            if not isinstance(payload, dict):
                await _send_error(ValueError("Payload must be a JSON object"))
                continue

            if speech_input.handle_client_payload(payload) or speech_output.handle_client_payload(payload):
                continue

            kind = str(payload.get("type") or "")
            if kind == "ping":
                await _safe_send({"type": "pong"})
                continue

            method = ACTIONS.get(kind)
            if method is None:
                await _send_error(ValueError(f"Unknown message type: {kind or 'missing'}"))
                continue

            try:
                await getattr(controller, method)()
            except TurnError as exc:
                await _send_error(exc)
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected | session_id=%s", session_id)
    finally:
        await controller.close()
        if not feedback_task.done():
            feedback_task.cancel()
        await asyncio.gather(feedback_task, return_exceptions=True)
        log_event("ws_interview", "disconnect", session_id, phase=controller.phase.value)
