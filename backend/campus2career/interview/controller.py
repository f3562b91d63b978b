from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from campus2career.core.config import TurnConfig
from campus2career.core.logger import log_event
from campus2career.interview.errors import (
    AnswerTimeout,
    EmptyAnswer,
    InvalidTransition,
    SessionNotFound,
    SpeechCaptureError,
    SpeechCaptureUnavailable,
    StoreError,
    SubmissionFailure,
    TurnError,
)
from campus2career.interview.models import InterviewSession, SessionStatus
from campus2career.interview.state import LoadOutcome, TurnPhase, TurnSnapshot
from campus2career.interview.watchdog import ElapsedCounter, SilenceWatchdog
from campus2career.speech.ports import (
    SpeechInputEvent,
    SpeechInputEventType,
    SpeechInputPort,
    SpeechOutputEvent,
    SpeechOutputEventType,
    SpeechOutputPort,
)
from campus2career.store.base import InterviewSessionStore

logging.basicConfig(
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger("turn")

ChangeFn = Callable[[TurnSnapshot], Awaitable[None]]


@dataclass
class _Command:
    name: str
    future: asyncio.Future
    kwargs: dict[str, Any] = field(default_factory=dict)


@dataclass
class _TimerFired:
    kind: str
    token: int


_STOP = object()

# Heard during playback, these cut the question short.
INTERRUPTION_PHRASES = ("stop", "wait", "hold on", "let me", "excuse me", "sorry")
_INTERRUPTION_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in INTERRUPTION_PHRASES) + r")\b",
    re.IGNORECASE,
)


class TurnController:
    """
    Drives one interview session question by question:
    speak -> listen -> detect silence -> submit -> next question.

    Every command, speech callback and timer fire is queued and applied by a
    single worker task, so transitions happen one at a time in delivery order.
    The `on_change` listener must not await controller commands.
    """

    def __init__(
        self,
        session_id: str,
        store: InterviewSessionStore,
        speech_input: SpeechInputPort,
        speech_output: SpeechOutputPort,
        config: TurnConfig | None = None,
        on_change: ChangeFn | None = None,
    ):
        self.session_id = str(session_id)
        self._store = store
        self._speech_input = speech_input
        self._speech_output = speech_output
        self._config = config or TurnConfig()
        self._on_change = on_change

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._closed = False
        self._completed = asyncio.Event()

        self._phase = TurnPhase.IDLE
        self._session: InterviewSession | None = None
        self._error: TurnError | None = None

        # Per-question state; the buffer only ever grows until a successful submit.
        self._buffer = ""
        self._spoken_question = ""
        self._elapsed = ElapsedCounter()
        self._watchdog = SilenceWatchdog()
        self._silent_cycles = 0

        self._utterance_id: str | None = None
        self._capturing = False
        self._epoch = 0
        self._pending_timer: asyncio.TimerHandle | None = None

        self._speech_input.subscribe(self._on_input_event)
        self._speech_output.subscribe(self._on_output_event)
        self._subscribed = True

    # ------------------------------------------------------------------ public

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    @property
    def session(self) -> InterviewSession | None:
        return self._session

    @property
    def error(self) -> TurnError | None:
        return self._error

    @property
    def answer_buffer(self) -> str:
        return self._buffer

    @property
    def watchdog(self) -> SilenceWatchdog:
        return self._watchdog

    def snapshot(self) -> TurnSnapshot:
        session = self._session
        question = session.current_question if session else None
        return TurnSnapshot(
            session_id=self.session_id,
            phase=self._phase,
            question_index=session.current_index if session else 0,
            total_questions=session.total_questions if session else 0,
            question_text=question.prompt if question else "",
            spoken_question=self._spoken_question,
            answer_buffer=self._buffer,
            watchdog_armed=self._watchdog.armed,
            time_spent=self._elapsed.seconds(),
            error=self._error.to_payload() if self._error else None,
        )

    async def load_session(self) -> LoadOutcome:
        return await self._call("load")

    async def start_interview(self) -> LoadOutcome:
        return await self._call("start")

    async def speak_current_question(self) -> TurnSnapshot:
        return await self._call("speak")

    async def submit_answer(self) -> TurnSnapshot:
        return await self._call("submit")

    async def end_interview_early(self) -> TurnSnapshot:
        return await self._call("end")

    async def replay_current_question(self) -> TurnSnapshot:
        return await self._call("replay")

    async def resume_listening(self) -> TurnSnapshot:
        return await self._call("resume")

    async def interrupt(self) -> TurnSnapshot:
        return await self._call("interrupt")

    async def wait_completed(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._completed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        if self._closed:
            return
        if self._worker is None or self._worker.done():
            await self._release_ports(unsubscribe=True)
            self._closed = True
            return
        await self._call("close")
        self._queue.put_nowait(_STOP)
        await asyncio.gather(self._worker, return_exceptions=True)

    # ------------------------------------------------------------------ queue

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _call(self, name: str, **kwargs):
        if self._closed:
            raise InvalidTransition(f"controller closed, cannot {name}", session_id=self.session_id)
        self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Command(name=name, future=future, kwargs=kwargs))
        return await future

    def _post(self, item) -> None:
        if self._closed:
            return
        self._queue.put_nowait(item)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                break
            try:
                await self._dispatch(item)
            except Exception as exc:
                if isinstance(item, _Command):
                    if not item.future.done():
                        item.future.set_exception(exc)
                else:
                    logger.exception("[TURN %s] Event handling failed | item=%s", self.session_id, item)
                    await self._fail(TurnError(str(exc), session_id=self.session_id), reason="internal_error")
            await self._notify()

    async def _dispatch(self, item) -> None:
        if isinstance(item, _Command):
            handler = getattr(self, f"_cmd_{item.name}")
            result = await handler(**item.kwargs)
            if not item.future.done():
                item.future.set_result(result)
        elif isinstance(item, SpeechInputEvent):
            await self._handle_input(item)
        elif isinstance(item, SpeechOutputEvent):
            await self._handle_output(item)
        elif isinstance(item, _TimerFired):
            await self._handle_timer(item)

    async def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(self.snapshot())
        except Exception as exc:
            logger.warning("[TURN %s] change listener failed | err=%s", self.session_id, exc)

    def _on_input_event(self, event: SpeechInputEvent) -> None:
        self._post(event)

    def _on_output_event(self, event: SpeechOutputEvent) -> None:
        self._post(event)

    # ------------------------------------------------------------------ commands

    async def _cmd_load(self) -> LoadOutcome:
        if self._phase not in (TurnPhase.IDLE, TurnPhase.ERROR):
            raise InvalidTransition(f"cannot load session while {self._phase.value}", session_id=self.session_id)
        session = await self._fetch_session()
        return await self._enter_session(session, reason="load")

    async def _cmd_start(self) -> LoadOutcome:
        if self._phase not in (TurnPhase.IDLE, TurnPhase.ERROR):
            raise InvalidTransition(f"cannot start interview while {self._phase.value}", session_id=self.session_id)
        session = self._session or await self._fetch_session()
        if session.status == SessionStatus.DRAFT:
            try:
                session = await self._store.start_session(self.session_id)
            except StoreError as exc:
                self._error = exc
                raise
            log_event("turn", "interview_started", self.session_id, total_questions=session.total_questions)
        return await self._enter_session(session, reason="start")

    async def _cmd_speak(self) -> TurnSnapshot:
        if self._phase in (TurnPhase.SUBMITTING, TurnPhase.COMPLETED):
            raise InvalidTransition(f"cannot speak while {self._phase.value}", session_id=self.session_id)
        await self._begin_speaking(reason="speak")
        return self.snapshot()

    async def _cmd_replay(self) -> TurnSnapshot:
        if self._phase in (TurnPhase.SUBMITTING, TurnPhase.COMPLETED):
            raise InvalidTransition(f"cannot replay while {self._phase.value}", session_id=self.session_id)
        await self._begin_speaking(reason="replay")
        return self.snapshot()

    async def _cmd_submit(self) -> TurnSnapshot:
        if self._phase == TurnPhase.SUBMITTING:
            if not isinstance(self._error, SubmissionFailure):
                raise InvalidTransition("submission already in flight", session_id=self.session_id)
            await self._submit(reason="retry")
            return self.snapshot()

        if self._phase not in (TurnPhase.LISTENING, TurnPhase.LISTENING_ARMED):
            raise InvalidTransition(f"cannot submit while {self._phase.value}", session_id=self.session_id)

        if not self._buffer.strip():
            self._error = EmptyAnswer("Please provide an answer before submitting.", session_id=self.session_id)
            return self.snapshot()

        await self._submit(reason="manual")
        return self.snapshot()

    async def _cmd_end(self) -> TurnSnapshot:
        if self._phase == TurnPhase.COMPLETED:
            return self.snapshot()

        discarded = len(self._buffer)
        await self._release_ports(unsubscribe=False)
        self._buffer = ""
        self._elapsed.clear()
        self._error = None

        try:
            session = await self._store.end_session(self.session_id)
            if session is not None:
                self._session = session
        except TurnError as exc:
            logger.warning("[TURN %s] end_session failed | err=%s", self.session_id, exc)
            self._error = exc
        except Exception as exc:
            logger.warning("[TURN %s] end_session failed | err=%s", self.session_id, exc)
            self._error = StoreError(f"Failed to end interview: {exc}", session_id=self.session_id)

        log_event("turn", "ended_early", self.session_id, discarded_chars=discarded)
        await self._complete(reason="ended_early")
        return self.snapshot()

    async def _cmd_resume(self) -> TurnSnapshot:
        if self._phase == TurnPhase.LISTENING:
            return self.snapshot()
        if self._phase not in (TurnPhase.LISTENING_ARMED, TurnPhase.ERROR):
            raise InvalidTransition(f"cannot resume listening while {self._phase.value}", session_id=self.session_id)
        if self._current_question_text() is None:
            raise InvalidTransition("no current question to answer", session_id=self.session_id)
        self._cancel_pending_timer()
        await self._start_capture(reason="resume")
        return self.snapshot()

    async def _cmd_interrupt(self) -> TurnSnapshot:
        if self._phase != TurnPhase.SPEAKING:
            return self.snapshot()
        await self._cancel_speech()
        self._spoken_question = self._current_question_text() or ""
        self._arm_listening(reason="interrupt")
        return self.snapshot()

    async def _cmd_close(self) -> None:
        await self._release_ports(unsubscribe=True)
        self._closed = True
        self._completed.set()
        logger.info("[TURN %s] controller closed | phase=%s", self.session_id, self._phase.value)

    # ------------------------------------------------------------------ transitions

    def _set_phase(self, phase: TurnPhase, reason: str) -> None:
        if phase == self._phase:
            return
        logger.info("[TURN %s] %s → %s | reason=%s", self.session_id, self._phase.value, phase.value, reason)
        self._phase = phase

    def _current_question_text(self) -> str | None:
        if self._session is None:
            return None
        question = self._session.current_question
        return question.prompt if question else None

    async def _fetch_session(self) -> InterviewSession:
        try:
            session = await self._store.get_session(self.session_id)
        except StoreError as exc:
            self._error = exc
            raise
        if session is None:
            self._error = SessionNotFound(f"Interview {self.session_id} not found", session_id=self.session_id)
            self._set_phase(TurnPhase.ERROR, reason="session_not_found")
            raise self._error
        self._session = session
        return session

    async def _enter_session(self, session: InterviewSession, reason: str) -> LoadOutcome:
        self._session = session
        self._error = None

        if session.is_finished:
            await self._complete(reason=f"{reason}_already_completed")
            return LoadOutcome.COMPLETED

        if session.status == SessionStatus.DRAFT:
            logger.info("[TURN %s] session not started | reason=%s", self.session_id, reason)
            return LoadOutcome.NOT_STARTED

        if session.current_question is None:
            try:
                session = await self._store.next_question(self.session_id)
            except StoreError as exc:
                self._error = exc
                raise
            self._session = session
            if session.is_finished:
                await self._complete(reason=f"{reason}_no_questions_left")
                return LoadOutcome.COMPLETED
            if session.current_question is None:
                raise StoreError("store returned no current question", session_id=self.session_id)

        await self._begin_speaking(reason=reason)
        return LoadOutcome.RESUMED

    async def _begin_speaking(self, reason: str) -> None:
        text = self._current_question_text()
        if text is None:
            raise InvalidTransition("no current question to speak", session_id=self.session_id)

        self._cancel_pending_timer()
        await self._stop_capture()
        await self._cancel_speech()
        self._epoch += 1
        self._elapsed.start()
        self._error = None
        self._set_phase(TurnPhase.SPEAKING, reason=reason)

        try:
            self._utterance_id = await self._speech_output.speak(text)
        except Exception as exc:
            # The question stays readable on screen; move on to listening.
            logger.warning("[TURN %s] speech output failed, skipping playback | err=%s", self.session_id, exc)
            self._utterance_id = None
            self._spoken_question = text
            self._arm_listening(reason="speech_output_failed")

    def _arm_listening(self, reason: str) -> None:
        self._set_phase(TurnPhase.LISTENING_ARMED, reason=reason)
        self._schedule_timer("grace", self._config.speech_grace_delay_sec)

    async def _start_capture(self, reason: str) -> None:
        try:
            await self._speech_input.start()
        except SpeechCaptureUnavailable as exc:
            await self._fail(exc, reason="capture_unavailable")
            return
        except Exception as exc:
            logger.warning("[TURN %s] speech capture start failed | err=%s", self.session_id, exc)
            self._error = SpeechCaptureError(str(exc), session_id=self.session_id)
            self._set_phase(TurnPhase.LISTENING_ARMED, reason="capture_start_failed")
            return

        self._capturing = True
        self._silent_cycles = 0
        self._error = None
        self._set_phase(TurnPhase.LISTENING, reason=reason)
        token = self._epoch
        self._watchdog.arm(
            self._config.silence_timeout_sec,
            lambda: self._post(_TimerFired(kind="silence", token=token)),
        )

    async def _submit(self, reason: str) -> None:
        answer = " ".join(self._buffer.split())
        transcript = self._buffer
        self._set_phase(TurnPhase.SUBMITTING, reason=reason)
        self._cancel_pending_timer()
        await self._stop_capture()
        self._epoch += 1
        time_spent = self._elapsed.seconds()

        log_event(
            "turn",
            "submit_answer",
            self.session_id,
            question_index=self._session.current_index if self._session else None,
            answer=answer,
            time_spent=time_spent,
            reason=reason,
        )

        try:
            session = await self._store.submit_answer(self.session_id, answer, transcript, time_spent)
        except Exception as exc:
            logger.warning("[TURN %s] submit_answer failed | err=%s", self.session_id, exc)
            self._error = SubmissionFailure(
                f"Failed to submit answer: {exc}",
                session_id=self.session_id,
            )
            return

        self._error = None
        self._buffer = ""
        self._spoken_question = ""
        self._elapsed.clear()
        self._session = session

        if session.is_finished:
            await self._complete(reason="last_answer_submitted")
            return

        self._schedule_timer("next_question", self._config.next_question_delay_sec)

    async def _advance(self) -> None:
        session = self._session
        if session is None:
            return
        if session.current_question is None:
            try:
                session = await self._store.next_question(self.session_id)
            except TurnError as exc:
                await self._fail(exc, reason="next_question_failed")
                return
            self._session = session
            if session.is_finished:
                await self._complete(reason="no_questions_left")
                return
            if session.current_question is None:
                await self._fail(
                    StoreError("store returned no next question", session_id=self.session_id),
                    reason="next_question_missing",
                )
                return
        await self._begin_speaking(reason="next_question")

    async def _complete(self, reason: str) -> None:
        await self._release_ports(unsubscribe=True)
        self._set_phase(TurnPhase.COMPLETED, reason=reason)
        self._completed.set()
        log_event(
            "turn",
            "completed",
            self.session_id,
            reason=reason,
            answered=self._session.answered_count if self._session else 0,
        )

    async def _fail(self, error: TurnError, reason: str) -> None:
        await self._release_ports(unsubscribe=False)
        self._error = error
        self._set_phase(TurnPhase.ERROR, reason=reason)
        log_event("turn", "error", self.session_id, code=error.code, reason=reason)

    # ------------------------------------------------------------------ events

    async def _handle_output(self, event: SpeechOutputEvent) -> None:
        if event.utterance_id != self._utterance_id:
            logger.debug("[TURN %s] stale utterance event dropped | type=%s", self.session_id, event.type.value)
            return

        text = self._current_question_text() or ""
        if event.type == SpeechOutputEventType.STARTED:
            if self._phase == TurnPhase.SPEAKING:
                self._spoken_question = text
                log_event("turn", "question_spoken", self.session_id, question_text=text)
            return

        self._utterance_id = None
        if self._phase == TurnPhase.SPEAKING:
            self._spoken_question = text
            self._arm_listening(reason="utterance_end")

    async def _handle_input(self, event: SpeechInputEvent) -> None:
        if event.type == SpeechInputEventType.ENDED:
            self._capturing = False

        if (
            self._phase == TurnPhase.SPEAKING
            and event.type in (SpeechInputEventType.INTERIM, SpeechInputEventType.FINAL)
            and _INTERRUPTION_RE.search(event.text)
        ):
            logger.info("[TURN %s] spoken interruption during playback", self.session_id)
            await self._cmd_interrupt()
            return

        if self._phase != TurnPhase.LISTENING:
            if event.type in (SpeechInputEventType.INTERIM, SpeechInputEventType.FINAL):
                logger.debug("[TURN %s] stale transcript dropped | phase=%s", self.session_id, self._phase.value)
            return

        if event.type == SpeechInputEventType.FINAL:
            self._buffer += event.text
            self._silent_cycles = 0
            self._watchdog.reset()
        elif event.type == SpeechInputEventType.INTERIM:
            self._watchdog.reset()
        elif event.type == SpeechInputEventType.ENDED:
            # Continuous recognition can stop on its own; keep the stream open while listening.
            logger.info("[TURN %s] speech capture ended while listening, restarting", self.session_id)
            try:
                await self._speech_input.start()
                self._capturing = True
            except SpeechCaptureUnavailable as exc:
                await self._fail(exc, reason="capture_unavailable")
            except Exception as exc:
                await self._capture_failed(str(exc))
        elif event.type == SpeechInputEventType.ERROR:
            if event.fatal:
                await self._fail(
                    SpeechCaptureUnavailable(event.reason or "speech capture unavailable", session_id=self.session_id),
                    reason="capture_unavailable",
                )
            else:
                await self._capture_failed(event.reason)

    async def _capture_failed(self, reason: str) -> None:
        await self._stop_capture()
        self._error = SpeechCaptureError(
            f"Speech recognition error: {reason or 'unknown'}",
            session_id=self.session_id,
        )
        self._set_phase(TurnPhase.LISTENING_ARMED, reason="capture_error")

    async def _handle_timer(self, event: _TimerFired) -> None:
        if event.token != self._epoch:
            return

        if event.kind == "grace":
            self._pending_timer = None
            if self._phase == TurnPhase.LISTENING_ARMED:
                await self._start_capture(reason="grace_elapsed")
        elif event.kind == "next_question":
            self._pending_timer = None
            if self._phase == TurnPhase.SUBMITTING:
                await self._advance()
        elif event.kind == "silence":
            if self._phase == TurnPhase.LISTENING:
                await self._on_silence()

    async def _on_silence(self) -> None:
        if self._buffer.strip():
            await self._submit(reason="silence")
            return

        self._silent_cycles += 1
        limit = self._config.max_silent_cycles
        if limit and self._silent_cycles >= limit:
            await self._stop_capture()
            self._error = AnswerTimeout(
                f"No answer after {self._silent_cycles} silent periods",
                session_id=self.session_id,
            )
            self._set_phase(TurnPhase.LISTENING_ARMED, reason="answer_timeout")
            return

        logger.debug("[TURN %s] silence with empty answer, waiting | cycles=%s", self.session_id, self._silent_cycles)
        self._watchdog.reset()

    # ------------------------------------------------------------------ resources

    def _schedule_timer(self, kind: str, delay: float) -> None:
        self._cancel_pending_timer()
        token = self._epoch
        loop = asyncio.get_running_loop()
        self._pending_timer = loop.call_later(max(0.0, delay), self._post, _TimerFired(kind=kind, token=token))

    def _cancel_pending_timer(self) -> None:
        if self._pending_timer is not None:
            self._pending_timer.cancel()
            self._pending_timer = None

    async def _stop_capture(self) -> None:
        self._watchdog.disarm()
        if not self._capturing:
            return
        self._capturing = False
        try:
            await self._speech_input.stop()
        except Exception as exc:
            logger.warning("[TURN %s] speech capture stop failed | err=%s", self.session_id, exc)

    async def _cancel_speech(self) -> None:
        if self._utterance_id is None:
            return
        self._utterance_id = None
        try:
            await self._speech_output.cancel()
        except Exception as exc:
            logger.warning("[TURN %s] speech cancel failed | err=%s", self.session_id, exc)

    async def _release_ports(self, unsubscribe: bool) -> None:
        self._cancel_pending_timer()
        self._epoch += 1
        self._watchdog.disarm()
        self._capturing = False
        try:
            await self._speech_input.stop()
        except Exception as exc:
            logger.warning("[TURN %s] speech capture stop failed | err=%s", self.session_id, exc)
        await self._cancel_speech()
        if unsubscribe and self._subscribed:
            self._speech_input.unsubscribe(self._on_input_event)
            self._speech_output.unsubscribe(self._on_output_event)
            self._subscribed = False
