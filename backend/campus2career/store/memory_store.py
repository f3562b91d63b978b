from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from campus2career.core.config import DEFAULT_TOTAL_QUESTIONS
from campus2career.interview.errors import SessionNotFound, StoreError
from campus2career.interview.models import InterviewSession, Question, SessionStatus, can_transition

logger = logging.getLogger("session_store")

FALLBACK_QUESTIONS = [
    "Tell me about yourself and your background.",
    "Why are you interested in this role?",
    "What are your greatest strengths?",
    "Describe a challenging project you worked on.",
    "How do you handle tight deadlines?",
    "What is your approach to problem-solving?",
    "Tell me about a time you failed and what you learned.",
    "How do you stay updated with industry trends?",
    "Describe your ideal work environment.",
    "Where do you see yourself in 5 years?",
]

QuestionSource = Callable[[InterviewSession], str]


def fallback_question_source(session: InterviewSession) -> str:
    return FALLBACK_QUESTIONS[len(session.questions) % len(FALLBACK_QUESTIONS)]


class InMemoryInterviewSessionStore:
    """
    Process-local session store with the interview document semantics:
    answering advances the index and completes the session when the budget
    is used up. Every read returns a copy; callers never share records.
    """

    def __init__(self, question_source: QuestionSource = fallback_question_source):
        self._lock = asyncio.Lock()
        self._sessions: dict[str, InterviewSession] = {}
        self._question_source = question_source

    def create_session(
        self,
        total_questions: int = DEFAULT_TOTAL_QUESTIONS,
        questions: list[str] | None = None,
        session_id: str | None = None,
    ) -> str:
        session_id = session_id or uuid.uuid4().hex
        total = max(1, min(int(total_questions or DEFAULT_TOTAL_QUESTIONS), 20))
        self._sessions[session_id] = InterviewSession(
            session_id=session_id,
            status=SessionStatus.DRAFT,
            questions=[Question(prompt=text) for text in list(questions or [])[:total] if str(text).strip()],
            current_index=0,
            total_questions=total,
        )
        return session_id

    def _require(self, session_id: str) -> InterviewSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound("Interview not found", session_id=session_id)
        return session

    def _set_status(self, session: InterviewSession, status: SessionStatus) -> None:
        if not can_transition(session.status, status):
            raise StoreError(
                f"Cannot move interview from {session.status.value} to {status.value}",
                session_id=session.session_id,
                status_code=400,
            )
        session.status = status

    def _ensure_current_question(self, session: InterviewSession) -> None:
        if session.status != SessionStatus.IN_PROGRESS:
            return
        while len(session.questions) <= session.current_index < session.total_questions:
            prompt = str(self._question_source(session) or "").strip()
            if not prompt:
                raise StoreError("Question source returned an empty question", session_id=session.session_id)
            session.questions.append(Question(prompt=prompt))

    async def get_session(self, session_id: str) -> InterviewSession | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    async def start_session(self, session_id: str) -> InterviewSession:
        async with self._lock:
            session = self._require(session_id)
            if session.status != SessionStatus.DRAFT:
                raise StoreError(
                    "Interview has already been started or completed",
                    session_id=session_id,
                    status_code=400,
                )
            self._set_status(session, SessionStatus.IN_PROGRESS)
            session.current_index = 0
            self._ensure_current_question(session)
            logger.info("session started | session_id=%s total=%s", session_id, session.total_questions)
            return copy.deepcopy(session)

    async def submit_answer(
        self,
        session_id: str,
        answer: str,
        transcript: str,
        time_spent: int,
    ) -> InterviewSession:
        async with self._lock:
            session = self._require(session_id)
            if session.status != SessionStatus.IN_PROGRESS:
                raise StoreError("Interview is not in progress", session_id=session_id, status_code=400)
            if not str(answer or "").strip():
                raise StoreError("Answer cannot be empty", session_id=session_id, status_code=400)

            question = session.current_question
            if question is None:
                raise StoreError("No question to answer", session_id=session_id, status_code=400)

            question.answer = str(answer).strip()
            question.transcript = str(transcript or "").strip()
            question.time_spent = max(0, int(time_spent or 0))
            question.is_answered = True
            question.answered_at = datetime.now(timezone.utc)

            session.current_index += 1
            if session.current_index >= session.total_questions:
                self._set_status(session, SessionStatus.COMPLETED)
            else:
                self._ensure_current_question(session)
            return copy.deepcopy(session)

    async def next_question(self, session_id: str) -> InterviewSession:
        async with self._lock:
            session = self._require(session_id)
            if session.status != SessionStatus.IN_PROGRESS:
                raise StoreError("Interview is not in progress", session_id=session_id, status_code=400)
            self._ensure_current_question(session)
            return copy.deepcopy(session)

    async def end_session(self, session_id: str) -> InterviewSession:
        async with self._lock:
            session = self._require(session_id)
            if not session.is_finished:
                self._set_status(session, SessionStatus.COMPLETED)
                logger.info(
                    "session ended early | session_id=%s answered=%s total=%s",
                    session_id,
                    session.answered_count,
                    session.total_questions,
                )
            return copy.deepcopy(session)
