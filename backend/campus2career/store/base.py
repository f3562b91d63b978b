from __future__ import annotations

from typing import Protocol

from campus2career.interview.models import Feedback, InterviewSession


class InterviewSessionStore(Protocol):
    async def get_session(self, session_id: str) -> InterviewSession | None:
        ...

    async def start_session(self, session_id: str) -> InterviewSession:
        ...

    async def submit_answer(
        self,
        session_id: str,
        answer: str,
        transcript: str,
        time_spent: int,
    ) -> InterviewSession:
        ...

    async def next_question(self, session_id: str) -> InterviewSession:
        ...

    async def end_session(self, session_id: str) -> InterviewSession:
        ...


class FeedbackGenerator(Protocol):
    async def generate_feedback(self, session_id: str) -> Feedback:
        ...
