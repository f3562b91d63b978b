from __future__ import annotations

import logging

import httpx

from campus2career.core.config import API_BASE_URL, API_TOKEN, HTTP_TIMEOUT_SEC
from campus2career.interview.errors import SessionNotFound, StoreError
from campus2career.interview.models import Feedback, InterviewSession, Question, SessionStatus

logger = logging.getLogger("session_store")


class HttpInterviewSessionStore:
    """InterviewSessionStore backed by the Campus2Career REST API."""

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        token: str = API_TOKEN,
        timeout_sec: float = HTTP_TIMEOUT_SEC,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = str(base_url or "").rstrip("/")
        self._token = str(token or "").strip()
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)
        self._owns_client = client is None
        # Last known question budget per session; partial responses omit it.
        self._totals: dict[str, int] = {}

    async def __aenter__(self) -> "HttpInterviewSessionStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _url(self, session_id: str, suffix: str = "") -> str:
        return f"{self._base_url}/api/interviews/{session_id}{suffix}"

    async def _request(self, method: str, session_id: str, suffix: str = "", body: dict | None = None) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                self._url(session_id, suffix),
                headers=self._headers(),
                json=body,
            )
        except httpx.TimeoutException as exc:
            logger.warning("store request timeout | %s %s session_id=%s", method, suffix or "/", session_id)
            raise StoreError("Session store request timed out", session_id=session_id) from exc
        except httpx.HTTPError as exc:
            logger.warning("store request failed | %s %s session_id=%s err=%s", method, suffix or "/", session_id, exc)
            raise StoreError(f"Network error: {exc}", session_id=session_id) from exc

    @staticmethod
    def _message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or "")
        return ""

    def _data(self, response: httpx.Response, session_id: str) -> dict:
        if response.status_code == 404:
            raise SessionNotFound(self._message(response) or "Interview not found", session_id=session_id)
        if response.status_code >= 400:
            raise StoreError(
                self._message(response) or f"HTTP {response.status_code}",
                session_id=session_id,
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise StoreError("Session store returned invalid JSON", session_id=session_id) from exc

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise StoreError("Session store response has no data", session_id=session_id)
        return data

    def _session(self, data: dict, session_id: str) -> InterviewSession:
        interview = data.get("interview")
        if not isinstance(interview, dict):
            raise StoreError("Session store response has no interview", session_id=session_id)
        session = InterviewSession.from_payload(
            interview,
            session_id=session_id,
            default_total=self._totals.get(session_id),
        )
        self._totals[session_id] = session.total_questions
        return session

    async def get_session(self, session_id: str) -> InterviewSession | None:
        response = await self._request("GET", session_id)
        if response.status_code == 404:
            return None
        return self._session(self._data(response, session_id), session_id)

    async def start_session(self, session_id: str) -> InterviewSession:
        response = await self._request("POST", session_id, "/start")
        return self._session(self._data(response, session_id), session_id)

    async def submit_answer(
        self,
        session_id: str,
        answer: str,
        transcript: str,
        time_spent: int,
    ) -> InterviewSession:
        response = await self._request(
            "POST",
            session_id,
            "/answer",
            body={
                "answer": answer,
                "transcript": transcript,
                "timeSpent": max(0, int(time_spent or 0)),
            },
        )
        return self._session(self._data(response, session_id), session_id)

    async def next_question(self, session_id: str, current_phase: str = "introduction") -> InterviewSession:
        response = await self._request(
            "POST",
            session_id,
            "/get-next-question",
            body={"conversationHistory": [], "currentPhase": current_phase},
        )
        data = self._data(response, session_id)
        prompt = str(data.get("question") or "").strip()
        if not prompt:
            raise StoreError("Session store generated an empty question", session_id=session_id)

        try:
            index = max(0, int(data.get("questionIndex") or 0))
            total = max(1, int(data.get("totalQuestions") or self._totals.get(session_id) or 10))
        except (TypeError, ValueError) as exc:
            raise StoreError("Session store returned a malformed question index", session_id=session_id) from exc
        self._totals[session_id] = total

        return InterviewSession(
            session_id=session_id,
            status=SessionStatus.IN_PROGRESS,
            current_index=min(index, total),
            total_questions=total,
            reported_question=Question(prompt=prompt),
        )

    async def end_session(self, session_id: str) -> InterviewSession:
        response = await self._request("POST", session_id, "/end")
        if response.status_code == 400:
            # The backend refuses to end an interview that already completed.
            session = await self.get_session(session_id)
            if session is not None and session.is_finished:
                return session
        return self._session(self._data(response, session_id), session_id)

    async def get_feedback(self, session_id: str) -> Feedback | None:
        response = await self._request("GET", session_id, "/feedback")
        if response.status_code == 404:
            return None
        data = self._data(response, session_id)
        feedback = data.get("feedback")
        if not isinstance(feedback, dict):
            return None
        return Feedback.from_payload(feedback, session_id=session_id)
