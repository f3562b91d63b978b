import asyncio
import json
import logging
import re
from datetime import datetime, timezone

from openai import AsyncOpenAI

from campus2career.core.config import FEEDBACK_MODEL, FEEDBACK_TIMEOUT_SEC, OPENAI_API_KEY
from campus2career.core.logger import log_event
from campus2career.feedback.prompts import FEEDBACK_CATEGORIES, FEEDBACK_SYSTEM_PROMPT, build_feedback_prompt
from campus2career.interview.errors import SessionNotFound
from campus2career.interview.models import CategoryScore, Feedback, InterviewSession

logger = logging.getLogger("feedback")


def _clamp_score(value, default=50):
    try:
        return max(0, min(100, int(round(float(value)))))
    except Exception:
        return default


def _extract_json_dict(text: str) -> dict | None:
    text = (text or "").strip()
    if not text:
        return None

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except Exception:
        pass

    fenced = re.search(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", text, re.IGNORECASE)
    if fenced:
        try:
            parsed = json.loads(fenced.group(1))
            return parsed if isinstance(parsed, dict) else None
        except Exception:
            pass

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(text[start:end + 1])
            return parsed if isinstance(parsed, dict) else None
        except Exception:
            return None

    return None


def _string_list(raw, limit: int = 5) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(str(item).strip() for item in raw if str(item or "").strip())[:limit]


def _answered_pairs(session: InterviewSession) -> list[tuple[str, str]]:
    return [
        (item.prompt, item.answer)
        for item in session.questions
        if item.is_answered and item.answer.strip()
    ]


def basic_feedback(session: InterviewSession) -> Feedback:
    """Deterministic evaluation from completion rate alone."""
    answered = len(_answered_pairs(session))
    asked = len(session.questions)
    answer_rate = answered / asked if asked else 0.0
    base_score = max(30, min(100, round(answer_rate * 80) + 20))
    level = "good" if answer_rate > 0.7 else "adequate"

    return Feedback(
        session_id=session.session_id,
        total_score=float(base_score),
        category_scores=tuple(
            CategoryScore(name=name, score=base_score, comment="Estimated from interview completion.")
            for name in FEEDBACK_CATEGORIES
        ),
        strengths=(
            "Completed the interview process",
            "Provided responses to questions",
        ),
        areas_for_improvement=(
            "Some questions were not fully answered" if answer_rate < 0.8 else "Could provide more detailed examples",
            "Prepare specific examples from past experience",
        ),
        final_assessment=(
            f"Interview completed with {answered}/{asked} questions answered. "
            f"The candidate showed {level} participation."
        ),
        generated_at=datetime.now(timezone.utc),
    )


def _normalize_feedback(data: dict, session: InterviewSession) -> Feedback:
    fallback = basic_feedback(session)

    by_name = {}
    for item in list(data.get("categoryScores") or []):
        if isinstance(item, dict) and str(item.get("name") or "").strip():
            by_name[str(item["name"]).strip().lower()] = item

    categories = []
    for name in FEEDBACK_CATEGORIES:
        item = by_name.get(name.lower(), {})
        categories.append(CategoryScore(
            name=name,
            score=_clamp_score(item.get("score"), 50),
            comment=str(item.get("comment") or ""),
        ))

    default_total = round(sum(item.score for item in categories) / len(categories))
    return Feedback(
        session_id=session.session_id,
        total_score=float(_clamp_score(data.get("totalScore"), default_total)),
        category_scores=tuple(categories),
        strengths=_string_list(data.get("strengths")) or fallback.strengths,
        areas_for_improvement=_string_list(data.get("areasForImprovement")) or fallback.areas_for_improvement,
        final_assessment=str(data.get("finalAssessment") or fallback.final_assessment),
        generated_at=datetime.now(timezone.utc),
    )


class LLMFeedbackGenerator:
    """
    Scores a finished session with one chat completion call.
    Never raises for model trouble: timeouts, API errors and unparseable
    output all produce `basic_feedback`.
    """

    def __init__(
        self,
        store,
        client: AsyncOpenAI | None = None,
        model: str = FEEDBACK_MODEL,
        timeout_sec: float = FEEDBACK_TIMEOUT_SEC,
        retries: int = 1,
    ):
        self._store = store
        self._client = client
        self._model = model
        self._timeout_sec = timeout_sec
        self._retries = retries

    def _get_client(self) -> AsyncOpenAI | None:
        if self._client is None and OPENAI_API_KEY:
            self._client = AsyncOpenAI(api_key=OPENAI_API_KEY)
        return self._client

    async def _call_llm(self, prompt: str) -> str:
        client = self._get_client()
        if client is None:
            logger.info("feedback LLM disabled, no OPENAI_API_KEY")
            return "{}"

        last_error: Exception | None = None
        for attempt in range(max(1, self._retries + 1)):
            try:
                response = await asyncio.wait_for(
                    client.chat.completions.create(
                        model=self._model,
                        messages=[
                            {"role": "system", "content": FEEDBACK_SYSTEM_PROMPT},
                            {"role": "user", "content": prompt},
                        ],
                        temperature=0.3,
                    ),
                    timeout=self._timeout_sec,
                )
                message = response.choices[0].message.content
                return str(message or "{}").strip() or "{}"
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning("feedback llm timeout | attempt=%s", attempt + 1)
            except Exception as exc:
                last_error = exc
                logger.warning("feedback llm failure | attempt=%s err=%s", attempt + 1, exc)

            if attempt < self._retries:
                await asyncio.sleep(0.35 * (attempt + 1))

        logger.warning("feedback llm fallback activated | err=%s", last_error)
        return "{}"

    async def generate_feedback(self, session_id: str) -> Feedback:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Interview {session_id} not found", session_id=session_id)

        pairs = _answered_pairs(session)
        if not pairs:
            log_event("feedback", "basic_feedback", session_id, reason="no_answers")
            return basic_feedback(session)

        raw = await self._call_llm(build_feedback_prompt(pairs, session.total_questions))
        parsed = _extract_json_dict(raw)
        if not parsed:
            log_event("feedback", "basic_feedback", session_id, reason="unparseable_output")
            return basic_feedback(session)

        feedback = _normalize_feedback(parsed, session)
        log_event("feedback", "generated", session_id, total_score=feedback.total_score, answered=len(pairs))
        return feedback


class StoreFeedbackGenerator:
    """Reads feedback the backend already produced for the session."""

    def __init__(self, store):
        self._store = store

    async def generate_feedback(self, session_id: str) -> Feedback:
        feedback = await self._store.get_feedback(session_id)
        if feedback is None:
            raise SessionNotFound(f"No feedback for interview {session_id}", session_id=session_id)
        return feedback
