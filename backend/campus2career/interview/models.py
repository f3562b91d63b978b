from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SessionStatus(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)

    @classmethod
    def parse(cls, raw: Any) -> "SessionStatus":
        value = str(raw or "").strip().lower().replace("_", "-")
        for status in cls:
            if status.value == value:
                return status
        return cls.DRAFT


_STATUS_ORDER = {
    SessionStatus.DRAFT: 0,
    SessionStatus.IN_PROGRESS: 1,
    SessionStatus.COMPLETED: 2,
    SessionStatus.CANCELLED: 2,
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """
    Status only moves forward: draft -> in-progress -> completed.
    A draft may also go straight to completed when it is ended before starting.
    """
    if current == target:
        return True
    if current.is_terminal:
        return False
    return _STATUS_ORDER[target] > _STATUS_ORDER[current]


def _safe_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return default


def _safe_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _payload_total(data: dict, default_total: int | None, minimum: int) -> int:
    # /start and /answer responses omit totalQuestions but carry answered + remaining.
    total = _safe_int(data.get("totalQuestions"), 0)
    if total <= 0 and "answeredQuestions" in data and "remainingQuestions" in data:
        total = _safe_int(data.get("answeredQuestions"), 0) + _safe_int(data.get("remainingQuestions"), 0)
    if total <= 0:
        total = _safe_int(default_total, 0)
    if total <= 0:
        total = max(10, minimum)
    return max(1, total)


@dataclass
class Question:
    prompt: str
    answer: str = ""
    transcript: str = ""
    time_spent: int = 0
    is_answered: bool = False
    answered_at: datetime | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> "Question | None":
        if isinstance(raw, str):
            return cls(prompt=raw) if raw.strip() else None
        if not isinstance(raw, dict):
            return None
        prompt = str(raw.get("question") or raw.get("prompt") or "").strip()
        if not prompt:
            return None
        answered_at = None
        raw_answered_at = raw.get("answeredAt")
        if raw_answered_at:
            try:
                answered_at = datetime.fromisoformat(str(raw_answered_at).replace("Z", "+00:00"))
            except ValueError:
                answered_at = None
        return cls(
            prompt=prompt,
            answer=str(raw.get("answer") or ""),
            transcript=str(raw.get("transcript") or ""),
            time_spent=max(0, _safe_int(raw.get("timeSpent"), 0)),
            is_answered=bool(raw.get("isAnswered", False)),
            answered_at=answered_at,
        )

    def to_payload(self) -> dict:
        return {
            "question": self.prompt,
            "answer": self.answer,
            "transcript": self.transcript,
            "timeSpent": self.time_spent,
            "isAnswered": self.is_answered,
            "answeredAt": self.answered_at.isoformat() if self.answered_at else None,
        }


@dataclass
class InterviewSession:
    session_id: str
    status: SessionStatus = SessionStatus.DRAFT
    questions: list[Question] = field(default_factory=list)
    current_index: int = 0
    total_questions: int = 10
    # Set when the backend reports a current question that is not part of `questions`.
    reported_question: Question | None = None

    @property
    def current_question(self) -> Question | None:
        if self.status != SessionStatus.IN_PROGRESS:
            return None
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return self.reported_question

    @property
    def answered_count(self) -> int:
        return sum(1 for item in self.questions if item.is_answered)

    @property
    def remaining_questions(self) -> int:
        return max(0, self.total_questions - self.answered_count)

    @property
    def progress(self) -> int:
        if self.total_questions <= 0:
            return 0
        return round((self.current_index / self.total_questions) * 100)

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_payload(cls, raw: dict, session_id: str = "", default_total: int | None = None) -> "InterviewSession":
        data = raw if isinstance(raw, dict) else {}
        questions = []
        for item in list(data.get("questions") or []):
            question = Question.from_payload(item)
            if question is not None:
                questions.append(question)

        index = max(0, _safe_int(data.get("currentQuestionIndex"), 0))
        total = _payload_total(data, default_total, minimum=max(index, len(questions)))
        reported = Question.from_payload(data.get("currentQuestion"))

        return cls(
            session_id=str(data.get("_id") or data.get("id") or session_id or ""),
            status=SessionStatus.parse(data.get("status")),
            questions=questions,
            current_index=min(index, total),
            total_questions=total,
            reported_question=reported,
        )

    def to_payload(self) -> dict:
        current = self.current_question
        return {
            "id": self.session_id,
            "status": self.status.value,
            "currentQuestionIndex": self.current_index,
            "totalQuestions": self.total_questions,
            "questions": [item.to_payload() for item in self.questions],
            "currentQuestion": current.to_payload() if current else None,
            "progress": self.progress,
            "answeredQuestions": self.answered_count,
            "remainingQuestions": self.remaining_questions,
        }


@dataclass(frozen=True)
class CategoryScore:
    name: str
    score: int
    comment: str = ""


@dataclass(frozen=True)
class Feedback:
    session_id: str
    total_score: float
    category_scores: tuple[CategoryScore, ...] = ()
    strengths: tuple[str, ...] = ()
    areas_for_improvement: tuple[str, ...] = ()
    final_assessment: str = ""
    generated_at: datetime | None = None

    @classmethod
    def from_payload(cls, raw: dict, session_id: str = "") -> "Feedback":
        data = raw if isinstance(raw, dict) else {}
        categories = []
        for item in list(data.get("categoryScores") or []):
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            if not name:
                continue
            categories.append(CategoryScore(
                name=name,
                score=max(0, min(100, _safe_int(item.get("score"), 0))),
                comment=str(item.get("comment") or ""),
            ))

        total = data.get("totalScore", data.get("overallScore"))
        improvements = data.get("areasForImprovement")
        if improvements is None:
            improvements = list(data.get("weaknesses") or []) + list(data.get("suggestions") or [])

        return cls(
            session_id=str(data.get("interviewId") or session_id or ""),
            total_score=max(0.0, min(100.0, _safe_float(total, 0.0))),
            category_scores=tuple(categories),
            strengths=tuple(str(item) for item in list(data.get("strengths") or []) if str(item).strip()),
            areas_for_improvement=tuple(str(item) for item in list(improvements or []) if str(item).strip()),
            final_assessment=str(data.get("finalAssessment") or data.get("summary") or ""),
        )

    def to_payload(self) -> dict:
        return {
            "interviewId": self.session_id,
            "totalScore": self.total_score,
            "categoryScores": [
                {"name": item.name, "score": item.score, "comment": item.comment}
                for item in self.category_scores
            ],
            "strengths": list(self.strengths),
            "areasForImprovement": list(self.areas_for_improvement),
            "finalAssessment": self.final_assessment,
            "generatedAt": self.generated_at.isoformat() if self.generated_at else None,
        }
