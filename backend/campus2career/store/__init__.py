from campus2career.store.base import FeedbackGenerator, InterviewSessionStore
from campus2career.store.http_store import HttpInterviewSessionStore
from campus2career.store.memory_store import InMemoryInterviewSessionStore

__all__ = [
    "FeedbackGenerator",
    "InterviewSessionStore",
    "HttpInterviewSessionStore",
    "InMemoryInterviewSessionStore",
]
