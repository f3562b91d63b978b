from campus2career.feedback.generator import LLMFeedbackGenerator, StoreFeedbackGenerator

__all__ = ["LLMFeedbackGenerator", "StoreFeedbackGenerator"]
