"""
Exception hierarchy for QuizMe.
"""
from typing import Optional


class QuizMeError(Exception):
    """Base exception for all QuizMe errors."""
    pass


class InsufficientContentError(QuizMeError):
    """Raised when the extracted page text is too short to quiz on."""

    def __init__(self, word_count: int, minimum: int):
        self.word_count = word_count
        self.minimum = minimum
        super().__init__("Not enough readable content on this page")


class ContentExtractionError(QuizMeError):
    """Raised when the page source cannot produce a content snapshot."""
    pass


class ProviderError(QuizMeError):
    """Base exception for LLM provider failures."""
    pass


class ProviderHTTPError(ProviderError):
    """Raised when a provider answers with a non-2xx status."""

    def __init__(self, provider: str, status: int, body: str):
        self.provider = provider
        self.status = status
        self.body = body
        super().__init__(f"{provider} request failed ({status}): {body}")


class MalformedResponseError(ProviderError):
    """Raised when no valid document can be recovered from model output."""

    def __init__(self, message: str, raw_text: Optional[str] = None):
        self.raw_text = raw_text
        super().__init__(message)


class UnknownProviderError(ProviderError):
    """Raised when the configuration names an unsupported backend."""

    def __init__(self, provider: object):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class SessionStoreError(QuizMeError):
    """Raised when the session record cannot be read or written."""
    pass


class ConfigurationError(QuizMeError):
    """Raised when the application configuration cannot be loaded."""
    pass


class QuizControllerError(QuizMeError):
    """Base exception for quiz controller errors."""
    pass


class InvalidSessionStateError(QuizControllerError):
    """Raised when session is in an invalid state for the requested operation."""
    pass


class InvalidAnswerError(QuizControllerError):
    """Raised when an answer references a question or option that does not exist."""
    pass


class UnansweredQuestionError(QuizControllerError):
    """Raised when advancing past a question that has no recorded answer."""
    pass
