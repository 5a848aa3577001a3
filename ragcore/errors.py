"""
Error types shared across the retrieval and reasoning pipeline.
"""
from typing import Optional


class RagCoreError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(RagCoreError):
    """A required setting or client is missing."""


class UpstreamServiceError(RagCoreError):
    """An external call (LLM, embeddings, vector search, cache) failed for good.

    The last underlying error is chained as ``__cause__``.
    """

    def __init__(self, service: str, message: str, attempts: int = 1):
        super().__init__(f"{service} failed after {attempts} attempt(s): {message}")
        self.service = service
        self.attempts = attempts


class EmbeddingCountMismatchError(RagCoreError):
    """Embedding provider returned a different number of vectors than inputs."""

    def __init__(self, expected: int, received: int):
        super().__init__(f"Expected {expected} embeddings, received {received}")
        self.expected = expected
        self.received = received


class MalformedOutputError(RagCoreError):
    """Model output could not be parsed into the expected structure."""


class RetrievalError(RagCoreError):
    """Retrieval failed entirely, so no grounded context could be built."""

    def __init__(self, message: str, category: Optional[str] = None):
        super().__init__(message)
        self.category = category


class RateLimitExceededError(RagCoreError):
    """Caller exceeded its request budget for the current window."""

    def __init__(self, limit: int, reset_timestamp: int):
        super().__init__(f"Rate limit of {limit} requests exceeded")
        self.limit = limit
        self.reset_timestamp = reset_timestamp
