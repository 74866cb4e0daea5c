"""
Exception hierarchy for the categorization engine.

Provider errors are transient and handled inside the orchestrator
cascade. Data-integrity errors (dimension mismatch) are never retried.
"""

from typing import Optional


class SortEngineError(Exception):
    """Base class for all engine errors."""


class ProviderError(SortEngineError):
    """A categorization provider failed."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class ProviderUnavailable(ProviderError):
    """Provider is unreachable or not ready."""


class ProviderTimeout(ProviderUnavailable):
    """Provider did not answer within the per-call timeout."""

    def __init__(self, provider: str, timeout: float):
        self.timeout = timeout
        super().__init__(provider, f"timed out after {timeout:.1f}s")


class InvalidProviderResponse(ProviderError):
    """Provider answered with something that cannot be parsed."""


class AllProvidersFailed(SortEngineError):
    """No provider in the cascade produced a result."""

    def __init__(self, last_error: Optional[Exception] = None, attempted: Optional[list] = None):
        self.last_error = last_error
        self.attempted = list(attempted or [])
        detail = f": {last_error}" if last_error else ""
        super().__init__(
            f"All providers failed (attempted {self.attempted}){detail}"
        )


class DimensionMismatch(SortEngineError):
    """Vector dimensionality differs from the store's."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected {expected}-dim vector, got {actual}")


class PrototypeNotFound(SortEngineError):
    def __init__(self, category_path: str):
        self.category_path = category_path
        super().__init__(f"No prototype for category '{category_path}'")


class PatternNotFound(SortEngineError):
    def __init__(self, pattern_id: str):
        self.pattern_id = pattern_id
        super().__init__(f"No learned pattern with id '{pattern_id}'")


class PersistenceUnavailable(SortEngineError):
    """Backing store could not be read or written."""
