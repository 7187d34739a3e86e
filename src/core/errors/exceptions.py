"""
Pipeline exception hierarchy.

Every exception carries an ErrorCategory so failure paths can pick a
disposition without inspecting error strings. Exceptions from third-party
code are categorized by classify_exception().
"""

# ErrorCategory lives in core.types; enums from two definitions never compare equal
from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} | Caused by: {self.cause}"
        return self.message


# =============================================================================
# Transient: retry
# =============================================================================


class TransientError(PipelineError):
    category = ErrorCategory.TRANSIENT


class OperationTimeoutError(TransientError):
    """Operation exceeded its deadline."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.timeout_seconds = timeout_seconds


class BrokerConnectionError(TransientError):
    """Broker connection could not be established or was lost."""


# =============================================================================
# Permanent: dead-letter
# =============================================================================


class PermanentError(PipelineError):
    category = ErrorCategory.PERMANENT


class ConfigurationError(PermanentError):
    """Invalid or missing configuration."""


# Substrings that mark a foreign exception as transient
TRANSIENT_ERROR_MARKERS = (
    "timeout",
    "timed out",
    "connection",
    "temporarily unavailable",
    "service unavailable",
    "too many connections",
    "deadlock",
    "serialization failure",
)


def classify_exception(exc: Exception) -> ErrorCategory:
    """Categorize any exception; PipelineErrors keep their own category."""
    if isinstance(exc, PipelineError):
        return exc.category
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    text = f"{type(exc).__name__} {exc}".lower()
    if any(marker in text for marker in TRANSIENT_ERROR_MARKERS):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN
