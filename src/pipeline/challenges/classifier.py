"""Map a failure cause to a disposition: retry it or dead-letter it."""

from collections.abc import Sequence
from enum import StrEnum

from core.errors import PipelineError, classify_exception
from core.types import ErrorCategory, ErrorClassifier


class Disposition(StrEnum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class FailureClassifier:
    """
    Classify failures for the retry/DLQ router.

    Only PERMANENT failures (decode errors, store validation errors) are
    dead-lettered. TRANSIENT and UNKNOWN failures are retried.

    Exceptions outside the PipelineError hierarchy are offered to the
    component classifiers first (e.g. the store's driver-error mapping), then
    fall back to core.errors.classify_exception.
    """

    def __init__(self, classifiers: Sequence[ErrorClassifier] = ()):
        self._classifiers = list(classifiers)

    def category(self, cause: BaseException) -> ErrorCategory:
        if isinstance(cause, PipelineError):
            return cause.category
        if not isinstance(cause, Exception):
            return ErrorCategory.UNKNOWN

        for classifier in self._classifiers:
            category = classifier.classify_error(cause)
            if category != ErrorCategory.UNKNOWN:
                return category
        return classify_exception(cause)

    def classify(self, cause: BaseException) -> Disposition:
        if self.category(cause) == ErrorCategory.PERMANENT:
            return Disposition.DEAD_LETTER
        return Disposition.RETRY


_default_classifier = FailureClassifier()


def classify(cause: BaseException) -> Disposition:
    """Classify with no component classifiers."""
    return _default_classifier.classify(cause)


__all__ = ["Disposition", "FailureClassifier", "classify"]
