"""
Core types and protocols used across modules.

This module provides base types, enums, and protocol definitions that are
shared across the core library to ensure consistency and type safety.
"""

from enum import Enum
from typing import Protocol


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    This enum is used throughout the pipeline to classify errors and determine
    whether a failed message is retried or dead-lettered.

    Categories:
        TRANSIENT: Temporary failures that may succeed on a later attempt
                   (e.g., store timeouts, dropped connections)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., malformed payloads, store validation errors)
        UNKNOWN: Unclassified errors, retried conservatively
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class ErrorClassifier(Protocol):
    """
    Protocol for error classification implementations.

    Stores and transports implement this protocol to classify their own
    exceptions into standard categories.
    """

    def classify_error(self, error: Exception) -> ErrorCategory:
        """
        Classify an exception into an error category.

        Args:
            error: Exception to classify

        Returns:
            ErrorCategory indicating how to handle this error
        """
        ...


__all__ = [
    "ErrorCategory",
    "ErrorClassifier",
]
