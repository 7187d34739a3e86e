"""
Exception hierarchy and error classification.

Transient errors are retried, permanent errors are dead-lettered; see
core.types.ErrorCategory.
"""

from core.errors.exceptions import (
    BrokerConnectionError,
    ConfigurationError,
    ErrorCategory,
    OperationTimeoutError,
    PermanentError,
    PipelineError,
    TransientError,
    classify_exception,
)

__all__ = [
    "ErrorCategory",
    "PipelineError",
    "TransientError",
    "PermanentError",
    "OperationTimeoutError",
    "BrokerConnectionError",
    "ConfigurationError",
    "classify_exception",
]
