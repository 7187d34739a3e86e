"""Challenge pipeline exceptions.

Decode and validation failures are permanent: the message goes straight to
the dead-letter queue. Store outages, flush timeouts and publish failures are
transient: the message is retried or handed back to the broker.
"""

from core.errors import OperationTimeoutError, PermanentError, TransientError


class DecodeError(PermanentError):
    """Raw payload could not be turned into a ChallengeMessage."""


class MalformedPayloadError(DecodeError):
    """Payload is not UTF-8 JSON, or not a JSON object."""


class MissingFieldsError(DecodeError):
    """One or more required fields are absent, null or empty."""

    def __init__(self, fields: list[str], context: dict | None = None):
        self.fields = list(fields)
        super().__init__(f"Missing required fields: {', '.join(self.fields)}", context=context)


class UnsupportedSchemaVersionError(DecodeError):
    """``schema_version`` is present but not a version this pipeline reads."""

    def __init__(self, version: object, supported: int, context: dict | None = None):
        self.version = version
        self.supported = supported
        super().__init__(
            f"Unsupported schema_version {version!r} (supported: {supported})",
            context=context,
        )


class InvalidFieldTypeError(DecodeError):
    """A field is present with the wrong JSON type."""

    def __init__(self, field: str, expected: str, context: dict | None = None):
        self.field = field
        self.expected = expected
        super().__init__(f"Field '{field}' must be {expected}", context=context)


class ChallengeValidationError(PermanentError):
    """Store domain rules rejected the record. Retrying cannot help."""

    def __init__(self, errors: dict[str, str], context: dict | None = None):
        self.errors = dict(errors)
        details = "; ".join(f"{k}: {v}" for k, v in self.errors.items())
        super().__init__(f"Challenge validation failed: {details}", context=context)


class StoreUnavailableError(TransientError):
    """The store could not be reached or failed operationally."""


class FlushTimeoutError(OperationTimeoutError):
    """A batch flush exceeded flush_timeout_seconds."""


class RoutingError(TransientError):
    """A retry or dead-letter publish failed or timed out."""


class InvalidStateTransition(RuntimeError):
    """An in-flight message was moved along an edge its state machine does not allow."""


__all__ = [
    "DecodeError",
    "MalformedPayloadError",
    "MissingFieldsError",
    "UnsupportedSchemaVersionError",
    "InvalidFieldTypeError",
    "ChallengeValidationError",
    "StoreUnavailableError",
    "FlushTimeoutError",
    "RoutingError",
    "InvalidStateTransition",
]
