"""Decode raw intake payloads into ChallengeMessage and encode them back.

Checks run in a fixed order and the first failing check wins:

1. JSON parse (UTF-8, strict JSON, object)    -> MalformedPayloadError
2. schema_version, when present               -> UnsupportedSchemaVersionError
3. required fields absent, null or ""         -> MissingFieldsError
4. field types                                -> InvalidFieldTypeError
5. defaults (description None, metadata {})
"""

import json
import math
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from pipeline.challenges.errors import (
    InvalidFieldTypeError,
    MalformedPayloadError,
    MissingFieldsError,
    UnsupportedSchemaVersionError,
)
from pipeline.challenges.schemas.messages import SUPPORTED_SCHEMA_VERSION, ChallengeMessage

REQUIRED_FIELDS = ("schema_version", "external_id", "name")

_EXPECTED_TYPES = {
    "schema_version": "an integer",
    "external_id": "a string",
    "name": "a string",
    "description": "a string or null",
    "metadata": "an object or null",
}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def _is_supported_version(value: Any) -> bool:
    # bool is an int subclass and 1.0 == 1, neither is accepted
    return type(value) is int and value == SUPPORTED_SCHEMA_VERSION


def validate_payload(data: Mapping[str, Any]) -> ChallengeMessage:
    """Run checks 2-5 on an already parsed JSON object."""
    version = data.get("schema_version")
    if not _is_blank(version) and not _is_supported_version(version):
        raise UnsupportedSchemaVersionError(version, SUPPORTED_SCHEMA_VERSION)

    missing = [name for name in REQUIRED_FIELDS if _is_blank(data.get(name))]
    if missing:
        raise MissingFieldsError(missing)

    try:
        return ChallengeMessage.model_validate(dict(data))
    except ValidationError as e:
        first = e.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else "payload"
        raise InvalidFieldTypeError(
            field,
            _EXPECTED_TYPES.get(field, "valid"),
            context={"detail": first.get("msg")},
        ) from e


def _reject_constant(token: str) -> Any:
    raise MalformedPayloadError(f"Payload contains non-standard JSON constant {token}")


def _finite_float(token: str) -> float:
    value = float(token)
    if not math.isfinite(value):
        raise MalformedPayloadError(f"Payload number {token} is out of range")
    return value


def decode(raw: bytes) -> ChallengeMessage:
    """Decode one intake payload. Raises a DecodeError subclass on any failure."""
    try:
        text = bytes(raw).decode("utf-8")
        data = json.loads(text, parse_constant=_reject_constant, parse_float=_finite_float)
    except (TypeError, UnicodeDecodeError) as e:
        raise MalformedPayloadError("Payload is not UTF-8 text", cause=e) from e
    except ValueError as e:
        raise MalformedPayloadError("Payload is not valid JSON", cause=e) from e
    except RecursionError as e:
        raise MalformedPayloadError("Payload nesting is too deep", cause=e) from e

    if not isinstance(data, dict):
        raise MalformedPayloadError(
            f"Payload must be a JSON object, got {type(data).__name__}",
        )

    return validate_payload(data)


def encode(message: ChallengeMessage) -> bytes:
    """Serialize a message to UTF-8 JSON bytes."""
    return message.model_dump_json().encode("utf-8")


def build_challenge_message(attrs: Mapping[str, Any]) -> ChallengeMessage:
    """Build an outgoing message from challenge attributes.

    Stamps the supported schema_version and defaults metadata to ``{}``.
    Raises the same DecodeError subclasses as decode() for bad attributes.
    """
    payload = {
        "schema_version": SUPPORTED_SCHEMA_VERSION,
        "external_id": attrs.get("external_id"),
        "name": attrs.get("name"),
        "description": attrs.get("description"),
        "metadata": attrs.get("metadata") or {},
    }
    return validate_payload(payload)


__all__ = ["REQUIRED_FIELDS", "decode", "encode", "build_challenge_message", "validate_payload"]
