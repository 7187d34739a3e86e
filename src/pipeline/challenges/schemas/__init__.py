"""Challenge message schema and codec."""

from pipeline.challenges.schemas.codec import (
    REQUIRED_FIELDS,
    build_challenge_message,
    decode,
    encode,
    validate_payload,
)
from pipeline.challenges.schemas.messages import SUPPORTED_SCHEMA_VERSION, ChallengeMessage

__all__ = [
    "ChallengeMessage",
    "SUPPORTED_SCHEMA_VERSION",
    "REQUIRED_FIELDS",
    "decode",
    "encode",
    "build_challenge_message",
    "validate_payload",
]
