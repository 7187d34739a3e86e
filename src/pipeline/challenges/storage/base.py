"""Challenge store contract and the domain rules every backend enforces."""

import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pipeline.challenges.errors import ChallengeValidationError
from pipeline.challenges.schemas.messages import ChallengeMessage

logger = logging.getLogger(__name__)

NAME_MIN_LENGTH = 3


@dataclass(frozen=True)
class ChallengeRecord:
    """A persisted challenge. One row per external_id."""

    id: uuid.UUID
    external_id: str
    name: str
    description: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    inserted_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of one item in a batch upsert."""

    external_id: str
    record: ChallengeRecord | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, record: ChallengeRecord) -> "UpsertResult":
        return cls(external_id=record.external_id, record=record)

    @classmethod
    def failure(cls, external_id: str, error: Exception) -> "UpsertResult":
        return cls(external_id=external_id, error=error)


def validate_challenge(external_id: Any, fields: Mapping[str, Any]) -> None:
    """Raise ChallengeValidationError if the row would violate store rules."""
    errors: dict[str, str] = {}

    if not isinstance(external_id, str) or not external_id:
        errors["external_id"] = "can't be blank"

    name = fields.get("name")
    if not isinstance(name, str) or not name:
        errors["name"] = "can't be blank"
    elif len(name) < NAME_MIN_LENGTH:
        errors["name"] = f"should be at least {NAME_MIN_LENGTH} character(s)"

    description = fields.get("description")
    if description is not None and not isinstance(description, str):
        errors["description"] = "is invalid"

    metadata = fields.get("metadata")
    if metadata is not None and not isinstance(metadata, Mapping):
        errors["metadata"] = "is invalid"

    if errors:
        raise ChallengeValidationError(errors, context={"external_id": external_id})


class ChallengeStore(ABC):
    """
    Idempotent persistence keyed by external_id.

    ``upsert`` raises ChallengeValidationError for rule violations (never
    retried) and StoreUnavailableError or other exceptions for operational
    failures (retried).
    """

    async def open(self) -> None:
        """Acquire resources. No-op by default."""

    async def close(self) -> None:
        """Release resources. No-op by default."""

    async def ping(self) -> bool:
        """Whether the store is currently reachable."""
        return True

    @abstractmethod
    async def upsert(self, external_id: str, fields: Mapping[str, Any]) -> ChallengeRecord: ...

    @abstractmethod
    async def get(self, challenge_id: uuid.UUID) -> ChallengeRecord | None: ...

    @abstractmethod
    async def get_by_external_id(self, external_id: str) -> ChallengeRecord | None: ...

    @abstractmethod
    async def list_all(self) -> list[ChallengeRecord]: ...

    async def upsert_many(self, messages: Sequence[ChallengeMessage]) -> list[UpsertResult]:
        """Upsert each message independently. Results are aligned with input order."""
        results: list[UpsertResult] = []
        for message in messages:
            try:
                record = await self.upsert(message.external_id, message.upsert_fields())
            except Exception as e:
                logger.debug(
                    "Upsert failed",
                    extra={"external_id": message.external_id, "error_type": type(e).__name__},
                )
                results.append(UpsertResult.failure(message.external_id, e))
            else:
                results.append(UpsertResult.success(record))
        return results
