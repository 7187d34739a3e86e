"""In-memory challenge store for tests and local runs."""

import asyncio
import copy
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from pipeline.challenges.storage.base import ChallengeRecord, ChallengeStore, validate_challenge


class InMemoryChallengeStore(ChallengeStore):
    """
    Dict-backed store keyed by external_id.

    ``fail_with`` makes every upsert raise the given exception, which lets
    tests simulate an unavailable store.
    """

    def __init__(self):
        self._rows: dict[str, ChallengeRecord] = {}
        self._lock = asyncio.Lock()
        self.fail_with: Exception | None = None
        self.upsert_calls = 0

    async def upsert(self, external_id: str, fields: Mapping[str, Any]) -> ChallengeRecord:
        self.upsert_calls += 1
        if self.fail_with is not None:
            raise self.fail_with

        validate_challenge(external_id, fields)

        async with self._lock:
            now = datetime.now(UTC)
            existing = self._rows.get(external_id)
            if existing is not None and existing.updated_at is not None and now <= existing.updated_at:
                # Keep updated_at strictly increasing on coarse clocks
                now = existing.updated_at + timedelta(microseconds=1)

            record = ChallengeRecord(
                id=existing.id if existing else uuid.uuid4(),
                external_id=external_id,
                name=fields["name"],
                description=fields.get("description"),
                metadata=copy.deepcopy(dict(fields.get("metadata") or {})),
                inserted_at=existing.inserted_at if existing else now,
                updated_at=now,
            )
            self._rows[external_id] = record
            return record

    async def get(self, challenge_id: uuid.UUID) -> ChallengeRecord | None:
        for record in self._rows.values():
            if record.id == challenge_id:
                return record
        return None

    async def get_by_external_id(self, external_id: str) -> ChallengeRecord | None:
        return self._rows.get(external_id)

    async def list_all(self) -> list[ChallengeRecord]:
        return list(self._rows.values())

    def __len__(self) -> int:
        return len(self._rows)
