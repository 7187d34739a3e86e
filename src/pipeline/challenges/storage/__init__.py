"""Challenge persistence.

The PostgreSQL store is imported lazily by create_store() so that the
in-memory backend works without psycopg loaded.
"""

from config.config import StoreConfig
from pipeline.challenges.storage.base import (
    ChallengeRecord,
    ChallengeStore,
    UpsertResult,
    validate_challenge,
)
from pipeline.challenges.storage.memory import InMemoryChallengeStore


def create_store(config: StoreConfig) -> ChallengeStore:
    """Build the configured store backend (not yet opened)."""
    if config.backend == "postgres":
        from pipeline.challenges.storage.postgres import PostgresChallengeStore

        return PostgresChallengeStore(config)
    return InMemoryChallengeStore()


__all__ = [
    "ChallengeRecord",
    "ChallengeStore",
    "UpsertResult",
    "InMemoryChallengeStore",
    "create_store",
    "validate_challenge",
]
