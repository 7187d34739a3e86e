"""PostgreSQL challenge store (psycopg 3 + psycopg_pool).

Each item is written in its own transaction with
``INSERT ... ON CONFLICT (external_id) DO UPDATE``, so re-delivery updates the
existing row in place and one bad item never rolls back its batch siblings.
"""

import logging
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import psycopg
import psycopg.errors as pg_errors
from psycopg import sql as psql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from config.config import StoreConfig
from core.types import ErrorCategory
from pipeline.challenges.errors import ChallengeValidationError, StoreUnavailableError
from pipeline.challenges.schemas.messages import ChallengeMessage
from pipeline.challenges.storage.base import (
    NAME_MIN_LENGTH,
    ChallengeRecord,
    ChallengeStore,
    UpsertResult,
    validate_challenge,
)

logger = logging.getLogger(__name__)

COLUMNS = ("id", "external_id", "name", "description", "metadata", "inserted_at", "updated_at")
UPDATE_COLUMNS = ("name", "description", "metadata", "updated_at")


def upsert_statement(
    table: str,
    cols: Sequence[str],
    conflict_cols: Sequence[str],
    update_cols: Sequence[str],
) -> psql.Composed:
    """INSERT ... ON CONFLICT ... DO UPDATE ... RETURNING with named parameters (%(name)s)."""
    ins_cols = psql.SQL(", ").join(psql.Identifier(c) for c in cols)
    ins_vals = psql.SQL(", ").join(psql.Placeholder(c) for c in cols)
    conflict = psql.SQL(", ").join(psql.Identifier(c) for c in conflict_cols)
    setlist = psql.SQL(", ").join(
        psql.SQL("{} = EXCLUDED.{}").format(psql.Identifier(c), psql.Identifier(c))
        for c in update_cols
    )
    return psql.SQL(
        "INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO UPDATE SET {} RETURNING {}"
    ).format(psql.Identifier(table), ins_cols, ins_vals, conflict, setlist, ins_cols)


def schema_statements(table: str) -> list[psql.Composed]:
    return [
        psql.SQL(
            "CREATE TABLE IF NOT EXISTS {} ("
            "id uuid PRIMARY KEY, "
            "external_id text NOT NULL, "
            "name text NOT NULL CHECK (char_length(name) >= {}), "
            "description text, "
            "metadata jsonb NOT NULL DEFAULT '{{}}'::jsonb, "
            "inserted_at timestamptz NOT NULL, "
            "updated_at timestamptz NOT NULL)"
        ).format(psql.Identifier(table), psql.Literal(NAME_MIN_LENGTH)),
        psql.SQL("CREATE UNIQUE INDEX IF NOT EXISTS {} ON {} (external_id)").format(
            psql.Identifier(f"{table}_external_id_index"), psql.Identifier(table)
        ),
    ]


def map_db_error(e: Exception, external_id: str | None = None) -> Exception:
    """Translate a driver error into the pipeline taxonomy."""
    context = {"external_id": external_id, "error_type": type(e).__name__}
    if isinstance(e, (pg_errors.IntegrityError, pg_errors.DataError)):
        return ChallengeValidationError({"row": str(e).strip() or type(e).__name__}, context=context)
    if isinstance(e, (psycopg.OperationalError, PoolTimeout)):
        return StoreUnavailableError("Challenge store unavailable", cause=e, context=context)
    return e


def _row_to_record(row: Mapping[str, Any]) -> ChallengeRecord:
    return ChallengeRecord(
        id=row["id"],
        external_id=row["external_id"],
        name=row["name"],
        description=row["description"],
        metadata=dict(row["metadata"] or {}),
        inserted_at=row["inserted_at"],
        updated_at=row["updated_at"],
    )


class PostgresChallengeStore(ChallengeStore):
    """Challenge store backed by a PostgreSQL table with a unique external_id index."""

    def __init__(self, config: StoreConfig, pool: AsyncConnectionPool | None = None):
        self.config = config
        self.table = config.table
        self.pool = pool or AsyncConnectionPool(
            conninfo=config.dsn,
            min_size=config.min_pool_size,
            max_size=config.max_pool_size,
            kwargs={"autocommit": True},
            open=False,
        )
        self._upsert_sql = upsert_statement(self.table, COLUMNS, ("external_id",), UPDATE_COLUMNS)

    async def open(self) -> None:
        await self.pool.open()
        logger.info("Opened challenge store pool", extra={"dsn": self.config.dsn})

    async def close(self) -> None:
        await self.pool.close()

    async def ping(self) -> bool:
        try:
            async with self.pool.connection() as conn:
                await conn.execute("SELECT 1")
            return True
        except (psycopg.Error, PoolTimeout) as e:
            logger.warning("Challenge store ping failed", extra={"error": str(e)})
            return False

    async def ensure_schema(self) -> None:
        """Create the challenges table and its unique index if missing."""
        async with self.pool.connection() as conn:
            async with conn.transaction():
                for statement in schema_statements(self.table):
                    await conn.execute(statement)
        logger.info(f"Challenge store schema ready: {self.table}")

    def classify_error(self, error: Exception) -> ErrorCategory:
        if isinstance(error, (pg_errors.IntegrityError, pg_errors.DataError)):
            return ErrorCategory.PERMANENT
        if isinstance(error, (psycopg.OperationalError, PoolTimeout)):
            return ErrorCategory.TRANSIENT
        return ErrorCategory.UNKNOWN

    def _params(self, external_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        now = datetime.now(UTC)
        return {
            "id": uuid.uuid4(),
            "external_id": external_id,
            "name": fields["name"],
            "description": fields.get("description"),
            "metadata": Jsonb(dict(fields.get("metadata") or {})),
            "inserted_at": now,
            "updated_at": now,
        }

    async def _upsert_on(
        self,
        conn: psycopg.AsyncConnection,
        external_id: str,
        fields: Mapping[str, Any],
    ) -> ChallengeRecord:
        validate_challenge(external_id, fields)
        try:
            async with conn.transaction():
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(self._upsert_sql, self._params(external_id, fields))
                    row = await cur.fetchone()
        except psycopg.Error as e:
            raise map_db_error(e, external_id) from e
        if row is None:
            raise StoreUnavailableError(
                "Upsert returned no row", context={"external_id": external_id}
            )
        return _row_to_record(row)

    async def upsert(self, external_id: str, fields: Mapping[str, Any]) -> ChallengeRecord:
        try:
            async with self.pool.connection() as conn:
                return await self._upsert_on(conn, external_id, fields)
        except PoolTimeout as e:
            raise map_db_error(e, external_id) from e

    async def upsert_many(self, messages: Sequence[ChallengeMessage]) -> list[UpsertResult]:
        """Write a batch over one pooled connection, one transaction per item."""
        if not messages:
            return []
        try:
            async with self.pool.connection() as conn:
                results = []
                for message in messages:
                    try:
                        record = await self._upsert_on(
                            conn, message.external_id, message.upsert_fields()
                        )
                    except Exception as e:
                        results.append(UpsertResult.failure(message.external_id, e))
                    else:
                        results.append(UpsertResult.success(record))
                return results
        except (PoolTimeout, psycopg.OperationalError) as e:
            error = map_db_error(e)
            logger.warning(
                "Challenge store unavailable for batch",
                extra={"batch_size": len(messages), "error": str(e)},
            )
            return [UpsertResult.failure(m.external_id, error) for m in messages]

    async def _fetch_one(self, column: str, value: Any) -> ChallengeRecord | None:
        query = psql.SQL("SELECT {} FROM {} WHERE {} = %s").format(
            psql.SQL(", ").join(psql.Identifier(c) for c in COLUMNS),
            psql.Identifier(self.table),
            psql.Identifier(column),
        )
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, (value,))
                row = await cur.fetchone()
        return _row_to_record(row) if row else None

    async def get(self, challenge_id: uuid.UUID) -> ChallengeRecord | None:
        return await self._fetch_one("id", challenge_id)

    async def get_by_external_id(self, external_id: str) -> ChallengeRecord | None:
        return await self._fetch_one("external_id", external_id)

    async def list_all(self) -> list[ChallengeRecord]:
        query = psql.SQL("SELECT {} FROM {} ORDER BY inserted_at").format(
            psql.SQL(", ").join(psql.Identifier(c) for c in COLUMNS),
            psql.Identifier(self.table),
        )
        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query)
                rows = await cur.fetchall()
        return [_row_to_record(row) for row in rows]
