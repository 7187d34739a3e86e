"""
Batch scheduling for decoded challenge messages.

A batch window opens when the first message arrives and closes when
``batch_size`` messages have been collected or ``batch_timeout_seconds`` has
elapsed since that first message, whichever comes first. A window never
opens empty.

Each batch worker owns one BatchScheduler and its current batch; schedulers
share nothing but the input queue.
"""

import asyncio
import logging
import time
import uuid

from pipeline.challenges.errors import FlushTimeoutError, StoreUnavailableError
from pipeline.challenges.records import InFlightMessage, MessageState
from pipeline.challenges.storage import ChallengeStore, UpsertResult
from pipeline.common.metrics import record_batch_flush, record_persisted

logger = logging.getLogger(__name__)

# Put on a batch queue once per batch worker to end its stream
END_OF_STREAM = None


class BatchScheduler:
    """Accumulate decoded messages into batches and flush them to the store."""

    def __init__(self, batch_size: int, batch_timeout_seconds: float):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if batch_timeout_seconds <= 0:
            raise ValueError(f"batch_timeout_seconds must be > 0, got {batch_timeout_seconds}")
        self.batch_size = batch_size
        self.batch_timeout_seconds = batch_timeout_seconds
        self.closed = False
        self.batches_flushed = 0

    async def next_batch(self, queue: asyncio.Queue) -> list[InFlightMessage] | None:
        """
        Wait for the next batch.

        Returns None once END_OF_STREAM is read with nothing accumulated. If
        END_OF_STREAM arrives mid-window, the partial batch is returned and
        the following call returns None.
        """
        if self.closed:
            return None

        first = await queue.get()
        if first is END_OF_STREAM:
            self.closed = True
            return None

        batch = [first]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.batch_timeout_seconds

        while len(batch) < self.batch_size:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                item = await asyncio.wait_for(queue.get(), timeout=remaining)
            except TimeoutError:
                break
            if item is END_OF_STREAM:
                self.closed = True
                break
            batch.append(item)

        for record in batch:
            record.transition(MessageState.BATCHED)
        return batch

    async def flush(
        self,
        batch: list[InFlightMessage],
        store: ChallengeStore,
        timeout: float,
    ) -> list[UpsertResult]:
        """
        Persist a batch with one store call and record per-item outcomes.

        Results are aligned with ``batch``. A timeout or exception from the
        store fails every item with a transient error.
        """
        if not batch:
            return []

        batch_id = uuid.uuid4().hex[:8]
        messages = [record.message for record in batch]
        started = time.perf_counter()

        try:
            results = await asyncio.wait_for(store.upsert_many(messages), timeout=timeout)
            if len(results) != len(batch):
                raise StoreUnavailableError(
                    f"Store returned {len(results)} results for a batch of {len(batch)}"
                )
        except TimeoutError as e:
            error = FlushTimeoutError(
                f"Batch flush exceeded {timeout}s", timeout_seconds=timeout, cause=e
            )
            results = [UpsertResult.failure(m.external_id, error) for m in messages]
        except Exception as e:
            error = e if isinstance(e, StoreUnavailableError) else StoreUnavailableError(
                "Batch flush failed", cause=e
            )
            results = [UpsertResult.failure(m.external_id, error) for m in messages]

        duration = time.perf_counter() - started
        record_batch_flush(len(batch), duration)

        succeeded = 0
        for record, result in zip(batch, results):
            if result.ok:
                record.transition(MessageState.PERSIST_OK)
                succeeded += 1
            else:
                record.mark_persist_failed(result.error)

        record_persisted(succeeded)
        self.batches_flushed += 1

        log = logger.debug if succeeded == len(batch) else logger.info
        log(
            "Batch flushed",
            extra={
                "batch_id": batch_id,
                "batch_size": len(batch),
                "records_succeeded": succeeded,
                "records_failed": len(batch) - succeeded,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return results


__all__ = ["BatchScheduler", "END_OF_STREAM"]
