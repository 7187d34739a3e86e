"""Challenge ingestion worker.

Consumes challenge messages from the intake queue, decodes them, upserts
them into the challenge store in batches and routes failures to retry or to
the dead-letter queue.

Topology (single event loop):

    intake x N  --(decode queue)-->  decode x N  --(batch queue)-->  batch x N
        |                                |                              |
    subscribe                     decode failures                 flush + settle
                                  routed immediately

Both queues are bounded, so a slow store backs up through the decode
workers into the intake workers, which stop pulling, which lets the
prefetch window throttle the broker.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Any

from config.config import PipelineConfig
from core.errors import BrokerConnectionError
from core.logging.context import set_log_context
from core.logging.periodic_logger import PeriodicStatsLogger
from core.logging.utilities import log_startup_banner, log_worker_error
from core.utils.worker_id import generate_worker_id
from pipeline import __version__
from pipeline.challenges.batcher import END_OF_STREAM, BatchScheduler
from pipeline.challenges.classifier import FailureClassifier
from pipeline.challenges.errors import DecodeError
from pipeline.challenges.records import InFlightMessage, MessageState
from pipeline.challenges.router import AckOutcome, FailureRouter, settle
from pipeline.challenges.schemas import decode
from pipeline.challenges.storage import ChallengeStore
from pipeline.common.health import HealthCheckServer
from pipeline.common.metrics import (
    record_decode_failure,
    record_message_consumed,
    record_requeue,
    update_connection_status,
)
from pipeline.common.types import MessageBroker

logger = logging.getLogger(__name__)

_DONE_STATES = frozenset(
    {MessageState.PERSIST_OK, MessageState.RETRIED, MessageState.DEAD_LETTERED}
)


class ChallengeIngestionWorker:
    """
    Worker that ingests challenge messages from RabbitMQ into the challenge store.

    Guarantees:
    - a delivery is acknowledged only after it was persisted, or after its
      retry / dead-letter copy was confirmed by the broker
    - anything not settled when shutdown_timeout_seconds runs out is requeued

    Usage:
        >>> worker = ChallengeIngestionWorker(settings, broker, store)
        >>> setup_shutdown_signal_handlers(worker.request_shutdown)
        >>> await worker.run_until_stopped()
    """

    WORKER_NAME = "challenges-ingester"
    STAGE = "ingestion"
    DOMAIN = "challenges"

    HEALTH_CHECK_INTERVAL_SECONDS = 5.0
    RESUBSCRIBE_DELAY_SECONDS = 1.0

    def __init__(
        self,
        settings: PipelineConfig,
        broker: MessageBroker,
        store: ChallengeStore,
        instance_id: str | None = None,
        classifier: FailureClassifier | None = None,
    ):
        self.settings = settings
        self.ingestion = settings.ingestion
        self.broker = broker
        self.store = store

        if instance_id:
            self.worker_id = f"{self.WORKER_NAME}-{instance_id}"
        else:
            self.worker_id = generate_worker_id(self.WORKER_NAME)

        if classifier is None:
            store_classifier = getattr(store, "classify_error", None)
            classifier = FailureClassifier([store] if callable(store_classifier) else [])
        self.router = FailureRouter(broker, settings, classifier)

        self.health_server = HealthCheckServer(
            port=settings.health_port or None,
            worker_name=self.worker_id,
        )

        self._decode_queue: asyncio.Queue | None = None
        self._batch_queue: asyncio.Queue | None = None
        self._intake_tasks: list[asyncio.Task] = []
        self._decode_tasks: list[asyncio.Task] = []
        self._batch_tasks: list[asyncio.Task] = []
        self._health_task: asyncio.Task | None = None
        self._stats_logger: PeriodicStatsLogger | None = None
        self._in_flight: set[InFlightMessage] = set()
        self._shutdown_event = asyncio.Event()
        self._running = False
        self._stopped = False

        # Cycle output tracking
        self._records_consumed = 0
        self._records_succeeded = 0
        self._records_retried = 0
        self._records_dead_lettered = 0
        self._records_requeued = 0
        self._records_decode_failed = 0
        self._batches_flushed = 0

        logger.info(
            "Initialized ChallengeIngestionWorker",
            extra={
                "worker_id": self.worker_id,
                "queue": settings.rabbitmq.queue,
                "prefetch_count": self.ingestion.prefetch_count,
                "intake_concurrency": self.ingestion.intake_concurrency,
                "decode_concurrency": self.ingestion.decode_concurrency,
                "batch_concurrency": self.ingestion.batch_concurrency,
                "batch_size": self.ingestion.batch_size,
                "max_retries": self.ingestion.max_retries,
            },
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def stats(self) -> dict[str, Any]:
        return {
            "records_processed": self._records_consumed,
            "records_succeeded": self._records_succeeded,
            "records_retried": self._records_retried,
            "records_dead_lettered": self._records_dead_lettered,
            "records_requeued": self._records_requeued,
            "records_decode_failed": self._records_decode_failed,
            "batches_flushed": self._batches_flushed,
            "in_flight": len(self._in_flight),
        }

    def request_shutdown(self) -> None:
        """Ask start() to return. Safe to call from a signal handler."""
        if not self._shutdown_event.is_set():
            logger.info("Shutdown requested", extra={"worker_id": self.worker_id})
            self._shutdown_event.set()

    async def run_until_stopped(self) -> None:
        try:
            await self.start()
        finally:
            await self.stop()

    async def start(self) -> None:
        """
        Connect, spawn the intake/decode/batch workers and run until
        request_shutdown() is called or a worker task dies.

        Raises BrokerConnectionError if the broker is unreachable at startup.
        """
        set_log_context(worker_id=self.worker_id, stage=self.STAGE, domain=self.DOMAIN)
        logger.info("Starting ChallengeIngestionWorker")

        # Start health server first for immediate liveness probe response
        await self.health_server.start()

        try:
            await self.broker.connect()
        except BrokerConnectionError as e:
            self.health_server.set_error(f"Broker unavailable: {e}")
            raise
        await self.store.open()

        log_startup_banner(
            logger,
            worker_name="Challenge Ingestion Worker",
            version=__version__,
            worker_id=self.worker_id,
            domain=self.DOMAIN,
            input_queue=self.settings.rabbitmq.queue,
            dead_letter_queue=self.settings.rabbitmq.dead_letter_queue,
            health_port=self.health_server.actual_port,
        )

        self._decode_queue = asyncio.Queue(maxsize=self.ingestion.batch_queue_size)
        self._batch_queue = asyncio.Queue(maxsize=self.ingestion.batch_queue_size)
        self._running = True

        self._stats_logger = PeriodicStatsLogger(
            interval_seconds=self.ingestion.stats_interval_seconds,
            get_stats=self._get_cycle_stats,
            stage=self.STAGE,
            worker_id=self.worker_id,
        )
        self._stats_logger.start()
        self._health_task = asyncio.create_task(self._health_loop(), name="health")

        self._batch_tasks = [
            asyncio.create_task(self._batch_loop(i), name=f"batch-{i}")
            for i in range(self.ingestion.batch_concurrency)
        ]
        self._decode_tasks = [
            asyncio.create_task(self._decode_loop(i), name=f"decode-{i}")
            for i in range(self.ingestion.decode_concurrency)
        ]
        self._intake_tasks = [
            asyncio.create_task(self._intake_loop(i), name=f"intake-{i}")
            for i in range(self.ingestion.intake_concurrency)
        ]

        shutdown_waiter = asyncio.create_task(self._shutdown_event.wait())
        workers = [*self._intake_tasks, *self._decode_tasks, *self._batch_tasks]
        done, _ = await asyncio.wait({shutdown_waiter, *workers}, return_when=asyncio.FIRST_COMPLETED)

        if shutdown_waiter not in done:
            shutdown_waiter.cancel()
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    log_worker_error(
                        logger,
                        f"Worker task {task.get_name()} failed, shutting down",
                        exc=task.exception(),
                    )

    async def stop(self) -> None:
        """
        Drain and shut down.

        Intake stops first. Messages already received are decoded, flushed and
        settled within shutdown_timeout_seconds; whatever is still unsettled
        after that is requeued.
        """
        if self._stopped:
            return
        self._stopped = True
        self._running = False
        logger.info("Stopping ChallengeIngestionWorker", extra=self.stats())

        await self._cancel_tasks(self._intake_tasks)

        if self._decode_queue is not None:
            try:
                await asyncio.wait_for(self._drain(), timeout=self.ingestion.shutdown_timeout_seconds)
            except TimeoutError:
                logger.warning(
                    "Shutdown drain timed out, requeueing unsettled messages",
                    extra={
                        "timeout_seconds": self.ingestion.shutdown_timeout_seconds,
                        "records_requeued": sum(1 for r in self._in_flight if not r.is_settled),
                    },
                )

        await self._cancel_tasks([*self._decode_tasks, *self._batch_tasks])
        await self._requeue_unsettled()

        if self._stats_logger is not None:
            await self._stats_logger.stop()
            self._stats_logger = None
        if self._health_task is not None:
            await self._cancel_tasks([self._health_task])
            self._health_task = None

        await self._close_resource("store", "close")
        await self._close_resource("broker", "close")
        await self._close_resource("health_server", "stop")
        update_connection_status(False)

        logger.info("ChallengeIngestionWorker stopped", extra=self.stats())

    async def _drain(self) -> None:
        for _ in self._decode_tasks:
            await self._decode_queue.put(END_OF_STREAM)
        await asyncio.gather(*self._decode_tasks, return_exceptions=True)

        for _ in self._batch_tasks:
            await self._batch_queue.put(END_OF_STREAM)
        await asyncio.gather(*self._batch_tasks, return_exceptions=True)

    @staticmethod
    async def _cancel_tasks(tasks: list[asyncio.Task]) -> None:
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _close_resource(self, name: str, method: str) -> None:
        """Close a resource by attribute name, logging errors."""
        resource = getattr(self, name, None)
        if resource is None:
            return
        try:
            await getattr(resource, method)()
        except Exception as e:
            logger.error(f"Error stopping {name}", extra={"error": str(e)})

    async def _requeue_unsettled(self) -> None:
        for record in list(self._in_flight):
            if record.is_settled:
                self._in_flight.discard(record)
                continue
            if record.state in _DONE_STATES:
                # Already persisted or republished; only the ack is missing
                await self._settle(record, AckOutcome.ACK)
                continue
            record_requeue("shutdown")
            await self._settle(record, AckOutcome.REQUEUE)

    # ------------------------------------------------------------------
    # Stage loops
    # ------------------------------------------------------------------

    async def _intake_loop(self, index: int) -> None:
        queue_name = self.settings.rabbitmq.queue
        while self._running:
            try:
                subscription = self.broker.subscribe(self.ingestion.prefetch_count)
                async with aclosing(subscription) as envelopes:
                    async for envelope in envelopes:
                        record = InFlightMessage.receive(envelope)
                        self._in_flight.add(record)
                        self._records_consumed += 1
                        record_message_consumed(queue_name)
                        await self._decode_queue.put(record)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_worker_error(
                    logger,
                    "Intake subscription failed, resubscribing",
                    error_category="transient",
                    exc=e,
                    queue=queue_name,
                )
                await asyncio.sleep(self.RESUBSCRIBE_DELAY_SECONDS)

    async def _decode_loop(self, index: int) -> None:
        while True:
            record = await self._decode_queue.get()
            if record is END_OF_STREAM:
                return

            try:
                message = decode(record.original_bytes)
            except DecodeError as e:
                record.mark_decode_failed(e)
                self._records_decode_failed += 1
                record_decode_failure(type(e).__name__)
                logger.debug(
                    "Decode failed",
                    extra={**record.log_context(), "error_type": type(e).__name__},
                )
                await self._route_and_settle(record)
                continue

            record.mark_decoded(message)
            await self._batch_queue.put(record)

    async def _batch_loop(self, index: int) -> None:
        scheduler = BatchScheduler(self.ingestion.batch_size, self.ingestion.batch_timeout_seconds)
        while True:
            batch = await scheduler.next_batch(self._batch_queue)
            if batch is None:
                return

            await scheduler.flush(batch, self.store, self.ingestion.flush_timeout_seconds)
            self._batches_flushed += 1
            await asyncio.gather(*(self._complete(record) for record in batch))

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _complete(self, record: InFlightMessage) -> None:
        if record.state == MessageState.PERSIST_OK:
            self._records_succeeded += 1
            await self._settle(record, AckOutcome.ACK)
        else:
            await self._route_and_settle(record)

    async def _route_and_settle(self, record: InFlightMessage) -> None:
        outcome = await self.router.route(record)
        if outcome == AckOutcome.ACK:
            if record.state == MessageState.RETRIED:
                self._records_retried += 1
            else:
                self._records_dead_lettered += 1
        await self._settle(record, outcome)

    async def _settle(self, record: InFlightMessage, outcome: AckOutcome) -> None:
        if outcome == AckOutcome.REQUEUE:
            self._records_requeued += 1
        try:
            await settle(record, outcome)
        except Exception as e:
            # The broker redelivers anything it never saw settled
            log_worker_error(
                logger,
                "Failed to settle delivery",
                error_category="transient",
                exc=e,
                disposition=outcome.value,
                **record.log_context(),
            )
        finally:
            self._in_flight.discard(record)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    async def _health_loop(self) -> None:
        while True:
            self.health_server.record_heartbeat()
            connected = self.broker.is_connected
            update_connection_status(connected)
            self.health_server.set_ready(
                transport_connected=connected,
                store_reachable=await self.store.ping(),
            )
            await asyncio.sleep(self.HEALTH_CHECK_INTERVAL_SECONDS)

    def _get_cycle_stats(self, cycle_count: int) -> dict[str, Any]:
        return self.stats()


__all__ = ["ChallengeIngestionWorker"]
