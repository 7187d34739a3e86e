"""
End-to-end tests for ChallengeIngestionWorker.

Runs the full intake -> decode -> batch -> settle pipeline against the
in-memory broker and store. No RabbitMQ or PostgreSQL required.
"""

import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from core.errors import BrokerConnectionError
from pipeline.challenges.router import DEAD_LETTER_REASON_HEADER, ERROR_TYPE_HEADER
from pipeline.challenges.storage import InMemoryChallengeStore
from pipeline.challenges.workers.ingestion_worker import ChallengeIngestionWorker
from pipeline.common.dummy import InMemoryBroker
from pipeline.common.types import RETRY_COUNT_HEADER


class _BlockingStore(InMemoryChallengeStore):
    """Store whose batch upserts wait until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def upsert_many(self, messages):
        await self.release.wait()
        return await super().upsert_many(messages)


class _UnreachableBroker(InMemoryBroker):
    async def connect(self):
        raise BrokerConnectionError("connection refused")


async def _eventually(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@asynccontextmanager
async def running(worker):
    task = asyncio.create_task(worker.start())
    try:
        yield worker
    finally:
        worker.request_shutdown()
        await asyncio.wait_for(task, 5.0)
        await worker.stop()


@pytest.fixture
def broker(pipeline_config):
    return InMemoryBroker(pipeline_config.rabbitmq)


@pytest.fixture
def store():
    return InMemoryChallengeStore()


@pytest.fixture
def worker(pipeline_config, broker, store):
    return ChallengeIngestionWorker(pipeline_config, broker, store, instance_id="test")


class TestWorkerInitialization:
    def test_worker_id_uses_instance_id(self, worker):
        assert worker.worker_id == "challenges-ingester-test"

    def test_health_server_disabled_for_port_zero(self, worker):
        assert worker.health_server.is_enabled is False

    def test_generated_worker_id(self, pipeline_config, broker, store):
        worker = ChallengeIngestionWorker(pipeline_config, broker, store)
        assert worker.worker_id.startswith("challenges-ingester-")


class TestHappyPath:
    async def test_valid_messages_are_persisted_and_acked(self, worker, broker, store, payload):
        for i in range(12):
            broker.enqueue(payload(external_id=f"c{i}", name=f"Challenge {i}"))

        async with running(worker):
            await broker.wait_until_idle()

        assert len(store) == 12
        assert len(broker.acked) == 12
        assert broker.published == []
        stats = worker.stats()
        assert stats["records_succeeded"] == 12
        assert stats["in_flight"] == 0

    async def test_minimal_payload_gets_defaults(self, worker, broker, store):
        broker.enqueue(b'{"schema_version":1,"external_id":"c1","name":"Launch"}')

        async with running(worker):
            await broker.wait_until_idle()

        record = await store.get_by_external_id("c1")
        assert record.description is None
        assert record.metadata == {}

    async def test_redelivery_updates_existing_record(self, worker, broker, store, payload):
        async with running(worker):
            broker.enqueue(payload(name="Launch"))
            await broker.wait_until_idle()
            first = await store.get_by_external_id("c1")

            broker.enqueue(payload(name="Launch v2"))
            await broker.wait_until_idle()

        [record] = await store.list_all()
        assert record.name == "Launch v2"
        assert record.id == first.id


class TestDecodeFailures:
    async def test_malformed_payload_is_dead_lettered(self, worker, broker, store):
        broker.enqueue(b"not-json")

        async with running(worker):
            await broker.wait_until_idle()

        [dead] = broker.dead_letters
        assert dead.body == b"not-json"
        assert dead.headers[RETRY_COUNT_HEADER] == 0
        assert dead.headers[ERROR_TYPE_HEADER] == "MalformedPayloadError"
        assert len(broker.acked) == 1
        assert len(store) == 0
        assert worker.stats()["records_decode_failed"] == 1

    async def test_missing_field_is_dead_lettered(self, worker, broker, payload):
        broker.enqueue(json.dumps({"schema_version": 1, "name": "Launch"}).encode())

        async with running(worker):
            await broker.wait_until_idle()

        [dead] = broker.dead_letters
        assert dead.headers[ERROR_TYPE_HEADER] == "MissingFieldsError"
        assert dead.headers[DEAD_LETTER_REASON_HEADER] == "permanent"

    async def test_bad_messages_do_not_block_good_ones(self, worker, broker, store, payload):
        broker.enqueue(payload(external_id="good-1"))
        broker.enqueue(b"[]")
        broker.enqueue(payload(external_id="good-2"))

        async with running(worker):
            await broker.wait_until_idle()

        assert len(store) == 2
        assert len(broker.dead_letters) == 1
        assert len(broker.acked) == 3

    async def test_deeply_nested_payload_does_not_stop_worker(self, worker, broker, store, payload):
        nested = b"[" * 100_000
        broker.enqueue(nested)
        broker.enqueue(payload(external_id="after-nested"))

        async with running(worker):
            await broker.wait_until_idle()
            await _eventually(lambda: len(store) == 1)
            assert worker.is_running

        [dead] = broker.dead_letters
        assert dead.body == nested
        assert dead.headers[ERROR_TYPE_HEADER] == "MalformedPayloadError"
        assert broker.requeued == []
        assert await store.get_by_external_id("after-nested") is not None


class TestPersistFailures:
    async def test_store_validation_failure_is_dead_lettered(self, worker, broker, store, payload):
        broker.enqueue(payload(name="ab"))

        async with running(worker):
            await broker.wait_until_idle()

        [dead] = broker.dead_letters
        assert dead.headers[ERROR_TYPE_HEADER] == "ChallengeValidationError"
        assert broker.retries == []

    async def test_transient_failure_retries_until_exhausted(self, worker, broker, store, payload):
        store.fail_with = RuntimeError("store hiccup")
        body = payload()
        broker.enqueue(body)

        async with running(worker):
            await broker.wait_until_idle()

        assert [m.headers[RETRY_COUNT_HEADER] for m in broker.retries] == [1, 2, 3]
        assert all(m.body == body for m in broker.retries)
        [dead] = broker.dead_letters
        assert dead.body == body
        assert dead.headers[RETRY_COUNT_HEADER] == 3
        assert dead.headers[DEAD_LETTER_REASON_HEADER] == "exhausted"
        assert len(broker.acked) == 4
        stats = worker.stats()
        assert stats["records_retried"] == 3
        assert stats["records_dead_lettered"] == 1

    async def test_recovers_when_store_comes_back(self, worker, broker, store, payload):
        store.fail_with = RuntimeError("store hiccup")
        broker.enqueue(payload())

        async with running(worker):
            await _eventually(lambda: len(broker.retries) >= 1)
            store.fail_with = None
            await broker.wait_until_idle()

        assert len(store) == 1
        assert broker.dead_letters == []


class TestRoutingFailures:
    async def test_failed_dead_letter_publish_requeues_delivery(self, worker, broker, store):
        broker.fail_publish_routing_keys.add(broker.config.dead_letter_routing_key)
        broker.enqueue(b"not-json")

        async with running(worker):
            await _eventually(lambda: len(broker.requeued) >= 1)
            broker.fail_publish_routing_keys.clear()
            await broker.wait_until_idle()

        assert len(broker.dead_letters) == 1
        assert broker.requeued[0].settled == "requeue"
        assert worker.stats()["records_requeued"] >= 1


class TestBackpressure:
    async def test_unsettled_deliveries_bounded_by_prefetch(self, pipeline_config, broker, payload):
        pipeline_config.ingestion.flush_timeout_seconds = 30.0
        store = _BlockingStore()
        worker = ChallengeIngestionWorker(pipeline_config, broker, store, instance_id="bp")
        for i in range(50):
            broker.enqueue(payload(external_id=f"c{i}"))

        async with running(worker):
            await _eventually(lambda: broker.unsettled_count == pipeline_config.ingestion.prefetch_count)
            await asyncio.sleep(0.05)
            assert broker.unsettled_count == pipeline_config.ingestion.prefetch_count
            assert broker.pending_count == 50 - pipeline_config.ingestion.prefetch_count

            store.release.set()
            await broker.wait_until_idle()

        assert len(store) == 50


class TestShutdown:
    async def test_unsettled_messages_are_requeued(self, pipeline_config, broker, payload):
        pipeline_config.ingestion.flush_timeout_seconds = 30.0
        pipeline_config.ingestion.shutdown_timeout_seconds = 0.2
        store = _BlockingStore()
        worker = ChallengeIngestionWorker(pipeline_config, broker, store, instance_id="sd")
        for i in range(4):
            broker.enqueue(payload(external_id=f"c{i}"))

        async with running(worker):
            await _eventually(lambda: broker.unsettled_count == 4)

        assert broker.unsettled_count == 0
        assert len(broker.requeued) == 4
        assert broker.acked == []
        assert broker.pending_count == 4
        assert len(store) == 0
        assert worker.in_flight_count == 0

    async def test_in_flight_work_drains_before_stop(self, worker, broker, store, payload):
        for i in range(3):
            broker.enqueue(payload(external_id=f"c{i}"))

        async with running(worker):
            await _eventually(lambda: len(broker.acked) + broker.unsettled_count == 3)

        assert len(store) == 3
        assert len(broker.acked) == 3
        assert broker.requeued == []

    async def test_stop_is_idempotent(self, worker, broker):
        async with running(worker):
            pass
        await worker.stop()
        assert worker.is_running is False
        assert broker.is_connected is False


class TestStartupFailure:
    async def test_unreachable_broker_raises(self, pipeline_config, store):
        worker = ChallengeIngestionWorker(pipeline_config, _UnreachableBroker(), store)

        with pytest.raises(BrokerConnectionError):
            await worker.run_until_stopped()

        assert worker.health_server.error_message is not None
