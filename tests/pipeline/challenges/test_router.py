"""Tests for retry / dead-letter routing and settlement."""

import asyncio

import pytest

from config.config import config_from_dict
from core.types import ErrorCategory
from pipeline.challenges.classifier import Disposition
from pipeline.challenges.errors import (
    MalformedPayloadError,
    MissingFieldsError,
    StoreUnavailableError,
)
from pipeline.challenges.records import MessageState
from pipeline.challenges.router import (
    DEAD_LETTER_REASON_HEADER,
    ERROR_CATEGORY_HEADER,
    ERROR_MESSAGE_HEADER,
    ERROR_TYPE_HEADER,
    AckOutcome,
    FailureRouter,
    create_dlq_headers,
    settle,
    should_send_to_dlq,
)
from pipeline.challenges.schemas import decode
from pipeline.common.dummy import InMemoryBroker
from pipeline.common.types import RETRY_COUNT_HEADER, EnvelopeHeaders

INTAKE = "challenges.ingest"
DLQ = "challenges.ingest.dlq"


@pytest.fixture
def settings():
    return config_from_dict(
        {"ingestion": {"max_retries": 5, "publish_timeout_seconds": 0.05}}
    )


@pytest.fixture
async def broker(settings):
    broker = InMemoryBroker(settings.rabbitmq)
    await broker.connect()
    return broker


def _persist_failed(settle_log, body, retry_count, error, **headers):
    record = settle_log.record(body, retry_count=retry_count, **headers)
    record.mark_decoded(decode(body))
    record.transition(MessageState.BATCHED)
    record.mark_persist_failed(error)
    return record


def _decode_failed(settle_log, body, error):
    record = settle_log.record(body)
    record.mark_decode_failed(error)
    return record


class TestShouldSendToDlq:
    def test_permanent_always_dead_lettered(self):
        assert should_send_to_dlq(Disposition.DEAD_LETTER, 0, 5) == (True, "permanent")

    def test_retry_below_max(self):
        assert should_send_to_dlq(Disposition.RETRY, 4, 5) == (False, "")

    def test_retry_at_max_is_exhausted(self):
        assert should_send_to_dlq(Disposition.RETRY, 5, 5) == (True, "exhausted")

    def test_zero_max_retries_dead_letters_first_failure(self):
        assert should_send_to_dlq(Disposition.RETRY, 0, 0) == (True, "exhausted")


class TestCreateDlqHeaders:
    def test_adds_diagnostics_and_keeps_retry_count(self):
        headers = EnvelopeHeaders(retry_count=2, extra={"x-trace": "t"})

        result = create_dlq_headers(headers, MissingFieldsError(["name"]), ErrorCategory.PERMANENT, "permanent")

        assert result.retry_count == 2
        assert result.extra["x-trace"] == "t"
        assert result.extra[ERROR_CATEGORY_HEADER] == "permanent"
        assert result.extra[ERROR_TYPE_HEADER] == "MissingFieldsError"
        assert result.extra[ERROR_MESSAGE_HEADER] == "Missing required fields: name"
        assert result.extra[DEAD_LETTER_REASON_HEADER] == "permanent"

    def test_truncates_long_messages(self):
        result = create_dlq_headers(
            EnvelopeHeaders(), RuntimeError("x" * 1000), ErrorCategory.UNKNOWN, "exhausted"
        )
        assert len(result.extra[ERROR_MESSAGE_HEADER]) == 500


class TestFailureRouterDeadLetter:
    async def test_malformed_payload_is_dead_lettered_with_zero_retries(
        self, settings, broker, settle_log
    ):
        record = _decode_failed(settle_log, b"not-json", MalformedPayloadError("bad"))

        outcome = await FailureRouter(broker, settings).route(record)

        assert outcome == AckOutcome.ACK
        assert record.state == MessageState.DEAD_LETTERED
        [dead] = broker.dead_letters
        assert dead.body == b"not-json"
        assert dead.headers[RETRY_COUNT_HEADER] == 0
        assert dead.headers[DEAD_LETTER_REASON_HEADER] == "permanent"
        assert dead.headers[ERROR_TYPE_HEADER] == "MalformedPayloadError"
        assert broker.retries == []

    async def test_missing_fields_is_dead_lettered(self, settings, broker, settle_log):
        body = b'{"schema_version":1,"name":"Launch"}'
        record = _decode_failed(settle_log, body, MissingFieldsError(["external_id"]))

        assert await FailureRouter(broker, settings).route(record) == AckOutcome.ACK
        assert broker.dead_letters[0].headers[ERROR_CATEGORY_HEADER] == "permanent"

    async def test_exhausted_retries_are_dead_lettered(self, settings, broker, settle_log, payload):
        record = _persist_failed(settle_log, payload(), 5, RuntimeError("OtherError"))

        outcome = await FailureRouter(broker, settings).route(record)

        assert outcome == AckOutcome.ACK
        [dead] = broker.dead_letters
        assert dead.headers[RETRY_COUNT_HEADER] == 5
        assert dead.headers[DEAD_LETTER_REASON_HEADER] == "exhausted"
        assert broker.retries == []


class TestFailureRouterRetry:
    async def test_transient_failure_republished_with_incremented_count(
        self, settings, broker, settle_log, payload
    ):
        body = payload()
        record = _persist_failed(settle_log, body, 2, RuntimeError("OtherError"), **{"x-trace": "t"})

        outcome = await FailureRouter(broker, settings).route(record)

        assert outcome == AckOutcome.ACK
        assert record.state == MessageState.RETRIED
        [retry] = broker.retries
        assert retry.body == body
        assert retry.headers == {"x-trace": "t", RETRY_COUNT_HEADER: 3}
        assert broker.dead_letters == []

    async def test_body_is_republished_byte_for_byte(self, settings, broker, settle_log):
        body = b'{ "schema_version" : 1, "external_id":"c1",   "name":"Launch" }'
        record = _persist_failed(settle_log, body, 0, StoreUnavailableError("down"))

        await FailureRouter(broker, settings).route(record)

        assert broker.retries[0].body == body


class TestFailureRouterPublishFailure:
    async def test_publish_failure_requeues(self, settings, broker, settle_log, payload):
        broker.fail_publish_routing_keys.add(INTAKE)
        record = _persist_failed(settle_log, payload(), 0, StoreUnavailableError("down"))

        outcome = await FailureRouter(broker, settings).route(record)

        assert outcome == AckOutcome.REQUEUE
        assert record.state == MessageState.CLASSIFIED
        assert broker.published == []

    async def test_dead_letter_publish_failure_requeues(self, settings, broker, settle_log):
        broker.fail_publish_routing_keys.add(DLQ)
        record = _decode_failed(settle_log, b"not-json", MalformedPayloadError("bad"))

        assert await FailureRouter(broker, settings).route(record) == AckOutcome.REQUEUE

    async def test_publish_timeout_requeues(self, settings, broker, settle_log, payload):
        broker.publish_delay_seconds = 1.0
        record = _persist_failed(settle_log, payload(), 0, StoreUnavailableError("down"))

        outcome = await asyncio.wait_for(FailureRouter(broker, settings).route(record), 2.0)

        assert outcome == AckOutcome.REQUEUE
        assert broker.published == []

    async def test_route_without_failure_raises(self, settings, broker, settle_log, payload):
        record = settle_log.record(payload())
        with pytest.raises(ValueError):
            await FailureRouter(broker, settings).route(record)


class TestSettle:
    async def test_ack_after_route(self, settings, broker, settle_log, payload):
        record = _persist_failed(settle_log, payload(), 0, StoreUnavailableError("down"))
        outcome = await FailureRouter(broker, settings).route(record)

        await settle(record, outcome)

        assert record.state == MessageState.ACKED
        assert settle_log.calls == [("ack", record.envelope.delivery_tag)]

    async def test_requeue(self, settle_log, payload):
        record = settle_log.record(payload())

        await settle(record, AckOutcome.REQUEUE)

        assert record.state == MessageState.REQUEUED
        assert settle_log.calls == [("requeue", record.envelope.delivery_tag)]
