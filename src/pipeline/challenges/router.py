"""
Retry / dead-letter routing for failed challenge messages.

A failed message is either republished to the intake routing key with its
retry count incremented, or published to the dead-letter routing key with
diagnostic headers. In both cases the original body is republished
byte-for-byte, and the original delivery is acknowledged only once the
downstream publish has been confirmed. A publish that fails or times out
leaves the delivery to be requeued.
"""

import asyncio
import logging
from enum import StrEnum

from config.config import PipelineConfig
from core.logging.utilities import log_worker_error
from core.types import ErrorCategory
from pipeline.challenges.classifier import Disposition, FailureClassifier
from pipeline.challenges.errors import RoutingError
from pipeline.challenges.records import InFlightMessage, MessageState
from pipeline.common.metrics import record_dlq_message, record_requeue, record_retry
from pipeline.common.types import EnvelopeHeaders, MessageBroker

logger = logging.getLogger(__name__)

ERROR_CATEGORY_HEADER = "x-error-category"
ERROR_TYPE_HEADER = "x-error-type"
ERROR_MESSAGE_HEADER = "x-error-message"
DEAD_LETTER_REASON_HEADER = "x-dead-letter-reason"

REASON_PERMANENT = "permanent"
REASON_EXHAUSTED = "exhausted"


class AckOutcome(StrEnum):
    ACK = "ack"
    REQUEUE = "requeue"


def should_send_to_dlq(
    disposition: Disposition,
    retry_count: int,
    max_retries: int,
) -> tuple[bool, str]:
    """
    Decide whether a failed message goes to the dead-letter queue.

    Returns:
        Tuple of (should_dlq, reason) where reason is "permanent", "exhausted"
        or an empty string.
    """
    if disposition == Disposition.DEAD_LETTER:
        return True, REASON_PERMANENT

    if retry_count >= max_retries:
        return True, REASON_EXHAUSTED

    return False, ""


def truncate_error_message(error: BaseException, max_length: int = 500) -> str:
    error_message = str(error)
    if len(error_message) > max_length:
        return error_message[: max_length - 3] + "..."
    return error_message


def create_dlq_headers(
    headers: EnvelopeHeaders,
    error: BaseException,
    error_category: ErrorCategory,
    reason: str,
) -> EnvelopeHeaders:
    """Original headers (retry count unchanged) plus failure diagnostics."""
    return headers.with_extra(
        **{
            ERROR_CATEGORY_HEADER: error_category.value,
            ERROR_TYPE_HEADER: type(error).__name__,
            ERROR_MESSAGE_HEADER: truncate_error_message(error),
            DEAD_LETTER_REASON_HEADER: reason,
        }
    )


async def settle(record: InFlightMessage, outcome: AckOutcome) -> None:
    """Acknowledge or requeue the delivery behind ``record``."""
    if outcome == AckOutcome.ACK:
        record.transition(MessageState.ACKED)
        await record.envelope.ack()
    else:
        record.transition(MessageState.REQUEUED)
        await record.envelope.requeue()


class FailureRouter:
    """
    Route failed in-flight messages and decide how to settle them.

    Usage:
        router = FailureRouter(broker, settings)
        outcome = await router.route(record)   # record is DECODE_FAILED or PERSIST_FAILED
        await settle(record, outcome)
    """

    def __init__(
        self,
        broker: MessageBroker,
        settings: PipelineConfig,
        classifier: FailureClassifier | None = None,
    ):
        self.broker = broker
        self.intake_routing_key = settings.rabbitmq.routing_key
        self.dead_letter_routing_key = settings.rabbitmq.dead_letter_routing_key
        self.max_retries = settings.ingestion.max_retries
        self.publish_timeout_seconds = settings.ingestion.publish_timeout_seconds
        self.classifier = classifier or FailureClassifier()

    async def route(self, record: InFlightMessage) -> AckOutcome:
        failure = record.failure
        if failure is None:
            raise ValueError(f"Cannot route delivery {record.envelope.delivery_tag} without a failure")

        record.transition(MessageState.CLASSIFIED)

        category = self.classifier.category(failure)
        disposition = self.classifier.classify(failure)
        send_to_dlq, reason = should_send_to_dlq(disposition, record.retry_count, self.max_retries)

        try:
            if send_to_dlq:
                await self._publish(
                    record,
                    self.dead_letter_routing_key,
                    create_dlq_headers(record.headers, failure, category, reason),
                )
            else:
                await self._publish(
                    record,
                    self.intake_routing_key,
                    record.headers.with_retry_count(record.retry_count + 1),
                )
        except RoutingError as e:
            log_worker_error(
                logger,
                "Failed to route message, requeueing delivery",
                error_category=e.category.value,
                exc=e,
                disposition="dead_letter" if send_to_dlq else "retry",
                **record.log_context(),
            )
            record_requeue("publish_failed")
            return AckOutcome.REQUEUE

        if send_to_dlq:
            record.transition(MessageState.DEAD_LETTERED)
            record_dlq_message(reason, type(failure).__name__)
            logger.warning(
                "Message sent to dead-letter queue",
                extra={
                    **record.log_context(),
                    "reason": reason,
                    "error_category": category.value,
                    "error_type": type(failure).__name__,
                    "error_message": truncate_error_message(failure),
                    "routing_key": self.dead_letter_routing_key,
                },
            )
        else:
            record.transition(MessageState.RETRIED)
            record_retry()
            logger.info(
                "Message republished for retry",
                extra={
                    **record.log_context(),
                    "retry_count": record.retry_count + 1,
                    "max_retries": self.max_retries,
                    "error_category": category.value,
                    "error_type": type(failure).__name__,
                },
            )

        return AckOutcome.ACK

    async def _publish(
        self,
        record: InFlightMessage,
        routing_key: str,
        headers: EnvelopeHeaders,
    ) -> None:
        try:
            await asyncio.wait_for(
                self.broker.publish(record.original_bytes, routing_key, headers),
                timeout=self.publish_timeout_seconds,
            )
        except TimeoutError as e:
            raise RoutingError(
                f"Publish to '{routing_key}' timed out after {self.publish_timeout_seconds}s",
                cause=e,
                context={"routing_key": routing_key},
            ) from e
        except Exception as e:
            raise RoutingError(
                f"Publish to '{routing_key}' failed",
                cause=e,
                context={"routing_key": routing_key},
            ) from e


__all__ = [
    "AckOutcome",
    "FailureRouter",
    "settle",
    "should_send_to_dlq",
    "create_dlq_headers",
    "ERROR_CATEGORY_HEADER",
    "ERROR_TYPE_HEADER",
    "ERROR_MESSAGE_HEADER",
    "DEAD_LETTER_REASON_HEADER",
]
