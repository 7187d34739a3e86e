"""
Prometheus metrics for the challenge ingestion pipeline.

Counts every settlement path (persisted, retried, dead-lettered, requeued)
plus decode failures and batch flush timings. Metrics register on the
default prometheus_client registry, which start_http_server() exposes.
"""

from prometheus_client import Counter, Gauge, Histogram

messages_consumed_counter = Counter(
    "challenge_pipeline_messages_consumed_total",
    "Deliveries taken from the intake queue",
    labelnames=["queue"],
)

messages_persisted_counter = Counter(
    "challenge_pipeline_messages_persisted_total",
    "Messages upserted into the challenge store",
)

messages_retried_counter = Counter(
    "challenge_pipeline_messages_retried_total",
    "Messages republished to the intake queue with an incremented retry count",
)

dlq_messages_counter = Counter(
    "challenge_pipeline_dlq_messages_total",
    "Messages published to the dead-letter queue",
    labelnames=["reason", "error_type"],
)

messages_requeued_counter = Counter(
    "challenge_pipeline_messages_requeued_total",
    "Deliveries handed back to the broker unacknowledged",
    labelnames=["cause"],
)

decode_failures_counter = Counter(
    "challenge_pipeline_decode_failures_total",
    "Payloads rejected by the codec",
    labelnames=["error_type"],
)

batch_flush_duration_seconds = Histogram(
    "challenge_pipeline_batch_flush_duration_seconds",
    "Time spent in a single store flush",
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

batch_size_histogram = Histogram(
    "challenge_pipeline_batch_size",
    "Number of messages per flushed batch",
    buckets=[1, 5, 10, 25, 50, 100, 250, 500],
)

broker_connection_status_gauge = Gauge(
    "challenge_pipeline_broker_connected",
    "Broker connection status (1=connected, 0=disconnected)",
)


def record_message_consumed(queue: str) -> None:
    messages_consumed_counter.labels(queue=queue).inc()


def record_persisted(count: int = 1) -> None:
    messages_persisted_counter.inc(count)


def record_retry() -> None:
    messages_retried_counter.inc()


def record_dlq_message(reason: str, error_type: str) -> None:
    dlq_messages_counter.labels(reason=reason, error_type=error_type).inc()


def record_requeue(cause: str) -> None:
    messages_requeued_counter.labels(cause=cause).inc()


def record_decode_failure(error_type: str) -> None:
    decode_failures_counter.labels(error_type=error_type).inc()


def record_batch_flush(size: int, duration_seconds: float) -> None:
    batch_size_histogram.observe(size)
    batch_flush_duration_seconds.observe(duration_seconds)


def update_connection_status(connected: bool) -> None:
    broker_connection_status_gauge.set(1 if connected else 0)


__all__ = [
    "messages_consumed_counter",
    "messages_persisted_counter",
    "messages_retried_counter",
    "dlq_messages_counter",
    "messages_requeued_counter",
    "decode_failures_counter",
    "batch_flush_duration_seconds",
    "batch_size_histogram",
    "broker_connection_status_gauge",
    "record_message_consumed",
    "record_persisted",
    "record_retry",
    "record_dlq_message",
    "record_requeue",
    "record_decode_failure",
    "record_batch_flush",
    "update_connection_status",
]
