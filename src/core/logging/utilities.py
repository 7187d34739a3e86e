"""Logging helpers shared by workers."""

import logging
from typing import Any

_OUTCOMES = ("succeeded", "retried", "dead_lettered", "requeued")


def format_cycle_output(
    cycle_count: int,
    succeeded: int,
    retried: int = 0,
    dead_lettered: int = 0,
    requeued: int = 0,
    since_last: dict[str, int] | None = None,
    interval_seconds: int = 30,
) -> str:
    """
    Summarize settlement outcomes for one stats cycle.

    With ``since_last`` the line leads with the delta and a rate, otherwise it
    lists the running totals.

    Example:
        >>> format_cycle_output(1, 1200, 34, 5)
        'Cycle 1: processed=1239 (succeeded=1200, retried=34, dead_lettered=5)'
        >>> format_cycle_output(5, 1200, 34, 5, 0, {"succeeded": 240}, 30)
        'Cycle 5: +240 this cycle | total: 1200 succeeded, 34 retried, 5 dead-lettered | 8.0 msg/s'
    """
    if since_last is None:
        fields = [f"succeeded={succeeded}", f"retried={retried}", f"dead_lettered={dead_lettered}"]
        if requeued:
            fields.append(f"requeued={requeued}")
        processed = succeeded + retried + dead_lettered + requeued
        return f"Cycle {cycle_count}: processed={processed} ({', '.join(fields)})"

    delta = sum(since_last.get(key, 0) for key in _OUTCOMES)
    rate = delta / interval_seconds if interval_seconds > 0 else 0

    totals = [f"{succeeded} succeeded"]
    for count, label in ((retried, "retried"), (dead_lettered, "dead-lettered"), (requeued, "requeued")):
        if count:
            totals.append(f"{count} {label}")

    return f"Cycle {cycle_count}: +{delta} this cycle | total: {', '.join(totals)} | {rate:.1f} msg/s"


_BANNER_FIELDS: list[tuple[str, str]] = [
    ("worker_id", "Worker:       {}"),
    ("domain", "Domain:       {}"),
    ("input_queue", "Input Queue:  {}"),
    ("dead_letter_queue", "DLQ:          {}"),
    ("health_port", "Health:       http://localhost:{}"),
    ("metrics_port", "Metrics:      http://localhost:{}/metrics"),
]


def log_startup_banner(
    logger: logging.Logger,
    worker_name: str,
    **kwargs: Any,
) -> None:
    """
    Log a boxed startup banner. Fields that are unset or zero are left out.

    Example:
        log_startup_banner(
            logger,
            worker_name="Challenge Ingestion Worker",
            input_queue="challenges.ingest",
            dead_letter_queue="challenges.ingest.dlq",
            health_port=8080,
        )
    """
    rule = "=" * 50
    lines = ["", rule, worker_name]
    if kwargs.get("version"):
        lines.append(f"Version: {kwargs['version']}")
    lines.append(rule)
    lines.extend(fmt.format(kwargs[key]) for key, fmt in _BANNER_FIELDS if kwargs.get(key))
    lines.extend([rule, ""])

    logger.info("\n".join(lines))


def log_worker_error(
    logger: logging.Logger,
    error_message: str,
    error_category: str | None = None,
    exc: Exception | None = None,
    **context: Any,
) -> None:
    """Log an error with ``error_message`` and ``error_category`` in the structured fields."""
    extra = {**context, "error_message": error_message}
    if error_category:
        extra["error_category"] = error_category

    logger.error(error_message, extra=extra, exc_info=exc)
