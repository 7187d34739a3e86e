"""Periodic cycle-stats logging for long-running workers."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from core.logging.utilities import format_cycle_output

logger = logging.getLogger(__name__)

_TRACKED_KEYS = ("succeeded", "retried", "dead_lettered", "requeued")


class PeriodicStatsLogger:
    """
    Log a cycle summary every ``interval_seconds``.

    ``get_stats(cycle)`` returns cumulative counters keyed ``records_<outcome>``
    (records_succeeded, records_retried, ...) plus any extra fields to attach
    to the log record. Cycle lines report the delta since the previous cycle.
    """

    def __init__(
        self,
        interval_seconds: float,
        get_stats: Callable[[int], dict[str, Any]],
        stage: str,
        worker_id: str,
    ):
        self.interval_seconds = interval_seconds
        self.get_stats = get_stats
        self.stage = stage
        self.worker_id = worker_id
        self._task: asyncio.Task | None = None
        self._cycle_count = 0
        self._last_counts: dict[str, int] = {}

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Periodic logger already running")
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def _log_cycle(self) -> None:
        fields = self.get_stats(self._cycle_count)
        counts = {key: fields.get(f"records_{key}", 0) for key in _TRACKED_KEYS}

        if self._cycle_count == 0:
            message = (
                f"{format_cycle_output(0, **counts)} "
                f"[cycle output every {self.interval_seconds}s]"
            )
        else:
            message = format_cycle_output(
                self._cycle_count,
                **counts,
                since_last={key: counts[key] - self._last_counts.get(key, 0) for key in counts},
                interval_seconds=self.interval_seconds,
            )
            fields = {"cycle": self._cycle_count, **fields}

        self._last_counts = counts
        logger.info(message, extra={"worker_id": self.worker_id, "stage": self.stage, **fields})

    async def _run(self) -> None:
        self._log_cycle()
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                self._cycle_count += 1
                self._log_cycle()
        except asyncio.CancelledError:
            logger.debug("Periodic stats logger task cancelled")
            raise
