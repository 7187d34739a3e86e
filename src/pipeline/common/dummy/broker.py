"""
In-memory broker for running the pipeline without RabbitMQ.

Models a direct exchange with two bindings (intake and dead-letter), a
per-subscription prefetch window and ack / requeue settlement. Publishes can
be made to fail or stall so the no-loss paths can be exercised.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from config.config import RabbitMQConfig
from core.errors import BrokerConnectionError
from pipeline.common.types import Envelope, EnvelopeHeaders

logger = logging.getLogger(__name__)


@dataclass
class PublishedMessage:
    """A message accepted by the in-memory exchange."""

    body: bytes
    routing_key: str
    headers: dict[str, Any] = field(default_factory=dict)


class InMemoryBroker:
    """MessageBroker double backed by asyncio queues."""

    def __init__(self, config: RabbitMQConfig | None = None):
        self.config = config or RabbitMQConfig()
        self.published: list[PublishedMessage] = []
        self.acked: list[Envelope] = []
        self.requeued: list[Envelope] = []
        self.topology_declared = False

        # Failure injection
        self.fail_publish_routing_keys: set[str] = set()
        self.publish_delay_seconds: float = 0.0

        self._connected = False
        self._intake: asyncio.Queue[tuple[bytes, dict[str, Any], bool]] = asyncio.Queue()
        self._next_tag = 0
        self._unsettled = 0
        self._settled_event = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def unsettled_count(self) -> int:
        """Deliveries handed out but not yet acked or requeued."""
        return self._unsettled

    @property
    def pending_count(self) -> int:
        """Messages sitting in the intake queue."""
        return self._intake.qsize()

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def declare_topology(self) -> None:
        self.topology_declared = True

    def enqueue(self, body: bytes, headers: dict[str, Any] | None = None) -> None:
        """Place a message directly on the intake queue (as an external producer would)."""
        self._intake.put_nowait((body, dict(headers or {}), False))

    def published_to(self, routing_key: str) -> list[PublishedMessage]:
        return [m for m in self.published if m.routing_key == routing_key]

    @property
    def dead_letters(self) -> list[PublishedMessage]:
        return self.published_to(self.config.dead_letter_routing_key)

    @property
    def retries(self) -> list[PublishedMessage]:
        return self.published_to(self.config.routing_key)

    async def wait_until_idle(self, timeout: float = 5.0) -> None:
        """Wait until the intake queue is empty and every delivery is settled."""

        async def _idle() -> None:
            while self._intake.qsize() or self._unsettled:
                self._settled_event.clear()
                await self._settled_event.wait()

        await asyncio.wait_for(_idle(), timeout)

    async def subscribe(self, prefetch_count: int) -> AsyncIterator[Envelope]:
        if not self._connected:
            raise BrokerConnectionError("Broker is not connected; call connect() first")

        window = asyncio.Semaphore(prefetch_count)
        while True:
            await window.acquire()
            try:
                body, headers, redelivered = await self._intake.get()
            except BaseException:
                window.release()
                raise
            yield self._deliver(body, headers, redelivered, window)

    def _deliver(
        self,
        body: bytes,
        headers: dict[str, Any],
        redelivered: bool,
        window: asyncio.Semaphore,
    ) -> Envelope:
        self._next_tag += 1
        self._unsettled += 1
        envelope: Envelope

        def _settle() -> None:
            self._unsettled -= 1
            window.release()
            self._settled_event.set()

        async def on_ack() -> None:
            self.acked.append(envelope)
            _settle()

        async def on_requeue() -> None:
            self.requeued.append(envelope)
            self._intake.put_nowait((body, headers, True))
            _settle()

        envelope = Envelope(
            body=body,
            headers=EnvelopeHeaders.from_mapping(headers),
            delivery_tag=self._next_tag,
            on_ack=on_ack,
            on_requeue=on_requeue,
            routing_key=self.config.routing_key,
            redelivered=redelivered,
        )
        return envelope

    async def publish(
        self,
        body: bytes,
        routing_key: str,
        headers: EnvelopeHeaders | None = None,
    ) -> None:
        if not self._connected:
            raise BrokerConnectionError("Broker is not connected; call connect() first")
        if self.publish_delay_seconds:
            await asyncio.sleep(self.publish_delay_seconds)
        if routing_key in self.fail_publish_routing_keys:
            raise BrokerConnectionError(f"Injected publish failure for routing key '{routing_key}'")

        table = (headers or EnvelopeHeaders()).to_mapping()
        self.published.append(PublishedMessage(body=body, routing_key=routing_key, headers=table))

        if routing_key == self.config.routing_key:
            self._intake.put_nowait((body, table, False))
        elif routing_key != self.config.dead_letter_routing_key:
            logger.warning("Unroutable message dropped", extra={"routing_key": routing_key})
