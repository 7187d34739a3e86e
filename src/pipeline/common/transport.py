"""RabbitMQ transport built on aio-pika.

Topology:
- one durable direct exchange
- the intake queue, bound with the intake routing key
- the dead-letter queue, bound with the dead-letter routing key

Each subscription gets its own channel with its own prefetch window. All
publishes go through a single confirm-mode channel, so ``publish()`` only
returns after the broker has accepted the message.
"""

import logging
from collections.abc import AsyncIterator
from functools import partial
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractRobustConnection,
)

from config.config import RabbitMQConfig
from core.errors import BrokerConnectionError
from pipeline.common.types import Envelope, EnvelopeHeaders, SettleCallback

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"


def _normalize_header_value(value: Any) -> Any:
    # pamqp hands back AMQP longstr values as bytes
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return bytes(value)
    return value


def envelope_from_message(
    message: AbstractIncomingMessage,
    on_settled: SettleCallback | None = None,
) -> Envelope:
    """Wrap an aio-pika delivery in a transport-agnostic Envelope.

    ``on_settled`` runs after the ack or nack, whether or not it succeeded.
    """
    raw_headers = {k: _normalize_header_value(v) for k, v in (message.headers or {}).items()}

    async def on_ack() -> None:
        try:
            await message.ack()
        finally:
            if on_settled is not None:
                await on_settled()

    async def on_requeue() -> None:
        try:
            await message.nack(requeue=True)
        finally:
            if on_settled is not None:
                await on_settled()

    return Envelope(
        body=message.body,
        headers=EnvelopeHeaders.from_mapping(raw_headers),
        delivery_tag=message.delivery_tag,
        on_ack=on_ack,
        on_requeue=on_requeue,
        routing_key=message.routing_key or "",
        redelivered=bool(message.redelivered),
    )


class _Subscription:
    """A consumer channel and the number of its deliveries still unsettled."""

    def __init__(self, channel: AbstractChannel):
        self.channel = channel
        self.unsettled = 0
        self.consuming = True


class AmqpBroker:
    """MessageBroker implementation for RabbitMQ.

    Uses a robust connection, so channels and consumers are restored
    automatically after a connection drop.
    """

    def __init__(self, config: RabbitMQConfig):
        self.config = config
        self._connection: AbstractRobustConnection | None = None
        self._publish_channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._subscriptions: list[_Subscription] = []

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        if self.is_connected:
            return

        logger.info(
            "Connecting to RabbitMQ",
            extra={"broker_url": self.config.url, "exchange": self.config.exchange},
        )
        try:
            self._connection = await aio_pika.connect_robust(
                self.config.url,
                timeout=self.config.connection_timeout_seconds,
            )
            self._publish_channel = await self._connection.channel(publisher_confirms=True)
            self._exchange = await self._publish_channel.declare_exchange(
                self.config.exchange,
                ExchangeType.DIRECT,
                durable=True,
            )
        except Exception as e:
            await self._close_connection()
            raise BrokerConnectionError("Failed to connect to RabbitMQ", cause=e) from e

        logger.info("Connected to RabbitMQ", extra={"exchange": self.config.exchange})

    async def close(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await self._close_consumer_channel(subscription.channel)
        await self._close_connection()
        logger.info("RabbitMQ connection closed")

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        self._publish_channel = None
        self._exchange = None
        if connection is not None and not connection.is_closed:
            await connection.close()

    async def _close_consumer_channel(self, channel: AbstractChannel) -> None:
        if channel.is_closed:
            return
        try:
            await channel.close()
        except Exception as e:
            logger.warning("Error closing consumer channel", extra={"error": str(e)})

    async def _release(self, subscription: _Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            await self._close_consumer_channel(subscription.channel)

    async def _delivery_settled(self, subscription: _Subscription) -> None:
        subscription.unsettled -= 1
        if not subscription.consuming and subscription.unsettled == 0:
            await self._release(subscription)

    def _require_connection(self) -> AbstractRobustConnection:
        if self._connection is None:
            raise BrokerConnectionError("Broker is not connected; call connect() first")
        return self._connection

    async def declare_topology(self) -> None:
        """Declare the exchange, intake queue and dead-letter queue with their bindings."""
        connection = self._require_connection()
        channel = await connection.channel()
        try:
            exchange = await channel.declare_exchange(
                self.config.exchange, ExchangeType.DIRECT, durable=True
            )
            for queue_name, routing_key in (
                (self.config.queue, self.config.routing_key),
                (self.config.dead_letter_queue, self.config.dead_letter_routing_key),
            ):
                queue = await channel.declare_queue(queue_name, durable=True)
                await queue.bind(exchange, routing_key=routing_key)
                logger.info(
                    "Declared queue",
                    extra={
                        "queue": queue_name,
                        "exchange": self.config.exchange,
                        "routing_key": routing_key,
                    },
                )
        finally:
            await channel.close()

    async def subscribe(self, prefetch_count: int) -> AsyncIterator[Envelope]:
        """Consume the intake queue on a dedicated channel.

        When the iterator stops, the channel stays open until every delivery
        it handed out has been acked or requeued, then it is closed.
        """
        connection = self._require_connection()
        channel = await connection.channel()
        subscription = _Subscription(channel)
        self._subscriptions.append(subscription)
        on_settled = partial(self._delivery_settled, subscription)

        try:
            await channel.set_qos(prefetch_count=prefetch_count)
            queue = await channel.declare_queue(self.config.queue, durable=True)

            logger.debug(
                "Subscribed to intake queue",
                extra={"queue": self.config.queue, "prefetch_count": prefetch_count},
            )
            async with queue.iterator() as queue_iter:
                async for message in queue_iter:
                    subscription.unsettled += 1
                    yield envelope_from_message(message, on_settled)
        finally:
            subscription.consuming = False
            if subscription.unsettled == 0:
                await self._release(subscription)

    async def publish(
        self,
        body: bytes,
        routing_key: str,
        headers: EnvelopeHeaders | None = None,
    ) -> None:
        if self._exchange is None:
            raise BrokerConnectionError("Broker is not connected; call connect() first")

        message = Message(
            body,
            headers=(headers or EnvelopeHeaders()).to_mapping(),
            content_type=CONTENT_TYPE,
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        await self._exchange.publish(message, routing_key=routing_key)
