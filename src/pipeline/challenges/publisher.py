"""Publish challenge messages onto the intake queue.

Used by producers of challenge data and by the ``python -m pipeline publish``
development command.
"""

import logging
from collections.abc import Mapping
from typing import Any

from config.config import RabbitMQConfig
from pipeline.challenges.schemas import ChallengeMessage, build_challenge_message, encode
from pipeline.common.types import EnvelopeHeaders, MessageBroker

logger = logging.getLogger(__name__)


class ChallengePublisher:
    """Encode and publish challenges to the intake routing key."""

    def __init__(self, broker: MessageBroker, config: RabbitMQConfig):
        self.broker = broker
        self.config = config

    async def setup_topology(self) -> None:
        """Declare the exchange, intake queue and dead-letter queue."""
        await self.broker.declare_topology()

    async def publish_challenge(self, attrs: Mapping[str, Any]) -> ChallengeMessage:
        """
        Build a versioned message from challenge attributes and publish it.

        Raises a DecodeError subclass if the attributes would not pass the
        consumer's own decode checks.
        """
        message = build_challenge_message(attrs)
        await self.publish_message(message)
        return message

    async def publish_message(self, message: ChallengeMessage) -> None:
        await self.broker.publish(encode(message), self.config.routing_key, EnvelopeHeaders())
        logger.info(
            "Published challenge",
            extra={
                "external_id": message.external_id,
                "exchange": self.config.exchange,
                "routing_key": self.config.routing_key,
            },
        )

    async def publish_raw(
        self,
        body: bytes,
        headers: EnvelopeHeaders | None = None,
    ) -> None:
        """Publish an arbitrary payload to the intake routing key, unvalidated."""
        await self.broker.publish(body, self.config.routing_key, headers or EnvelopeHeaders())
        logger.debug(
            "Published raw payload",
            extra={"routing_key": self.config.routing_key},
        )


__all__ = ["ChallengePublisher"]
