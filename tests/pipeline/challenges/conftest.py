"""Shared fixtures for challenge pipeline tests."""

import json

import pytest

from pipeline.challenges.records import InFlightMessage
from pipeline.common.types import Envelope, EnvelopeHeaders


def challenge_payload(**overrides) -> bytes:
    payload = {"schema_version": 1, "external_id": "c1", "name": "Launch"}
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


class SettleLog:
    """Collects ack / requeue calls made through test envelopes."""

    def __init__(self):
        self.calls: list[tuple[str, int]] = []
        self._next_tag = 0

    def envelope(self, body: bytes, retry_count: int = 0, **extra_headers) -> Envelope:
        self._next_tag += 1
        tag = self._next_tag

        async def on_ack():
            self.calls.append(("ack", tag))

        async def on_requeue():
            self.calls.append(("requeue", tag))

        return Envelope(
            body=body,
            headers=EnvelopeHeaders(retry_count=retry_count, extra=extra_headers),
            delivery_tag=tag,
            on_ack=on_ack,
            on_requeue=on_requeue,
        )

    def record(self, body: bytes, retry_count: int = 0, **extra_headers) -> InFlightMessage:
        return InFlightMessage.receive(self.envelope(body, retry_count, **extra_headers))


@pytest.fixture
def settle_log():
    return SettleLog()


@pytest.fixture
def payload():
    return challenge_payload
