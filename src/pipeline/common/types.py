"""Transport-agnostic message types for the RabbitMQ broker and its in-memory double."""

from collections.abc import AsyncGenerator, Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

__all__ = [
    "RETRY_COUNT_HEADER",
    "EnvelopeHeaders",
    "Envelope",
    "MessageBroker",
    "parse_retry_count",
]

RETRY_COUNT_HEADER = "x-retry-count"
RETRY_COUNT_TYPE_HINT = "long"


def parse_retry_count(value: Any) -> int:
    """Interpret a raw retry-count header value.

    Integers and ASCII-digit strings/bytes are accepted. Anything else
    (absent, booleans, negatives, floats, garbage) counts as zero retries.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value if value >= 0 else 0
    if isinstance(value, (bytes, bytearray)):
        try:
            value = bytes(value).decode("ascii")
        except UnicodeDecodeError:
            return 0
    if isinstance(value, str):
        text = value.strip()
        if text.isascii() and text.isdigit():
            return int(text)
    return 0


@dataclass(frozen=True)
class EnvelopeHeaders:
    """Typed view of delivery headers.

    ``retry_count`` is the only header the pipeline interprets. Every other
    header is kept in ``extra`` and carried along on republish.
    """

    retry_count: int = 0
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, headers: Mapping[str, Any] | None) -> "EnvelopeHeaders":
        """Build from an AMQP header table."""
        if not headers:
            return cls()
        extra = {k: v for k, v in headers.items() if k != RETRY_COUNT_HEADER}
        return cls(retry_count=parse_retry_count(headers.get(RETRY_COUNT_HEADER)), extra=extra)

    @classmethod
    def from_triples(cls, triples: Iterable[tuple[str, str, Any]]) -> "EnvelopeHeaders":
        """Build from ``(key, type_hint, value)`` triples. Later keys win."""
        return cls.from_mapping({key: value for key, _type_hint, value in triples})

    def with_retry_count(self, retry_count: int) -> "EnvelopeHeaders":
        return replace(self, retry_count=retry_count)

    def with_extra(self, **headers: Any) -> "EnvelopeHeaders":
        return replace(self, extra={**self.extra, **headers})

    def to_mapping(self) -> dict[str, Any]:
        """Render as an AMQP header table (retry count always present)."""
        return {**self.extra, RETRY_COUNT_HEADER: self.retry_count}

    def to_triples(self) -> list[tuple[str, str, Any]]:
        triples = [(RETRY_COUNT_HEADER, RETRY_COUNT_TYPE_HINT, self.retry_count)]
        for key, value in self.extra.items():
            triples.append((key, _type_hint(value), value))
        return triples


def _type_hint(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "long"
    if isinstance(value, float):
        return "float"
    if isinstance(value, (bytes, bytearray)):
        return "binary"
    return "longstr"


SettleCallback = Callable[[], Awaitable[None]]


class Envelope:
    """A single broker delivery: raw body, typed headers and settle operations.

    Exactly one of ack() / requeue() may be called. A second settle attempt
    raises RuntimeError.
    """

    def __init__(
        self,
        body: bytes,
        headers: EnvelopeHeaders,
        delivery_tag: Any,
        on_ack: SettleCallback,
        on_requeue: SettleCallback,
        routing_key: str = "",
        redelivered: bool = False,
    ):
        self.body = body
        self.headers = headers
        self.delivery_tag = delivery_tag
        self.routing_key = routing_key
        self.redelivered = redelivered
        self._on_ack = on_ack
        self._on_requeue = on_requeue
        self._settled: str | None = None

    @property
    def settled(self) -> str | None:
        """``"ack"`` or ``"requeue"`` once settled, else None."""
        return self._settled

    def _mark(self, how: str) -> None:
        if self._settled is not None:
            raise RuntimeError(
                f"Envelope {self.delivery_tag} already settled ({self._settled}), cannot {how}"
            )
        self._settled = how

    async def ack(self) -> None:
        self._mark("ack")
        await self._on_ack()

    async def requeue(self) -> None:
        self._mark("requeue")
        await self._on_requeue()

    def __repr__(self) -> str:
        return (
            f"Envelope(delivery_tag={self.delivery_tag!r}, bytes={len(self.body)}, "
            f"retry_count={self.headers.retry_count}, settled={self._settled!r})"
        )


@runtime_checkable
class MessageBroker(Protocol):
    """Broker contract the pipeline relies on: consume, settle, publish."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    def subscribe(self, prefetch_count: int) -> AsyncGenerator[Envelope, None]:
        """Yield deliveries from the intake queue until closed or cancelled."""
        ...

    async def publish(
        self,
        body: bytes,
        routing_key: str,
        headers: EnvelopeHeaders | None = None,
    ) -> None:
        """Publish to the pipeline exchange. Returns once the broker confirmed."""
        ...

    async def declare_topology(self) -> None: ...
