"""In-flight message tracking and the per-delivery state machine.

Every delivery taken from the intake queue is wrapped in an InFlightMessage
and walks this graph until it reaches ACKED or REQUEUED:

    RECEIVED -> DECODED -> BATCHED -> PERSIST_OK ---------------------> ACKED
        |                     |                                          ^
        v                     v                                          |
    DECODE_FAILED ------> CLASSIFIED <- PERSIST_FAILED                   |
                              |                                          |
                              +--> RETRIED | DEAD_LETTERED --------------+

Any non-terminal state may move to REQUEUED (publish failure or shutdown).
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pipeline.challenges.errors import InvalidStateTransition
from pipeline.challenges.schemas.messages import ChallengeMessage
from pipeline.common.types import Envelope, EnvelopeHeaders


class MessageState(StrEnum):
    RECEIVED = "received"
    DECODED = "decoded"
    DECODE_FAILED = "decode_failed"
    BATCHED = "batched"
    PERSIST_OK = "persist_ok"
    PERSIST_FAILED = "persist_failed"
    CLASSIFIED = "classified"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    ACKED = "acked"
    REQUEUED = "requeued"


TERMINAL_STATES = frozenset({MessageState.ACKED, MessageState.REQUEUED})

_TRANSITIONS: dict[MessageState, frozenset[MessageState]] = {
    MessageState.RECEIVED: frozenset({MessageState.DECODED, MessageState.DECODE_FAILED}),
    MessageState.DECODED: frozenset({MessageState.BATCHED}),
    MessageState.DECODE_FAILED: frozenset({MessageState.CLASSIFIED}),
    MessageState.BATCHED: frozenset({MessageState.PERSIST_OK, MessageState.PERSIST_FAILED}),
    MessageState.PERSIST_OK: frozenset({MessageState.ACKED}),
    MessageState.PERSIST_FAILED: frozenset({MessageState.CLASSIFIED}),
    MessageState.CLASSIFIED: frozenset({MessageState.RETRIED, MessageState.DEAD_LETTERED}),
    MessageState.RETRIED: frozenset({MessageState.ACKED}),
    MessageState.DEAD_LETTERED: frozenset({MessageState.ACKED}),
    MessageState.ACKED: frozenset(),
    MessageState.REQUEUED: frozenset(),
}


def can_transition(current: MessageState, target: MessageState) -> bool:
    if target == MessageState.REQUEUED:
        return current not in TERMINAL_STATES
    return target in _TRANSITIONS[current]


@dataclass(eq=False)
class InFlightMessage:
    """One delivery as it moves through decode, batch, persist and settle.

    Never persisted; discarded once the envelope is settled.
    """

    envelope: Envelope
    state: MessageState = MessageState.RECEIVED
    message: ChallengeMessage | None = None
    failure: BaseException | None = None
    history: list[MessageState] = field(default_factory=list)

    @classmethod
    def receive(cls, envelope: Envelope) -> "InFlightMessage":
        return cls(envelope=envelope, history=[MessageState.RECEIVED])

    @property
    def original_bytes(self) -> bytes:
        return self.envelope.body

    @property
    def headers(self) -> EnvelopeHeaders:
        return self.envelope.headers

    @property
    def retry_count(self) -> int:
        return self.envelope.headers.retry_count

    @property
    def external_id(self) -> str | None:
        return self.message.external_id if self.message is not None else None

    @property
    def is_settled(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: MessageState) -> None:
        if not can_transition(self.state, target):
            raise InvalidStateTransition(
                f"Illegal transition {self.state.value} -> {target.value} "
                f"for delivery {self.envelope.delivery_tag}"
            )
        self.state = target
        self.history.append(target)

    def mark_decoded(self, message: ChallengeMessage) -> None:
        self.transition(MessageState.DECODED)
        self.message = message

    def mark_decode_failed(self, error: BaseException) -> None:
        self.transition(MessageState.DECODE_FAILED)
        self.failure = error

    def mark_persist_failed(self, error: BaseException) -> None:
        self.transition(MessageState.PERSIST_FAILED)
        self.failure = error

    def log_context(self) -> dict[str, Any]:
        context: dict[str, Any] = {
            "delivery_tag": self.envelope.delivery_tag,
            "retry_count": self.retry_count,
            "message_state": self.state.value,
        }
        if self.external_id:
            context["external_id"] = self.external_id
        return context


__all__ = [
    "MessageState",
    "TERMINAL_STATES",
    "InFlightMessage",
    "can_transition",
]
