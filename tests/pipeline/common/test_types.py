"""Tests for pipeline.common.types."""

import pytest

from pipeline.common.types import (
    RETRY_COUNT_HEADER,
    Envelope,
    EnvelopeHeaders,
    MessageBroker,
    parse_retry_count,
)


class TestParseRetryCount:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, 0),
            (0, 0),
            (3, 3),
            (-1, 0),
            (True, 0),
            ("4", 4),
            (" 2 ", 2),
            (b"5", 5),
            ("abc", 0),
            ("-2", 0),
            ("1.5", 0),
            (2.0, 0),
            (b"\xff", 0),
        ],
    )
    def test_values(self, value, expected):
        assert parse_retry_count(value) == expected


class TestEnvelopeHeaders:
    def test_from_empty_mapping(self):
        headers = EnvelopeHeaders.from_mapping(None)
        assert headers.retry_count == 0
        assert headers.extra == {}

    def test_from_mapping_splits_retry_count(self):
        headers = EnvelopeHeaders.from_mapping({RETRY_COUNT_HEADER: 2, "x-trace": "abc"})
        assert headers.retry_count == 2
        assert headers.extra == {"x-trace": "abc"}

    def test_from_mapping_tolerates_garbage_retry_count(self):
        assert EnvelopeHeaders.from_mapping({RETRY_COUNT_HEADER: "lots"}).retry_count == 0

    def test_from_triples_later_keys_win(self):
        headers = EnvelopeHeaders.from_triples(
            [(RETRY_COUNT_HEADER, "long", 1), ("x-a", "longstr", "1"), (RETRY_COUNT_HEADER, "long", 2)]
        )
        assert headers.retry_count == 2
        assert headers.extra == {"x-a": "1"}

    def test_with_retry_count_keeps_extra(self):
        original = EnvelopeHeaders(retry_count=1, extra={"x-trace": "abc"})
        bumped = original.with_retry_count(2)

        assert bumped.retry_count == 2
        assert bumped.extra == {"x-trace": "abc"}
        assert original.retry_count == 1

    def test_with_extra_merges(self):
        headers = EnvelopeHeaders(extra={"a": 1}).with_extra(b=2)
        assert headers.extra == {"a": 1, "b": 2}

    def test_to_mapping_always_has_retry_count(self):
        assert EnvelopeHeaders().to_mapping() == {RETRY_COUNT_HEADER: 0}
        assert EnvelopeHeaders(retry_count=3, extra={"x": "y"}).to_mapping() == {
            "x": "y",
            RETRY_COUNT_HEADER: 3,
        }

    def test_to_triples_type_hints(self):
        headers = EnvelopeHeaders(retry_count=1, extra={"s": "v", "b": True, "f": 1.5, "raw": b"x"})
        assert headers.to_triples() == [
            (RETRY_COUNT_HEADER, "long", 1),
            ("s", "longstr", "v"),
            ("b", "bool", True),
            ("f", "float", 1.5),
            ("raw", "binary", b"x"),
        ]


def _envelope(calls):
    async def on_ack():
        calls.append("ack")

    async def on_requeue():
        calls.append("requeue")

    return Envelope(b"{}", EnvelopeHeaders(), 1, on_ack, on_requeue)


class TestEnvelope:
    async def test_ack(self):
        calls = []
        envelope = _envelope(calls)

        await envelope.ack()

        assert calls == ["ack"]
        assert envelope.settled == "ack"

    async def test_requeue(self):
        calls = []
        envelope = _envelope(calls)

        await envelope.requeue()

        assert calls == ["requeue"]
        assert envelope.settled == "requeue"

    async def test_second_settle_raises(self):
        calls = []
        envelope = _envelope(calls)
        await envelope.ack()

        with pytest.raises(RuntimeError, match="already settled"):
            await envelope.requeue()
        assert calls == ["ack"]

    def test_unsettled_by_default(self):
        assert _envelope([]).settled is None


class TestMessageBrokerProtocol:
    def test_in_memory_broker_satisfies_protocol(self):
        from pipeline.common.dummy import InMemoryBroker

        assert isinstance(InMemoryBroker(), MessageBroker)
