"""
Tests for streamed request settlement.

Covers chunk delivery, the single terminal event, caller cancellation
and the upstream inactivity timeout.
"""

import threading
from decimal import Decimal

from ai_credit_meter.core.errors import UpstreamError
from ai_credit_meter.core.settlement import AbortReason, StreamEventKind


def _kinds(events):
    return [event.kind for event in events]


class TestStreamingCompletion:
    """Test streamed completions end to end."""

    def test_chunks_then_usage(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        coordinator = make_coordinator(fake_gateway(chunks=["Hel", "lo"], tokens=40))

        events = list(coordinator.complete_streaming("alice", "What is 2+2?", "m"))

        assert _kinds(events) == [StreamEventKind.CHUNK, StreamEventKind.CHUNK, StreamEventKind.USAGE]
        assert [e.text for e in events[:2]] == ["Hel", "lo"]
        summary = events[-1].summary
        assert summary.answer_text == "Hello"
        assert summary.actual_tokens == 40
        assert summary.actual_cost == 4
        assert summary.remaining_balance == 996
        assert summary.conversation_id == "conv-1"

        history = ledger.usage_history("alice")
        assert len(history) == 1
        assert history[0].operation == "chat_stream"
        assert history[0].cost == 4

    def test_chunks_arrive_in_order_through_small_buffer(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        pieces = [f"{i} " for i in range(100)]
        coordinator = make_coordinator(fake_gateway(chunks=pieces), stream_buffer_size=1)

        events = list(coordinator.complete_streaming("alice", "hi", "m"))

        assert [e.text for e in events if e.kind == StreamEventKind.CHUNK] == pieces
        assert events[-1].kind == StreamEventKind.USAGE

    def test_missing_usage_charges_prediction(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        coordinator = make_coordinator(fake_gateway(tokens=None))

        events = list(coordinator.complete_streaming("alice", "What is 2+2?", "m"))

        assert events[-1].summary.actual_tokens == 124
        assert ledger.get_balance("alice") == 987

    def test_insufficient_credit_is_single_error_event(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1)
        gateway = fake_gateway()
        coordinator = make_coordinator(gateway)

        events = list(coordinator.complete_streaming("alice", "hi", "m"))

        assert _kinds(events) == [StreamEventKind.ERROR]
        assert events[0].error.reason == AbortReason.INSUFFICIENT_CREDIT
        assert events[0].error.required == 13
        assert gateway.calls == 0

    def test_upstream_failure_mid_stream_is_not_charged(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        coordinator = make_coordinator(fake_gateway(
            chunks=["partial"], stream_error=UpstreamError("Upstream connection failed")
        ))

        events = list(coordinator.complete_streaming("alice", "hi", "m"))

        assert _kinds(events) == [StreamEventKind.CHUNK, StreamEventKind.ERROR]
        assert events[-1].error.reason == AbortReason.UPSTREAM_ERROR
        assert events[-1].summary is None
        assert ledger.get_balance("alice") == 1000
        assert ledger.usage_history("alice") == []

    def test_unexpected_producer_failure_is_upstream_error(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        coordinator = make_coordinator(fake_gateway(chunks=[], stream_error=RuntimeError("boom")))

        events = list(coordinator.complete_streaming("alice", "hi", "m"))

        assert _kinds(events) == [StreamEventKind.ERROR]
        assert "boom" in events[0].error.detail
        assert ledger.get_balance("alice") == 1000

    def test_inactivity_timeout(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        release = threading.Event()
        coordinator = make_coordinator(fake_gateway(release=release), upstream_timeout=0.2)

        try:
            events = list(coordinator.complete_streaming("alice", "hi", "m"))
        finally:
            release.set()

        assert _kinds(events) == [StreamEventKind.ERROR]
        assert events[0].error.reason == AbortReason.UPSTREAM_ERROR
        assert ledger.get_balance("alice") == 1000
        assert ledger.usage_history("alice") == []

    def test_slow_trickle_hits_overall_deadline(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        coordinator = make_coordinator(
            fake_gateway(chunks=["x"] * 100, chunk_delay=0.05),
            upstream_timeout=2.0,
            stream_max_seconds=0.5
        )

        events = list(coordinator.complete_streaming("alice", "hi", "m"))

        assert events[-1].kind == StreamEventKind.ERROR
        assert events[-1].error.reason == AbortReason.UPSTREAM_ERROR
        assert "exceeded" in events[-1].error.detail
        assert all(e.kind == StreamEventKind.CHUNK for e in events[:-1])
        assert len(events) < 100
        assert ledger.get_balance("alice") == 1000
        assert ledger.usage_history("alice") == []


class TestStreamCancellation:
    """Closing the event iterator settles exactly once on observed tokens."""

    def test_cancel_after_first_chunk(self, ledger, pricing, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        pricing.upsert("m", Decimal("1"))
        coordinator = make_coordinator(fake_gateway(chunks=["abcdefgh", "more", "text"]))

        events = coordinator.complete_streaming("alice", "hello there", "m")
        first = next(events)
        events.close()

        assert first.kind == StreamEventKind.CHUNK
        # 11 prompt chars -> 3 + 50 input tokens, 8 streamed chars -> 2 tokens
        assert ledger.get_balance("alice") == 1000 - 55
        history = ledger.usage_history("alice")
        assert len(history) == 1
        assert history[0].tokens == 55

    def test_cancel_before_start_charges_nothing(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        gateway = fake_gateway()
        coordinator = make_coordinator(gateway)

        events = coordinator.complete_streaming("alice", "hi", "m")
        events.close()

        assert gateway.calls == 0
        assert ledger.get_balance("alice") == 1000

    def test_close_after_terminal_event_does_not_recharge(self, ledger, make_coordinator, fake_gateway):
        ledger.open_account("alice", 1000)
        coordinator = make_coordinator(fake_gateway(chunks=["a"], tokens=40))

        events = coordinator.complete_streaming("alice", "hi", "m")
        assert next(events).kind == StreamEventKind.CHUNK
        assert next(events).kind == StreamEventKind.USAGE
        events.close()

        assert ledger.get_balance("alice") == 996
        assert len(ledger.usage_history("alice")) == 1
