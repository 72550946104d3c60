"""
Shared fixtures for the metering tests.
"""

import os
import shutil
import tempfile
import threading
import time
from decimal import Decimal
from typing import List, Optional

import pytest

from ai_credit_meter.core.estimator import CostEstimator
from ai_credit_meter.core.ledger import InMemoryLedger, SqliteLedger
from ai_credit_meter.core.pricing import PricingTable
from ai_credit_meter.core.settlement import SettlementCoordinator
from ai_credit_meter.core.token_counter import TokenUsage
from ai_credit_meter.sdk.upstream import UpstreamChunk, UpstreamReply


class FakeGateway:
    """Scriptable stand-in for UpstreamGateway.

    ``tokens`` is the reported total (None means usage is not reported).
    ``release`` blocks every call until set, for timeout tests.
    ``chunk_delay`` sleeps before each streamed chunk.
    """

    def __init__(
        self,
        text: str = "4",
        tokens: Optional[int] = 40,
        chunks: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        release: Optional[threading.Event] = None,
        on_call=None,
        chunk_delay: float = 0.0
    ):
        self.text = text
        self.tokens = tokens
        self.chunks = chunks if chunks is not None else ["Hel", "lo"]
        self.error = error
        self.stream_error = stream_error
        self.release = release
        self.on_call = on_call
        self.chunk_delay = chunk_delay
        self.calls = 0
        self._lock = threading.Lock()

    def _enter(self):
        with self._lock:
            self.calls += 1
        if self.release is not None:
            self.release.wait(timeout=10)
        if self.on_call is not None:
            self.on_call()
        if self.error is not None:
            raise self.error

    def _usage(self) -> Optional[TokenUsage]:
        if self.tokens is None:
            return None
        return TokenUsage(prompt_tokens=10, completion_tokens=self.tokens - 10, reported_total=self.tokens)

    def complete(self, query, user_id, model, conversation_id=None, timeout=None):
        self._enter()
        return UpstreamReply(
            text=self.text,
            usage=self._usage(),
            conversation_id=conversation_id or "conv-1",
            message_id="msg-1"
        )

    def complete_streaming(self, query, user_id, model, conversation_id=None, timeout=None):
        self._enter()
        conversation_id = conversation_id or "conv-1"
        for piece in self.chunks:
            if self.chunk_delay:
                time.sleep(self.chunk_delay)
            yield UpstreamChunk(text=piece, conversation_id=conversation_id, message_id="msg-1")
        if self.stream_error is not None:
            raise self.stream_error
        yield UpstreamChunk(usage=self._usage(), conversation_id=conversation_id, message_id="msg-1")


@pytest.fixture
def temp_dir():
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, temp_dir):
    """Each ledger implementation in turn."""
    if request.param == "memory":
        return InMemoryLedger()
    return SqliteLedger(os.path.join(temp_dir, "ledger.db"))


@pytest.fixture
def pricing():
    return PricingTable(default_cost_per_token=Decimal("0.1"))


@pytest.fixture
def make_coordinator(ledger, pricing):
    """Factory building a coordinator around the given gateway."""
    def build(gateway, upstream_timeout=5.0, stream_buffer_size=8, estimator=None,
              stream_max_seconds=60.0):
        return SettlementCoordinator(
            estimator=estimator or CostEstimator(pricing),
            pricing=pricing,
            ledger=ledger,
            gateway=gateway,
            upstream_timeout=upstream_timeout,
            stream_buffer_size=stream_buffer_size,
            stream_max_seconds=stream_max_seconds
        )
    return build


@pytest.fixture
def fake_gateway():
    """The FakeGateway class, for tests that script upstream behaviour."""
    return FakeGateway
