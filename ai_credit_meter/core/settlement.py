"""
Request settlement.

Drives one metered request through its lifecycle:

    ESTIMATING -> BALANCE_CHECKED -> UPSTREAM_CALLED -> RECONCILING -> SETTLED

with ABORTED reachable on estimation failure, insufficient credit,
upstream failure, or a debit that loses a race during reconciliation.

Rules:
- The caller is never charged for a failed or timed out upstream call
- At most one debit and one usage record per attempt
- The usage record is written only after the debit is confirmed
- The actual charge uses upstream-reported tokens, else the prediction
- No retries; the caller decides whether to resubmit
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple, Union

from .errors import AccountInactiveError, EstimationError, MeterError, UpstreamError
from .estimator import CostEstimate, CostEstimator, EstimationContext
from .ledger import DebitResult, Ledger
from .pricing import PricingTable
from .token_counter import approximate_tokens
from ..sdk.upstream import UpstreamChunk, UpstreamGateway
from ..storage.models import UsageRecord

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_TIMEOUT = 30.0
DEFAULT_STREAM_MAX_SECONDS = 600.0
DEFAULT_STREAM_BUFFER_SIZE = 64

OPERATION_COMPLETION = "chat_completion"
OPERATION_STREAM = "chat_stream"


class SettlementState(Enum):
    """Lifecycle states of one request attempt."""
    ESTIMATING = "estimating"
    BALANCE_CHECKED = "balance_checked"
    UPSTREAM_CALLED = "upstream_called"
    RECONCILING = "reconciling"
    SETTLED = "settled"
    ABORTED = "aborted"


_TRANSITIONS = {
    SettlementState.ESTIMATING: {SettlementState.BALANCE_CHECKED, SettlementState.ABORTED},
    SettlementState.BALANCE_CHECKED: {SettlementState.UPSTREAM_CALLED, SettlementState.ABORTED},
    SettlementState.UPSTREAM_CALLED: {SettlementState.RECONCILING, SettlementState.ABORTED},
    SettlementState.RECONCILING: {SettlementState.SETTLED, SettlementState.ABORTED},
    SettlementState.SETTLED: set(),
    SettlementState.ABORTED: set(),
}


class InvalidTransition(MeterError):
    """Raised when an attempt is driven through an illegal state change."""


class AbortReason(Enum):
    """Why a request ended without a charge."""
    INSUFFICIENT_CREDIT = "insufficient_credit"
    UPSTREAM_ERROR = "upstream_error"
    ESTIMATION_ERROR = "estimation_error"


@dataclass(frozen=True)
class AbortedRequest:
    """A request that ended uncharged.

    ``required`` and ``available`` are set for INSUFFICIENT_CREDIT.
    """
    reason: AbortReason
    detail: str = ""
    required: Optional[int] = None
    available: Optional[int] = None


@dataclass(frozen=True)
class CompletionResult:
    """A settled request."""
    answer_text: str
    actual_tokens: int
    actual_cost: int
    remaining_balance: int
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


Outcome = Union[CompletionResult, AbortedRequest]


@dataclass(frozen=True)
class EstimateQuote:
    """Estimate plus the balance it was checked against."""
    estimate: CostEstimate
    account_balance: int
    can_afford: bool

    @property
    def predicted_tokens(self) -> int:
        return self.estimate.predicted_tokens

    @property
    def predicted_cost(self) -> int:
        return self.estimate.predicted_cost


class StreamEventKind(Enum):
    CHUNK = "chunk"
    USAGE = "usage"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One item of a streamed completion.

    A stream ends with exactly one USAGE or ERROR event, never both.
    """
    kind: StreamEventKind
    text: str = ""
    summary: Optional[CompletionResult] = None
    error: Optional[AbortedRequest] = None


class SettlementAttempt:
    """State of a single request attempt.

    Guards the legal transitions and the single debit / single usage
    record per attempt.
    """

    def __init__(self, account_id: str, model: str, operation: str):
        self.account_id = account_id
        self.model = model
        self.operation = operation
        self.state = SettlementState.ESTIMATING
        self._debited = False
        self._recorded = False
        self._lock = threading.Lock()

    def advance(self, new_state: SettlementState) -> None:
        with self._lock:
            if new_state not in _TRANSITIONS[self.state]:
                raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
            logger.debug(
                "Attempt %s/%s: %s -> %s",
                self.account_id, self.operation, self.state.value, new_state.value
            )
            self.state = new_state

    def debit(self, ledger: Ledger, amount: int) -> DebitResult:
        with self._lock:
            if self._debited:
                raise InvalidTransition("attempt already debited")
            self._debited = True
        return ledger.debit(self.account_id, amount)

    def record_usage(self, ledger: Ledger, record: UsageRecord) -> None:
        with self._lock:
            if self._recorded:
                raise InvalidTransition("usage already recorded for attempt")
            self._recorded = True
        ledger.append_usage(record)


@dataclass
class _StreamProgress:
    """What the consumer has observed of a stream so far."""
    streamed_chars: int = 0
    text_parts: list = field(default_factory=list)
    reported_tokens: Optional[int] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None

    def observe(self, chunk: UpstreamChunk) -> None:
        if chunk.text:
            self.text_parts.append(chunk.text)
            self.streamed_chars += len(chunk.text)
        if chunk.usage is not None:
            self.reported_tokens = chunk.usage.total_tokens
        self.conversation_id = chunk.conversation_id or self.conversation_id
        self.message_id = chunk.message_id or self.message_id

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class _Failure:
    def __init__(self, error: UpstreamError):
        self.error = error


_END = object()


class SettlementCoordinator:
    """Estimate, check, call upstream, reconcile and charge.

    Components are passed in; the coordinator holds no global state.
    """

    def __init__(
        self,
        estimator: CostEstimator,
        pricing: PricingTable,
        ledger: Ledger,
        gateway: UpstreamGateway,
        upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT,
        stream_buffer_size: int = DEFAULT_STREAM_BUFFER_SIZE,
        stream_max_seconds: float = DEFAULT_STREAM_MAX_SECONDS
    ):
        """Wire the coordinator.

        Args:
            upstream_timeout: Blocking call timeout, and the longest gap
                allowed between two streamed chunks
            stream_buffer_size: Chunks buffered between upstream and caller
            stream_max_seconds: Overall deadline for one streamed response
        """
        if upstream_timeout <= 0:
            raise ValueError("upstream_timeout must be > 0")
        if stream_buffer_size <= 0:
            raise ValueError("stream_buffer_size must be > 0")
        if stream_max_seconds <= 0:
            raise ValueError("stream_max_seconds must be > 0")
        self.estimator = estimator
        self.pricing = pricing
        self.ledger = ledger
        self.gateway = gateway
        self.upstream_timeout = upstream_timeout
        self.stream_buffer_size = stream_buffer_size
        self.stream_max_seconds = stream_max_seconds

    def estimate(
        self,
        account_id: str,
        prompt: str,
        model: str,
        context: Optional[EstimationContext] = None
    ) -> EstimateQuote:
        """Quote a request against the account's current balance."""
        estimate = self.estimator.estimate(prompt, model, context)
        balance = self.ledger.get_balance(account_id)
        return EstimateQuote(
            estimate=estimate,
            account_balance=balance,
            can_afford=balance >= estimate.predicted_cost
        )

    def complete(
        self,
        account_id: str,
        prompt: str,
        model: str,
        conversation_id: Optional[str] = None,
        context: Optional[EstimationContext] = None
    ) -> Outcome:
        """Run a blocking metered completion.

        Returns:
            CompletionResult when settled, AbortedRequest otherwise

        Raises:
            AccountNotFoundError: If the account does not exist
            AccountInactiveError: If the account is deactivated
            LedgerStorageError: If the ledger cannot be read or written
        """
        attempt, begun = self._begin(account_id, prompt, model, context, OPERATION_COMPLETION)
        if isinstance(begun, AbortedRequest):
            return begun
        estimate = begun

        attempt.advance(SettlementState.UPSTREAM_CALLED)
        try:
            reply = self.gateway.complete(
                prompt, account_id, model,
                conversation_id=conversation_id,
                timeout=self.upstream_timeout
            )
        except UpstreamError as e:
            return self._abort_upstream(attempt, e)

        reported = reply.usage.total_tokens if reply.usage is not None else None
        return self._settle(
            attempt, estimate, reported,
            answer_text=reply.text,
            conversation_id=reply.conversation_id,
            message_id=reply.message_id
        )

    def complete_streaming(
        self,
        account_id: str,
        prompt: str,
        model: str,
        conversation_id: Optional[str] = None,
        context: Optional[EstimationContext] = None
    ) -> Iterator[StreamEvent]:
        """Run a streamed metered completion.

        Account and balance checks happen before this returns; the upstream
        call starts when the first event is requested. Closing the returned
        iterator early cancels the stream and settles on the tokens
        observed so far.

        Returns:
            Iterator of CHUNK events ending in one USAGE or ERROR event
        """
        attempt, begun = self._begin(account_id, prompt, model, context, OPERATION_STREAM)
        if isinstance(begun, AbortedRequest):
            return iter([StreamEvent(StreamEventKind.ERROR, error=begun)])
        return self._stream(attempt, begun, prompt, conversation_id)

    def _begin(
        self,
        account_id: str,
        prompt: str,
        model: str,
        context: Optional[EstimationContext],
        operation: str
    ) -> Tuple[SettlementAttempt, Union[CostEstimate, AbortedRequest]]:
        account = self.ledger.get_account(account_id)
        if not account.active:
            raise AccountInactiveError(account_id)

        attempt = SettlementAttempt(account_id, model, operation)
        try:
            estimate = self.estimator.estimate(prompt, model, context)
        except EstimationError as e:
            logger.warning("Estimation failed for account %s: %s", account_id, e)
            attempt.advance(SettlementState.ABORTED)
            return attempt, AbortedRequest(AbortReason.ESTIMATION_ERROR, detail=str(e))

        attempt.advance(SettlementState.BALANCE_CHECKED)
        if account.balance < estimate.predicted_cost:
            attempt.advance(SettlementState.ABORTED)
            logger.info(
                "Insufficient credit for %s: required %d, available %d",
                account_id, estimate.predicted_cost, account.balance
            )
            return attempt, AbortedRequest(
                AbortReason.INSUFFICIENT_CREDIT,
                detail="Insufficient credits",
                required=estimate.predicted_cost,
                available=account.balance
            )
        return attempt, estimate

    def _abort_upstream(self, attempt: SettlementAttempt, error: UpstreamError) -> AbortedRequest:
        attempt.advance(SettlementState.ABORTED)
        logger.warning("Upstream call for %s failed, not charged: %s", attempt.account_id, error.detail)
        return AbortedRequest(AbortReason.UPSTREAM_ERROR, detail=error.detail)

    def _settle(
        self,
        attempt: SettlementAttempt,
        estimate: CostEstimate,
        reported_tokens: Optional[int],
        answer_text: str,
        conversation_id: Optional[str],
        message_id: Optional[str]
    ) -> Outcome:
        attempt.advance(SettlementState.RECONCILING)
        actual_tokens = reported_tokens if reported_tokens is not None else estimate.predicted_tokens
        actual_cost = self.pricing.calculate_cost(attempt.model, actual_tokens)

        debit = attempt.debit(self.ledger, actual_cost)
        if not debit.ok:
            # Balance dropped after the pre-call check; the answer was
            # produced but is discarded from billing.
            attempt.advance(SettlementState.ABORTED)
            logger.warning(
                "Discarding upstream result for %s from billing: cost %d exceeds balance %d",
                attempt.account_id, actual_cost, debit.balance
            )
            return AbortedRequest(
                AbortReason.INSUFFICIENT_CREDIT,
                detail="Balance dropped below the actual cost during the request",
                required=actual_cost,
                available=debit.balance
            )

        metadata: Dict[str, str] = {}
        if conversation_id:
            metadata["conversation_id"] = conversation_id
        if message_id:
            metadata["message_id"] = message_id
        attempt.record_usage(self.ledger, UsageRecord(
            account_id=attempt.account_id,
            operation=attempt.operation,
            model=attempt.model,
            tokens=actual_tokens,
            cost=actual_cost,
            timestamp=datetime.now(),
            metadata=metadata,
            balance_after=debit.balance
        ))
        attempt.advance(SettlementState.SETTLED)
        logger.info(
            "Settled %s for %s: %d tokens, %d credits, balance %d",
            attempt.operation, attempt.account_id, actual_tokens, actual_cost, debit.balance
        )
        return CompletionResult(
            answer_text=answer_text,
            actual_tokens=actual_tokens,
            actual_cost=actual_cost,
            remaining_balance=debit.balance,
            conversation_id=conversation_id,
            message_id=message_id
        )

    def _stream(
        self,
        attempt: SettlementAttempt,
        estimate: CostEstimate,
        prompt: str,
        conversation_id: Optional[str]
    ) -> Iterator[StreamEvent]:
        channel: "queue.Queue" = queue.Queue(maxsize=self.stream_buffer_size)
        stop = threading.Event()
        progress = _StreamProgress(conversation_id=conversation_id)

        attempt.advance(SettlementState.UPSTREAM_CALLED)
        producer = threading.Thread(
            target=self._produce,
            args=(channel, stop, attempt, prompt, conversation_id),
            name=f"upstream-{attempt.account_id}",
            daemon=True
        )
        producer.start()

        deadline = time.monotonic() + self.stream_max_seconds
        try:
            while True:
                remaining = deadline - time.monotonic()
                try:
                    if remaining <= 0:
                        raise queue.Empty
                    item = channel.get(timeout=min(self.upstream_timeout, remaining))
                except queue.Empty:
                    if time.monotonic() >= deadline:
                        error = UpstreamError(
                            f"Upstream stream exceeded {self.stream_max_seconds}s"
                        )
                    else:
                        error = UpstreamError(f"No upstream data within {self.upstream_timeout}s")
                    yield StreamEvent(StreamEventKind.ERROR, error=self._abort_upstream(attempt, error))
                    return
                if item is _END:
                    break
                if isinstance(item, _Failure):
                    yield StreamEvent(StreamEventKind.ERROR, error=self._abort_upstream(attempt, item.error))
                    return
                progress.observe(item)
                if item.text:
                    yield StreamEvent(StreamEventKind.CHUNK, text=item.text)

            outcome = self._settle(
                attempt, estimate, progress.reported_tokens,
                answer_text=progress.text,
                conversation_id=progress.conversation_id,
                message_id=progress.message_id
            )
            if isinstance(outcome, AbortedRequest):
                yield StreamEvent(StreamEventKind.ERROR, error=outcome)
            else:
                yield StreamEvent(StreamEventKind.USAGE, summary=outcome)
        except GeneratorExit:
            if attempt.state == SettlementState.UPSTREAM_CALLED:
                self._settle_cancelled(attempt, estimate, prompt, progress)
            raise
        finally:
            stop.set()

    def _settle_cancelled(
        self,
        attempt: SettlementAttempt,
        estimate: CostEstimate,
        prompt: str,
        progress: _StreamProgress
    ) -> None:
        observed = progress.reported_tokens
        if observed is None:
            observed = self.estimator.input_tokens(prompt) + approximate_tokens(progress.text)
        logger.info(
            "Stream for %s cancelled by caller, settling on %d observed tokens",
            attempt.account_id, observed
        )
        self._settle(
            attempt, estimate, observed,
            answer_text=progress.text,
            conversation_id=progress.conversation_id,
            message_id=progress.message_id
        )

    def _produce(
        self,
        channel: "queue.Queue",
        stop: threading.Event,
        attempt: SettlementAttempt,
        prompt: str,
        conversation_id: Optional[str]
    ) -> None:
        def put(item) -> bool:
            while not stop.is_set():
                try:
                    channel.put(item, timeout=0.1)
                    return True
                except queue.Full:
                    continue
            return False

        chunks = None
        try:
            chunks = self.gateway.complete_streaming(
                prompt, attempt.account_id, attempt.model,
                conversation_id=conversation_id,
                timeout=self.upstream_timeout
            )
            for chunk in chunks:
                if not put(chunk):
                    return
            put(_END)
        except UpstreamError as e:
            put(_Failure(e))
        except Exception as e:
            logger.exception("Upstream stream for %s failed unexpectedly", attempt.account_id)
            put(_Failure(UpstreamError(f"Upstream stream failed: {e}")))
        finally:
            close = getattr(chunks, "close", None)
            if close is not None:
                close()
