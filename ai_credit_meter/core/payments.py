"""
Payment reconciliation.

Credits the ledger exactly once per successful external payment. Payment
providers redeliver confirmations, so every event is handled idempotently
by its external payment id. Events never create payment records; the
record must exist from payment initiation.

Signature verification of provider webhooks happens at the boundary,
before events reach this module.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .ledger import Ledger
from .pricing import credits_for_price
from ..storage.models import PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentEventStatus(Enum):
    """Outcome reported by the payment provider."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ReconcileOutcome(Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileResult:
    """Result of handling one payment event.

    ``applied`` is True only when this call credited the ledger.
    """
    applied: bool
    outcome: ReconcileOutcome
    external_id: Optional[str] = None


# Stripe event types handled by handle_provider_event. The payment record is
# keyed by the id of the Checkout Session or PaymentIntent it was started with.
PROVIDER_EVENTS = {
    "checkout.session.completed": PaymentEventStatus.SUCCEEDED,
    "checkout.session.async_payment_succeeded": PaymentEventStatus.SUCCEEDED,
    "checkout.session.expired": PaymentEventStatus.FAILED,
    "checkout.session.async_payment_failed": PaymentEventStatus.FAILED,
    "payment_intent.succeeded": PaymentEventStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventStatus.FAILED,
}


class PaymentReconciler:
    """Applies payment outcomes to the ledger."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def initiate_payment(
        self,
        external_id: str,
        account_id: str,
        amount_cents: int,
        credits_granted: Optional[int] = None
    ) -> PaymentRecord:
        """Record a pending payment when the provider intent is created.

        Args:
            external_id: Provider payment id (a Stripe Checkout Session or PaymentIntent id)
            account_id: Account to credit on success
            amount_cents: Amount charged, in cents
            credits_granted: Credits to grant; derived from the credit packs if omitted

        Returns:
            The pending PaymentRecord

        Raises:
            ValueError: If the id is empty, amounts are negative or the id exists
        """
        if not external_id or not external_id.strip():
            raise ValueError("external_id is required and cannot be empty")
        if amount_cents < 0:
            raise ValueError("amount_cents must be >= 0")
        if credits_granted is None:
            credits_granted = credits_for_price(amount_cents)
        if credits_granted < 0:
            raise ValueError("credits_granted must be >= 0")

        record = self.ledger.create_payment(PaymentRecord(
            external_id=external_id,
            account_id=account_id,
            amount=amount_cents,
            credits_granted=credits_granted
        ))
        logger.info(
            "Payment %s initiated for %s: %d cents for %d credits",
            external_id, account_id, amount_cents, credits_granted
        )
        return record

    def on_payment_event(
        self,
        external_id: str,
        status: PaymentEventStatus,
        amount: Optional[int] = None,
        credits_granted: Optional[int] = None,
        account_id: Optional[str] = None
    ) -> ReconcileResult:
        """Apply one payment outcome.

        The record created at initiation is authoritative for the account
        and the credits granted; event values that disagree are logged.

        Returns:
            ReconcileResult; ``applied`` is True only for the first success
        """
        record = self.ledger.get_payment(external_id)
        if record is None:
            logger.warning(
                "Payment event for unknown reference %s (account %s, status %s); not applied",
                external_id, account_id, status.value
            )
            return ReconcileResult(False, ReconcileOutcome.NOT_FOUND, external_id)

        _log_mismatches(record, amount, credits_granted, account_id)

        if record.status == PaymentStatus.COMPLETED:
            logger.info("Duplicate payment event for %s ignored", external_id)
            return ReconcileResult(False, ReconcileOutcome.DUPLICATE, external_id)
        if record.status == PaymentStatus.FAILED:
            logger.warning(
                "Payment %s already failed; %s event not applied", external_id, status.value
            )
            return ReconcileResult(False, ReconcileOutcome.IGNORED, external_id)

        if status == PaymentEventStatus.FAILED:
            if self.ledger.fail_payment(external_id):
                logger.info("Payment %s failed", external_id)
                return ReconcileResult(False, ReconcileOutcome.FAILED, external_id)
            return self._lost_race(external_id)

        if self.ledger.complete_payment(external_id):
            logger.info(
                "Payment %s completed: %d credits added to %s",
                external_id, record.credits_granted, record.account_id
            )
            return ReconcileResult(True, ReconcileOutcome.APPLIED, external_id)
        return self._lost_race(external_id)

    def _lost_race(self, external_id: str) -> ReconcileResult:
        # A concurrent delivery of the same event moved the record first.
        record = self.ledger.get_payment(external_id)
        if record is not None and record.status == PaymentStatus.COMPLETED:
            logger.info("Duplicate payment event for %s ignored", external_id)
            return ReconcileResult(False, ReconcileOutcome.DUPLICATE, external_id)
        return ReconcileResult(False, ReconcileOutcome.IGNORED, external_id)

    def handle_provider_event(self, event: Dict[str, Any]) -> ReconcileResult:
        """Dispatch an already verified Stripe event.

        Checkout Session and PaymentIntent success and failure events are
        acted upon; every other event type is acknowledged and ignored. A
        completed Checkout Session that is still unpaid (delayed payment
        methods) waits for its ``async_payment_*`` follow-up.
        """
        event_type = event.get("type")
        status = PROVIDER_EVENTS.get(event_type)
        obj = (event.get("data") or {}).get("object") or {}
        external_id = obj.get("id")

        if status is None or not external_id:
            logger.debug("Ignoring provider event %s of type %s", event.get("id"), event_type)
            return ReconcileResult(False, ReconcileOutcome.IGNORED, external_id)

        if event_type == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
            logger.info("Checkout session %s completed but unpaid; waiting for payment", external_id)
            return ReconcileResult(False, ReconcileOutcome.IGNORED, external_id)

        metadata = obj.get("metadata") or {}
        amount = obj.get("amount_total") if event_type.startswith("checkout.") else obj.get("amount")
        return self.on_payment_event(
            external_id,
            status,
            amount=_optional_int(amount, "amount", external_id),
            credits_granted=_optional_int(metadata.get("credits"), "credits", external_id),
            account_id=metadata.get("account_id")
        )


def _optional_int(value: Any, name: str, external_id: str) -> Optional[int]:
    # Event values only feed mismatch logging; the payment record decides.
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Payment %s: unparseable event %s %r ignored", external_id, name, value)
        return None


def _log_mismatches(
    record: PaymentRecord,
    amount: Optional[int],
    credits_granted: Optional[int],
    account_id: Optional[str]
) -> None:
    if amount is not None and amount != record.amount:
        logger.warning("Payment %s: event amount %d != recorded %d", record.external_id, amount, record.amount)
    if credits_granted is not None and credits_granted != record.credits_granted:
        logger.warning(
            "Payment %s: event credits %d != recorded %d",
            record.external_id, credits_granted, record.credits_granted
        )
    if account_id is not None and account_id != record.account_id:
        logger.warning(
            "Payment %s: event account %s != recorded %s",
            record.external_id, account_id, record.account_id
        )
