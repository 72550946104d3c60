"""
Tests for payment reconciliation.

Payment events are replayed, reordered and delivered concurrently; the
ledger must be credited exactly once per successful payment.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from ai_credit_meter.core.payments import PaymentEventStatus, PaymentReconciler, ReconcileOutcome
from ai_credit_meter.storage.models import PaymentStatus


def _stripe_event(event_type, intent_id, amount=4500, metadata=None):
    return {
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {"id": intent_id, "amount": amount, "metadata": metadata or {}}},
    }


def _checkout_event(event_type, session_id, amount_total=4500, payment_status="paid", metadata=None):
    return {
        "id": "evt_2",
        "type": event_type,
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "amount_total": amount_total,
            "payment_status": payment_status,
            "metadata": metadata or {},
        }},
    }


class TestInitiatePayment:
    """Test pending payment creation."""

    def test_credits_default_to_pack(self, ledger):
        ledger.open_account("alice", 0)
        record = PaymentReconciler(ledger).initiate_payment("pi_1", "alice", 4500)

        assert record.credits_granted == 5000
        assert record.status == PaymentStatus.PENDING
        assert ledger.get_balance("alice") == 0

    def test_explicit_credits(self, ledger):
        ledger.open_account("alice", 0)
        record = PaymentReconciler(ledger).initiate_payment("pi_1", "alice", 500, credits_granted=777)
        assert record.credits_granted == 777

    def test_invalid_input(self, ledger):
        ledger.open_account("alice", 0)
        reconciler = PaymentReconciler(ledger)
        with pytest.raises(ValueError):
            reconciler.initiate_payment("", "alice", 500)
        with pytest.raises(ValueError):
            reconciler.initiate_payment("pi_1", "alice", -5)
        with pytest.raises(ValueError):
            reconciler.initiate_payment("pi_1", "alice", 500, credits_granted=-1)


class TestOnPaymentEvent:
    """Test outcome handling and idempotence."""

    def setup_reconciler(self, ledger, credits=500):
        ledger.open_account("alice", 100)
        reconciler = PaymentReconciler(ledger)
        reconciler.initiate_payment("pi_1", "alice", 500, credits_granted=credits)
        return reconciler

    def test_success_applies_once(self, ledger):
        reconciler = self.setup_reconciler(ledger)

        first = reconciler.on_payment_event("pi_1", PaymentEventStatus.SUCCEEDED)
        second = reconciler.on_payment_event("pi_1", PaymentEventStatus.SUCCEEDED)

        assert first.applied
        assert first.outcome == ReconcileOutcome.APPLIED
        assert not second.applied
        assert second.outcome == ReconcileOutcome.DUPLICATE
        assert ledger.get_balance("alice") == 600
        assert ledger.get_payment("pi_1").status == PaymentStatus.COMPLETED

    def test_unknown_reference(self, ledger):
        reconciler = self.setup_reconciler(ledger)

        result = reconciler.on_payment_event("pi_unknown", PaymentEventStatus.SUCCEEDED, amount=500)

        assert not result.applied
        assert result.outcome == ReconcileOutcome.NOT_FOUND
        assert ledger.get_payment("pi_unknown") is None
        assert ledger.get_balance("alice") == 100

    def test_failure_then_success_is_ignored(self, ledger):
        reconciler = self.setup_reconciler(ledger)

        failed = reconciler.on_payment_event("pi_1", PaymentEventStatus.FAILED)
        late = reconciler.on_payment_event("pi_1", PaymentEventStatus.SUCCEEDED)

        assert failed.outcome == ReconcileOutcome.FAILED
        assert not failed.applied
        assert late.outcome == ReconcileOutcome.IGNORED
        assert ledger.get_balance("alice") == 100
        assert ledger.get_payment("pi_1").status == PaymentStatus.FAILED

    def test_failure_after_success_keeps_credit(self, ledger):
        reconciler = self.setup_reconciler(ledger)

        reconciler.on_payment_event("pi_1", PaymentEventStatus.SUCCEEDED)
        result = reconciler.on_payment_event("pi_1", PaymentEventStatus.FAILED)

        assert result.outcome == ReconcileOutcome.DUPLICATE
        assert ledger.get_balance("alice") == 600

    def test_recorded_credits_are_authoritative(self, ledger):
        reconciler = self.setup_reconciler(ledger, credits=500)

        result = reconciler.on_payment_event(
            "pi_1", PaymentEventStatus.SUCCEEDED,
            amount=99999, credits_granted=99999, account_id="mallory"
        )

        assert result.applied
        assert ledger.get_balance("alice") == 600

    def test_concurrent_deliveries_apply_once(self, ledger):
        reconciler = self.setup_reconciler(ledger)

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(
                lambda _: reconciler.on_payment_event("pi_1", PaymentEventStatus.SUCCEEDED),
                range(10)
            ))

        assert sum(1 for r in results if r.applied) == 1
        assert all(r.outcome == ReconcileOutcome.DUPLICATE for r in results if not r.applied)
        assert ledger.get_balance("alice") == 600


class TestProviderEvents:
    """Test dispatch of verified Stripe events."""

    def setup_method(self):
        self.metadata = {"account_id": "alice", "credits": "5000"}

    def test_payment_intent_succeeded(self, ledger):
        ledger.open_account("alice", 0)
        reconciler = PaymentReconciler(ledger)
        reconciler.initiate_payment("pi_1", "alice", 4500)

        result = reconciler.handle_provider_event(
            _stripe_event("payment_intent.succeeded", "pi_1", metadata=self.metadata)
        )

        assert result.applied
        assert result.external_id == "pi_1"
        assert ledger.get_balance("alice") == 5000

    def test_payment_intent_failed(self, ledger):
        ledger.open_account("alice", 0)
        reconciler = PaymentReconciler(ledger)
        reconciler.initiate_payment("pi_1", "alice", 4500)

        result = reconciler.handle_provider_event(
            _stripe_event("payment_intent.payment_failed", "pi_1", metadata=self.metadata)
        )

        assert result.outcome == ReconcileOutcome.FAILED
        assert ledger.get_balance("alice") == 0

    def test_unparseable_metadata_credits_still_applies(self, ledger):
        ledger.open_account("alice", 0)
        reconciler = PaymentReconciler(ledger)
        reconciler.initiate_payment("pi_1", "alice", 4500)

        result = reconciler.handle_provider_event(_stripe_event(
            "payment_intent.succeeded", "pi_1",
            metadata={"account_id": "alice", "credits": "1,000"}
        ))

        assert result.applied
        assert ledger.get_balance("alice") == 5000

    def test_checkout_session_completed(self, ledger):
        ledger.open_account("alice", 0)
        reconciler = PaymentReconciler(ledger)
        reconciler.initiate_payment("cs_1", "alice", 4500)

        result = reconciler.handle_provider_event(_checkout_event(
            "checkout.session.completed", "cs_1", metadata=self.metadata
        ))

        assert result.applied
        assert result.outcome == ReconcileOutcome.APPLIED
        assert ledger.get_balance("alice") == 5000

        replay = reconciler.handle_provider_event(_checkout_event(
            "checkout.session.completed", "cs_1", metadata=self.metadata
        ))
        assert replay.outcome == ReconcileOutcome.DUPLICATE
        assert ledger.get_balance("alice") == 5000

    def test_unpaid_checkout_waits_for_async_payment(self, ledger):
        ledger.open_account("alice", 0)
        reconciler = PaymentReconciler(ledger)
        reconciler.initiate_payment("cs_1", "alice", 4500)

        pending = reconciler.handle_provider_event(_checkout_event(
            "checkout.session.completed", "cs_1", payment_status="unpaid"
        ))
        assert pending.outcome == ReconcileOutcome.IGNORED
        assert ledger.get_payment("cs_1").status == PaymentStatus.PENDING

        result = reconciler.handle_provider_event(_checkout_event(
            "checkout.session.async_payment_succeeded", "cs_1"
        ))
        assert result.applied
        assert ledger.get_balance("alice") == 5000

    @pytest.mark.parametrize("event_type", [
        "checkout.session.expired",
        "checkout.session.async_payment_failed",
    ])
    def test_checkout_session_failures(self, ledger, event_type):
        ledger.open_account("alice", 0)
        reconciler = PaymentReconciler(ledger)
        reconciler.initiate_payment("cs_1", "alice", 4500)

        result = reconciler.handle_provider_event(_checkout_event(event_type, "cs_1"))

        assert result.outcome == ReconcileOutcome.FAILED
        assert ledger.get_payment("cs_1").status == PaymentStatus.FAILED
        assert ledger.get_balance("alice") == 0

    def test_other_event_types_ignored(self, ledger):
        reconciler = PaymentReconciler(ledger)

        result = reconciler.handle_provider_event(_stripe_event("customer.created", "cus_1"))

        assert result.outcome == ReconcileOutcome.IGNORED
        assert not result.applied

    def test_event_without_object_ignored(self, ledger):
        result = PaymentReconciler(ledger).handle_provider_event({"type": "payment_intent.succeeded"})
        assert result.outcome == ReconcileOutcome.IGNORED
