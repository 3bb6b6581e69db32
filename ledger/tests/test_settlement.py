"""
Unit Tests for Payment Settlement

Tests cover:
1. Exactly-once crediting per external reference
2. Concurrent duplicate settlement
3. Provider event dispatch (completed, failed, refunded, unknown)
4. Malformed events and out-of-range purchase amounts
5. Webhook signature verification
"""

import hashlib
import hmac
import json
import threading
import time
from decimal import Decimal

import pytest

from ledger.models import LedgerReason, PaymentEventStatus
from ledger.service import InvalidAmountError, LedgerService
from ledger.settlement import InvalidPaymentEventError, PaymentSettlementGuard, WebhookNotConfiguredError
from ledger.storage import Database


# Test constants
USER_ID = "550e8400-e29b-41d4-a716-446655440000"
SESSION_ID = "cs_test_a1b2c3"
WEBHOOK_SECRET = "whsec_settlement_test"


def make_guard(tmp_path, webhook_secret=None) -> PaymentSettlementGuard:
    db = Database(str(tmp_path / "settlement.db"))
    db.initialize()
    return PaymentSettlementGuard(db, LedgerService(db), webhook_secret=webhook_secret)


def checkout_event(session_id=SESSION_ID, user_id=USER_ID, rips="25", **overrides) -> dict:
    session = {
        "id": session_id,
        "payment_status": "paid",
        "amount_total": 2500,
        "currency": "usd",
        "payment_intent": "pi_123",
        "metadata": {"user_id": user_id, "rips": rips, "bundle_id": "starter"},
    }
    session.update(overrides)
    return {"type": "checkout.session.completed", "data": {"object": session}}


def signature_header(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def payment_events(guard: PaymentSettlementGuard) -> list:
    with guard.db.reader() as c:
        return [dict(r) for r in c.execute("SELECT * FROM payment_events ORDER BY id").fetchall()]


class TestSettlePurchase:
    """Tests for idempotent purchase settlement."""

    def test_first_settlement_credits(self, tmp_path):
        guard = make_guard(tmp_path)

        result = guard.settle_purchase(USER_ID, SESSION_ID, Decimal("25"))

        assert result.already_processed is False
        assert result.balance == Decimal("25.00")
        assert result.entry.reason == LedgerReason.PURCHASE
        assert result.entry.external_ref == SESSION_ID
        assert result.entry.metadata["stripe_checkout_session_id"] == SESSION_ID

    def test_duplicate_settlement_is_noop(self, tmp_path):
        """Same external_ref twice: one credit, second call reports already_processed."""
        guard = make_guard(tmp_path)

        guard.settle_purchase(USER_ID, SESSION_ID, Decimal("25"))
        second = guard.settle_purchase(USER_ID, SESSION_ID, Decimal("25"))

        assert second.already_processed is True
        assert second.balance == Decimal("25.00")
        assert second.entry is None
        assert guard.ledger.get_ledger_history(USER_ID).total_count == 1

    def test_distinct_refs_accumulate(self, tmp_path):
        guard = make_guard(tmp_path)

        guard.settle_purchase(USER_ID, "cs_1", Decimal("10"))
        result = guard.settle_purchase(USER_ID, "cs_2", Decimal("5"))

        assert result.balance == Decimal("15.00")

    def test_concurrent_duplicates_credit_once(self, tmp_path):
        """Webhook and success-page poll racing on one session credit exactly once."""
        guard = make_guard(tmp_path)
        results = []
        lock = threading.Lock()

        def worker():
            result = guard.settle_purchase(USER_ID, SESSION_ID, Decimal("25"))
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if not r.already_processed) == 1
        assert all(r.balance == Decimal("25.00") for r in results)
        assert guard.ledger.get_balance(USER_ID).amount == Decimal("25.00")
        assert guard.ledger.audit_balance(USER_ID).is_consistent

    def test_empty_external_ref_rejected(self, tmp_path):
        guard = make_guard(tmp_path)

        with pytest.raises(InvalidPaymentEventError):
            guard.settle_purchase(USER_ID, "", Decimal("25"))

    def test_non_positive_amount_rejected(self, tmp_path):
        guard = make_guard(tmp_path)

        with pytest.raises(InvalidAmountError):
            guard.settle_purchase(USER_ID, SESSION_ID, Decimal("0"))

        assert guard.ledger.find_by_external_ref(SESSION_ID) is None


class TestProviderEvents:
    """Tests for payment provider event dispatch."""

    def test_checkout_completed_settles(self, tmp_path):
        guard = make_guard(tmp_path)

        result = guard.handle_provider_event(checkout_event())

        assert result.handled is True
        assert result.status == PaymentEventStatus.SUCCEEDED
        assert result.settlement.balance == Decimal("25.00")
        entry = guard.ledger.find_by_external_ref(SESSION_ID)
        assert entry.metadata["bundle_id"] == "starter"
        assert entry.metadata["amount_cents"] == 2500
        assert [e["status"] for e in payment_events(guard)] == ["succeeded"]

    def test_webhook_retry_is_idempotent(self, tmp_path):
        guard = make_guard(tmp_path)

        guard.handle_provider_event(checkout_event())
        retry = guard.handle_provider_event(checkout_event())

        assert retry.settlement.already_processed is True
        assert guard.ledger.get_balance(USER_ID).amount == Decimal("25.00")
        assert len(payment_events(guard)) == 1

    def test_webhook_then_direct_settle_share_key(self, tmp_path):
        guard = make_guard(tmp_path)

        guard.handle_provider_event(checkout_event())
        poll = guard.settle_purchase(USER_ID, SESSION_ID, Decimal("25"))

        assert poll.already_processed is True

    def test_unpaid_checkout_not_settled(self, tmp_path):
        guard = make_guard(tmp_path)

        result = guard.handle_provider_event(checkout_event(payment_status="unpaid"))

        assert result.handled is False
        assert guard.ledger.get_balance(USER_ID).amount == Decimal("0.00")

    def test_checkout_missing_metadata(self, tmp_path):
        guard = make_guard(tmp_path)
        event = checkout_event()
        event["data"]["object"]["metadata"] = {}

        with pytest.raises(InvalidPaymentEventError):
            guard.handle_provider_event(event)

    def test_checkout_invalid_rips(self, tmp_path):
        guard = make_guard(tmp_path)

        with pytest.raises(InvalidPaymentEventError):
            guard.handle_provider_event(checkout_event(rips="lots"))

    @pytest.mark.parametrize("rips", ["NaN", "Infinity", "-Infinity", "1e30", "-5", "0", "1000000.01"])
    def test_checkout_rips_out_of_range(self, tmp_path, rips):
        """Non-finite, non-positive and oversized amounts are rejected before any credit."""
        guard = make_guard(tmp_path)

        with pytest.raises(InvalidPaymentEventError):
            guard.handle_provider_event(checkout_event(rips=rips))

        assert guard.ledger.get_balance(USER_ID).amount == Decimal("0")
        assert payment_events(guard) == []

    def test_checkout_rips_at_upper_bound(self, tmp_path):
        guard = make_guard(tmp_path)

        result = guard.handle_provider_event(checkout_event(rips="1000000"))

        assert result.settlement.balance == Decimal("1000000.00")

    def test_payment_failed_recorded(self, tmp_path):
        guard = make_guard(tmp_path)
        event = {"type": "payment_intent.payment_failed",
                 "data": {"object": {"id": "pi_failed", "metadata": {"user_id": USER_ID}}}}

        result = guard.handle_provider_event(event)

        assert result.status == PaymentEventStatus.FAILED
        events = payment_events(guard)
        assert events[0]["external_ref"] == "pi_failed"
        assert events[0]["user_id"] == USER_ID

    def test_refund_flagged_for_manual_review(self, tmp_path):
        """Refunds never deduct Rips automatically."""
        guard = make_guard(tmp_path)
        guard.handle_provider_event(checkout_event())
        event = {"type": "charge.refunded", "data": {"object": {"id": "ch_1", "payment_intent": "pi_123"}}}

        result = guard.handle_provider_event(event)

        assert result.status == PaymentEventStatus.MANUAL_REVIEW
        assert guard.ledger.get_balance(USER_ID).amount == Decimal("25.00")
        assert payment_events(guard)[-1]["external_ref"] == "pi_123"

    def test_unknown_event_ignored(self, tmp_path):
        guard = make_guard(tmp_path)

        result = guard.handle_provider_event({"type": "customer.created", "data": {"object": {"id": "cus_1"}}})

        assert result.handled is False
        assert payment_events(guard) == []

    @pytest.mark.parametrize("event", [
        {},
        {"type": "checkout.session.completed"},
        {"type": "checkout.session.completed", "data": {"object": {}}},
        {"type": "checkout.session.completed", "data": []},
        {"type": "checkout.session.completed", "data": "cs_test"},
        {"type": "checkout.session.completed", "data": {"object": ["cs_test"]}},
        ["checkout.session.completed"],
    ])
    def test_malformed_event_rejected(self, tmp_path, event):
        guard = make_guard(tmp_path)

        with pytest.raises(InvalidPaymentEventError):
            guard.handle_provider_event(event)


class TestWebhookVerification:
    """Tests for provider signature checks on raw webhook bodies."""

    def test_valid_signature_returns_event(self, tmp_path):
        guard = make_guard(tmp_path, webhook_secret=WEBHOOK_SECRET)
        payload = json.dumps(checkout_event())

        event = guard.verify_provider_event(payload.encode("utf-8"), signature_header(payload))

        assert event["type"] == "checkout.session.completed"
        assert event["data"]["object"]["id"] == SESSION_ID

    def test_missing_signature_rejected(self, tmp_path):
        guard = make_guard(tmp_path, webhook_secret=WEBHOOK_SECRET)

        with pytest.raises(InvalidPaymentEventError):
            guard.verify_provider_event(json.dumps(checkout_event()), None)

    def test_wrong_secret_rejected(self, tmp_path):
        guard = make_guard(tmp_path, webhook_secret=WEBHOOK_SECRET)
        payload = json.dumps(checkout_event())

        with pytest.raises(InvalidPaymentEventError):
            guard.verify_provider_event(payload, signature_header(payload, secret="whsec_other"))

    def test_tampered_body_rejected(self, tmp_path):
        guard = make_guard(tmp_path, webhook_secret=WEBHOOK_SECRET)
        payload = json.dumps(checkout_event(rips="25"))
        header = signature_header(payload)

        with pytest.raises(InvalidPaymentEventError):
            guard.verify_provider_event(json.dumps(checkout_event(rips="25000")), header)

    def test_stale_timestamp_rejected(self, tmp_path):
        guard = make_guard(tmp_path, webhook_secret=WEBHOOK_SECRET)
        payload = json.dumps(checkout_event())
        header = signature_header(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidPaymentEventError):
            guard.verify_provider_event(payload, header)

    def test_signed_non_json_rejected(self, tmp_path):
        guard = make_guard(tmp_path, webhook_secret=WEBHOOK_SECRET)
        payload = "not json"

        with pytest.raises(InvalidPaymentEventError):
            guard.verify_provider_event(payload, signature_header(payload))

    def test_unconfigured_secret(self, tmp_path):
        guard = make_guard(tmp_path)
        payload = json.dumps(checkout_event())

        with pytest.raises(WebhookNotConfiguredError):
            guard.verify_provider_event(payload, signature_header(payload))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
