"""
Payment settlement with exactly-once crediting.

A payment confirmation can reach us through the provider webhook and through
the user's return to the success page, and the provider retries webhooks.
The provider's checkout session id is the idempotency key: it is stored in
``ledger_entries.external_ref`` under a UNIQUE index, so two concurrent
settlements for the same session can never both commit a credit.
"""

import json
import logging
import sqlite3
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

import stripe

from .models import (
    LedgerReason,
    PaymentEventResult,
    PaymentEventStatus,
    SettlementResult,
)
from .service import LedgerService, LedgerServiceError
from .storage import Database, dumps, to_iso, utc_now

logger = logging.getLogger(__name__)

MAX_PURCHASE_RIPS = Decimal("1000000")


class InvalidPaymentEventError(LedgerServiceError):
    code = "invalid_payment_event"


class WebhookNotConfiguredError(LedgerServiceError):
    code = "webhook_not_configured"


class PaymentSettlementGuard:
    def __init__(self, db: Database, ledger: LedgerService, webhook_secret: Optional[str] = None,
                 signature_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.db = db
        self.ledger = ledger
        self.webhook_secret = webhook_secret
        self.signature_tolerance = signature_tolerance

    def settle_purchase(
        self,
        user_id: str,
        external_ref: str,
        amount: Decimal,
        currency: str = "usd",
        metadata: Optional[dict] = None,
    ) -> SettlementResult:
        if not external_ref:
            raise InvalidPaymentEventError("external_ref is required for settlement")

        existing = self.ledger.find_by_external_ref(external_ref)
        if existing:
            return self._already_processed(existing.user_id, external_ref, user_id)

        metadata = dict(metadata or {})
        metadata.setdefault("stripe_checkout_session_id", external_ref)
        metadata["currency"] = currency

        try:
            with self.db.transaction() as tx:
                # Re-check under the write lock; the UNIQUE index still backs this up.
                if self.ledger.find_by_external_ref(external_ref, conn=tx):
                    raise _DuplicateSettlement()
                response = self.ledger.credit(
                    user_id, amount, LedgerReason.PURCHASE, metadata,
                    external_ref=external_ref, conn=tx,
                )
        except (_DuplicateSettlement, sqlite3.IntegrityError):
            owner = self.ledger.find_by_external_ref(external_ref)
            return self._already_processed(owner.user_id if owner else user_id, external_ref, user_id)

        logger.info("settlement_credited user=%s external_ref=%s amount=%s balance=%s",
                    user_id, external_ref, response.entry.amount, response.balance)
        return SettlementResult(balance=response.balance, already_processed=False, entry=response.entry)

    def verify_provider_event(self, payload: Union[bytes, str], signature: Optional[str]) -> dict:
        """Check the provider's signature header and return the parsed event."""
        if not signature:
            raise InvalidPaymentEventError("Missing Stripe-Signature header")
        if not self.webhook_secret:
            logger.error("webhook_secret_not_configured")
            raise WebhookNotConfiguredError("Webhook secret not configured")
        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidPaymentEventError("Webhook payload is not UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.signature_tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid reason=%s", e)
            raise InvalidPaymentEventError("Invalid webhook signature") from e
        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            raise InvalidPaymentEventError("Webhook payload is not valid JSON") from e

    def handle_provider_event(self, event: dict) -> PaymentEventResult:
        """Dispatch a payment provider event (webhook payload)."""
        event_type = event.get("type") if isinstance(event, dict) else None
        if not event_type:
            raise InvalidPaymentEventError("Event has no type")
        data = event.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict) or not obj.get("id"):
            raise InvalidPaymentEventError(f"Event {event_type} has no data.object.id")

        if event_type == "checkout.session.completed":
            return self._handle_checkout_completed(event_type, obj)
        if event_type == "payment_intent.payment_failed":
            self._record_event(event_type, obj["id"], _metadata(obj).get("user_id"),
                               PaymentEventStatus.FAILED, obj)
            logger.info("payment_failed external_ref=%s", obj["id"])
            return PaymentEventResult(event_type=event_type, handled=True, status=PaymentEventStatus.FAILED)
        if event_type == "charge.refunded":
            # Rips may already be spent; refunds go to manual review instead of a deduction.
            ref = obj.get("payment_intent") or obj["id"]
            self._record_event(event_type, ref, _metadata(obj).get("user_id"),
                               PaymentEventStatus.MANUAL_REVIEW, obj)
            logger.warning("refund_requires_manual_review external_ref=%s", ref)
            return PaymentEventResult(event_type=event_type, handled=True, status=PaymentEventStatus.MANUAL_REVIEW)

        logger.info("unhandled_payment_event type=%s", event_type)
        return PaymentEventResult(event_type=event_type, handled=False)

    def _handle_checkout_completed(self, event_type: str, session: dict) -> PaymentEventResult:
        metadata = _metadata(session)
        user_id = metadata.get("user_id")
        rips = metadata.get("rips")
        if not user_id or rips in (None, ""):
            raise InvalidPaymentEventError(f"Missing user_id/rips metadata in checkout session {session['id']}")
        try:
            amount = Decimal(str(rips))
        except InvalidOperation:
            amount = None
        if amount is None or not amount.is_finite() or not 0 < amount <= MAX_PURCHASE_RIPS:
            raise InvalidPaymentEventError(f"Invalid rips metadata {rips!r} in checkout session {session['id']}")

        if session.get("payment_status", "paid") != "paid":
            logger.info("checkout_not_paid external_ref=%s status=%s", session["id"], session.get("payment_status"))
            return PaymentEventResult(event_type=event_type, handled=False)

        settlement = self.settle_purchase(
            user_id,
            session["id"],
            amount,
            currency=session.get("currency") or "usd",
            metadata={
                "bundle_id": metadata.get("bundle_id"),
                "amount_cents": session.get("amount_total") or 0,
                "stripe_payment_intent_id": session.get("payment_intent"),
            },
        )
        if not settlement.already_processed:
            self._record_event(event_type, session["id"], user_id, PaymentEventStatus.SUCCEEDED, session)
        return PaymentEventResult(
            event_type=event_type, handled=True, status=PaymentEventStatus.SUCCEEDED, settlement=settlement
        )

    def _already_processed(self, owner_id: str, external_ref: str, requested_user_id: str) -> SettlementResult:
        if owner_id != requested_user_id:
            logger.critical("settlement_owner_mismatch external_ref=%s owner=%s requested=%s",
                            external_ref, owner_id, requested_user_id)
        logger.info("settlement_duplicate external_ref=%s user=%s", external_ref, requested_user_id)
        balance = self.ledger.get_balance(requested_user_id)
        return SettlementResult(balance=balance.amount, already_processed=True)

    def _record_event(self, event_type: str, external_ref: str, user_id: Optional[str],
                      status: PaymentEventStatus, payload: dict) -> None:
        with self.db.transaction() as tx:
            tx.execute(
                "INSERT INTO payment_events (event_type, external_ref, user_id, status, payload, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (event_type, external_ref, user_id, status.value, dumps(payload), to_iso(utc_now())),
            )


class _DuplicateSettlement(Exception):
    pass


def _metadata(obj: dict) -> dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}
