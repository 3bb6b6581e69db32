"""
HTTP Tests for the Engine API

Tests cover:
1. Draw, sellback and ship endpoints
2. Payment settlement and webhook endpoints
3. Error envelopes and status codes
"""

import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from api.index import create_app
from ledger.models import LedgerReason

from conftest import PACK_ID, USER_ID, seed_pack, sign_payload


CARDS = [{"id": "card-a", "name": "Serra Angel", "market_value": 10000}]


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def checkout_event(session_id: str, rips: str) -> dict:
    return {
        "type": "checkout.session.completed",
        "data": {"object": {"id": session_id, "payment_status": "paid",
                            "metadata": {"user_id": USER_ID, "rips": rips}}},
    }


def fund(client, amount: str, ref: str = "cs_test_1"):
    response = client.post("/payments/settle", json={
        "user_id": USER_ID, "external_ref": ref, "amount": amount,
    })
    assert response.status_code == 200
    return response.json()


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestDrawEndpoints:
    """Tests for pack opening over HTTP."""

    def test_draw_sellback_flow(self, client, services):
        seed_pack(services, CARDS)
        fund(client, "1")

        draw = client.post("/draws", json={"user_id": USER_ID, "pack_id": PACK_ID})

        assert draw.status_code == 201
        body = draw.json()
        assert body["card_id"] == "card-a"
        assert body["card_name"] == "Serra Angel"
        assert body["market_value_cents"] == 10000
        assert Decimal(body["new_balance"]) == Decimal("0")

        sell = client.post(f"/holdings/{body['holding_id']}/sellback", json={"user_id": USER_ID})

        assert sell.status_code == 200
        assert Decimal(sell.json()["credited_amount"]) == Decimal("85")
        assert Decimal(sell.json()["new_balance"]) == Decimal("85")

        again = client.post(f"/holdings/{body['holding_id']}/sellback", json={"user_id": USER_ID})
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "already_sold"

    def test_draw_replay(self, client, services):
        seed_pack(services, CARDS)
        fund(client, "5")
        payload = {"user_id": USER_ID, "pack_id": PACK_ID, "idempotency_key": "k-1"}

        first = client.post("/draws", json=payload).json()
        second = client.post("/draws", json=payload).json()

        assert second["replayed"] is True
        assert second["holding_id"] == first["holding_id"]
        assert services.ledger.get_balance(USER_ID).amount == Decimal("4.00")

    def test_insufficient_funds(self, client, services):
        seed_pack(services, CARDS)

        response = client.post("/draws", json={"user_id": USER_ID, "pack_id": PACK_ID})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "insufficient_funds"

    def test_unknown_pack(self, client):
        response = client.post("/draws", json={"user_id": USER_ID, "pack_id": "missing"})

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "pack_not_found"

    def test_inactive_pack(self, client, services):
        seed_pack(services, CARDS)
        services.catalog.set_pack_active(PACK_ID, False)
        services.ledger.credit(USER_ID, Decimal("1"), LedgerReason.PURCHASE)

        response = client.post("/draws", json={"user_id": USER_ID, "pack_id": PACK_ID})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "pack_inactive"

    def test_ship_and_list(self, client, services):
        seed_pack(services, CARDS)
        fund(client, "1")
        holding_id = client.post("/draws", json={"user_id": USER_ID, "pack_id": PACK_ID}).json()["holding_id"]

        shipped = client.post(f"/holdings/{holding_id}/ship", json={"user_id": USER_ID, "shipment_id": "shp_9"})

        assert shipped.status_code == 200
        assert shipped.json()["is_shipped"] is True
        assert client.get(f"/users/{USER_ID}/holdings").json() == []
        listed = client.get(f"/users/{USER_ID}/holdings", params={"include_terminal": True}).json()
        assert [h["id"] for h in listed] == [holding_id]

    def test_sellback_unknown_holding(self, client):
        response = client.post("/holdings/nope/sellback", json={"user_id": USER_ID})

        assert response.status_code == 404

    def test_probabilities(self, client, services):
        seed_pack(services, CARDS + [{"id": "card-b", "market_value": 100}])

        response = client.get(f"/packs/{PACK_ID}/probabilities")

        assert response.status_code == 200
        body = response.json()
        assert body["strategy"] == "inverse_power"
        assert sum(p["probability"] for p in body["probabilities"]) == pytest.approx(1.0)


class TestLedgerEndpoints:
    """Tests for balance, history and payments over HTTP."""

    def test_settle_is_idempotent(self, client):
        first = fund(client, "25")
        second = fund(client, "25")

        assert first["already_processed"] is False
        assert second["already_processed"] is True
        assert Decimal(second["balance"]) == Decimal("25")

    def test_balance_and_history(self, client):
        fund(client, "10", ref="cs_a")
        fund(client, "5", ref="cs_b")

        balance = client.get(f"/users/{USER_ID}/balance").json()
        history = client.get(f"/users/{USER_ID}/ledger", params={"limit": 1}).json()

        assert Decimal(balance["amount"]) == Decimal("15")
        assert history["total_count"] == 2
        assert len(history["entries"]) == 1
        assert history["entries"][0]["external_ref"] == "cs_b"

    def test_settle_validation(self, client):
        response = client.post("/payments/settle", json={"user_id": USER_ID, "external_ref": "", "amount": "1"})

        assert response.status_code == 422

    def test_webhook_checkout_completed(self, client, services):
        payload = json.dumps(checkout_event("cs_hook", rips="12"))
        headers = {"Stripe-Signature": sign_payload(payload)}

        response = client.post("/payments/webhook", content=payload, headers=headers)
        client.post("/payments/webhook", content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json()["received"] is True
        assert services.ledger.get_balance(USER_ID).amount == Decimal("12.00")

    def test_webhook_without_signature_rejected(self, client, services):
        """An unsigned checkout event never mints Rips."""
        response = client.post("/payments/webhook", json=checkout_event("cs_forged", rips="1000000"))

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_payment_event"
        assert services.ledger.get_balance(USER_ID).amount == Decimal("0.00")

    def test_webhook_bad_signature_rejected(self, client, services):
        payload = json.dumps(checkout_event("cs_forged", rips="500"))
        headers = {"Stripe-Signature": sign_payload(payload, secret="whsec_attacker")}

        response = client.post("/payments/webhook", content=payload, headers=headers)

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_payment_event"
        assert services.ledger.get_balance(USER_ID).amount == Decimal("0.00")

    def test_webhook_secret_not_configured(self, client, services):
        services.settlement.webhook_secret = None
        payload = json.dumps(checkout_event("cs_hook", rips="12"))

        response = client.post("/payments/webhook", content=payload,
                               headers={"Stripe-Signature": sign_payload(payload)})

        assert response.status_code == 500
        assert response.json()["detail"]["error"] == "webhook_not_configured"
        assert services.ledger.get_balance(USER_ID).amount == Decimal("0.00")

    @pytest.mark.parametrize("rips", ["NaN", "Infinity", "1e30", "-3", "0"])
    def test_webhook_rips_out_of_range(self, client, services, rips):
        payload = json.dumps(checkout_event("cs_range", rips=rips))

        response = client.post("/payments/webhook", content=payload,
                               headers={"Stripe-Signature": sign_payload(payload)})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_payment_event"
        assert services.ledger.get_balance(USER_ID).amount == Decimal("0.00")

    @pytest.mark.parametrize("event", [
        {"type": "checkout.session.completed"},
        {"type": "checkout.session.completed", "data": []},
        {"type": "checkout.session.completed", "data": "cs_test"},
        [],
    ])
    def test_webhook_malformed(self, client, event):
        payload = json.dumps(event)

        response = client.post("/payments/webhook", content=payload,
                               headers={"Stripe-Signature": sign_payload(payload)})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "invalid_payment_event"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
