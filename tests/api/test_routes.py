"""HTTP surface: bearer actors, status codes and the structured error payload."""
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app.db.session import get_db
from app.services.auth.actor import Actor, issue_actor_token
from app.utils.time import utcnow
from tests.factories import CUSTOMER, MODEL


def _auth(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {issue_actor_token(actor)}"}


@pytest.fixture()
def client(session_factory):
    from app.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create(client, offering, start, price=100_000):
    return client.post(
        "/bookings",
        json={
            "model_id": "model-1",
            "service_offering_id": offering.id,
            "price": price,
            "start_date": start.isoformat(),
            "location": "Riverside",
        },
        headers=_auth(CUSTOMER),
    )


class TestAuth:
    def test_missing_token(self, client):
        assert client.get("/bookings").status_code == 401

    def test_tampered_token(self, client):
        token = issue_actor_token(CUSTOMER) + "x"
        resp = client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_health_is_public(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestBookingRoutes:
    def test_create_and_list(self, client, wallets, offering):
        resp = _create(client, offering, utcnow() + timedelta(days=3))

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "pending"
        assert body["payment_status"] == "held"

        listed = client.get("/bookings", headers=_auth(CUSTOMER)).json()
        assert [b["id"] for b in listed] == [body["id"]]
        count = client.get("/bookings/pending-count", headers=_auth(MODEL)).json()
        assert count == {"pending": 1}

    def test_insufficient_funds_payload(self, client, wallets, offering):
        resp = _create(client, offering, utcnow() + timedelta(days=3), price=900_000)

        assert resp.status_code == 402
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "InsufficientFunds"
        assert body["required"] == 900_000
        assert body["message"].startswith("Insufficient balance!")

    def test_unknown_booking(self, client, wallets):
        resp = client.get("/bookings/does-not-exist", headers=_auth(CUSTOMER))
        assert resp.status_code == 404
        assert resp.json()["message"] == "The booking does not exist!"

    def test_edit_rejects_unknown_fields(self, client, wallets, offering):
        booking_id = _create(client, offering, utcnow() + timedelta(days=3)).json()["id"]
        resp = client.patch(f"/bookings/{booking_id}", json={"status": "completed"}, headers=_auth(CUSTOMER))
        assert resp.status_code == 422

    def test_late_cancel(self, client, wallets, offering):
        booking_id = _create(client, offering, utcnow() + timedelta(hours=1)).json()["id"]

        resp = client.post(f"/bookings/{booking_id}/cancel", headers=_auth(CUSTOMER))

        assert resp.status_code == 422
        assert resp.json()["code"] == "CancellationWindowClosed"
        detail = client.get(f"/bookings/{booking_id}", headers=_auth(CUSTOMER)).json()
        assert detail["status"] == "pending"

    def test_reject_with_reason(self, client, wallets, offering):
        booking_id = _create(client, offering, utcnow() + timedelta(days=3)).json()["id"]

        resp = client.post(f"/bookings/{booking_id}/reject", json={"reason": "Busy"}, headers=_auth(MODEL))

        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        wallet = client.get("/wallets/me", headers=_auth(CUSTOMER)).json()
        assert wallet["balance"] == 500_000

    def test_wrong_party(self, client, wallets, offering):
        booking_id = _create(client, offering, utcnow() + timedelta(days=3)).json()["id"]
        resp = client.post(f"/bookings/{booking_id}/accept", headers=_auth(CUSTOMER))
        assert resp.status_code == 403
        assert resp.json()["code"] == "Unauthorized"

    def test_complete_and_confirm_by_token(self, client, wallets, offering):
        booking_id = _create(client, offering, utcnow() - timedelta(hours=2)).json()["id"]
        assert client.post(f"/bookings/{booking_id}/accept", headers=_auth(MODEL)).status_code == 200

        completed = client.post(f"/bookings/{booking_id}/complete", headers=_auth(MODEL))
        assert completed.json()["status"] == "awaiting_confirmation"
        assert "completion_token" not in completed.json()

        code = client.get(f"/bookings/{booking_id}/completion-code", headers=_auth(MODEL)).json()
        token = code["completion_token"]
        assert code["hours_until_auto_release"] == 24

        preview = client.get(f"/bookings/by-token/{token}", headers=_auth(CUSTOMER)).json()
        assert preview["is_expired"] is False

        resp = client.post("/bookings/confirm-by-token", json={"token": f" {token} "}, headers=_auth(CUSTOMER))
        assert resp.status_code == 200
        assert resp.json()["payment_status"] == "released"

        summary = client.get("/wallets/me/summary", headers=_auth(MODEL)).json()
        assert summary["total_available"] == 80_000
        assert summary["total_income"] == 80_000

        replay = client.post("/bookings/confirm-by-token", json={"token": token}, headers=_auth(CUSTOMER))
        assert replay.status_code == 422
        assert replay.json()["code"] == "TokenInvalid"

    def test_dispute_reason_length(self, client, wallets, offering):
        booking_id = _create(client, offering, utcnow() - timedelta(hours=2)).json()["id"]
        client.post(f"/bookings/{booking_id}/accept", headers=_auth(MODEL))
        client.post(f"/bookings/{booking_id}/complete", headers=_auth(MODEL))

        resp = client.post(f"/bookings/{booking_id}/dispute", json={"reason": "bad"}, headers=_auth(CUSTOMER))

        assert resp.status_code == 400
        assert resp.json()["field"] == "reason"


class TestCallRoutes:
    def test_call_lifecycle(self, client, wallets, call_offering):
        created = client.post(
            "/calls",
            json={"service_offering_id": call_offering.id, "call_type": "video"},
            headers=_auth(CUSTOMER),
        )
        assert created.status_code == 201
        call_id = created.json()["id"]

        assert client.post(f"/calls/{call_id}/initiate", headers=_auth(CUSTOMER)).status_code == 200
        assert client.post(f"/calls/{call_id}/accept", headers=_auth(MODEL)).status_code == 200
        assert client.post(f"/calls/{call_id}/start", headers=_auth(CUSTOMER)).status_code == 200

        beat = client.post(f"/calls/{call_id}/heartbeat", headers=_auth(MODEL)).json()
        assert beat["remaining_balance"] <= 120_000

        ended = client.post(f"/calls/{call_id}/end", headers=_auth(CUSTOMER)).json()
        assert ended["call_status"] == "completed"
        assert ended["minutes"] == 1

        wallet = client.get("/wallets/me", headers=_auth(CUSTOMER)).json()
        assert wallet["balance"] == 499_000
        history = client.get("/calls", headers=_auth(MODEL)).json()
        assert [c["id"] for c in history] == [call_id]


class TestWalletRoutes:
    def test_open_wallet_is_idempotent(self, client):
        first = client.post("/wallets/me", headers=_auth(CUSTOMER))
        second = client.post("/wallets/me", headers=_auth(CUSTOMER))
        assert first.status_code == 201
        assert first.json()["id"] == second.json()["id"]
        assert first.json()["balance"] == 0

    def test_summary_is_for_models(self, client, wallets):
        resp = client.get("/wallets/me/summary", headers=_auth(CUSTOMER))
        assert resp.status_code == 403

    def test_transactions_and_notifications(self, client, wallets, offering):
        _create(client, offering, utcnow() + timedelta(days=3))

        txs = client.get("/wallets/me/transactions", headers=_auth(CUSTOMER)).json()
        assert {t["kind"] for t in txs} == {"recharge", "booking_hold"}

        inbox = client.get("/notifications", headers=_auth(MODEL)).json()
        assert [n["kind"] for n in inbox] == ["booking_created"]
        read = client.post(f"/notifications/{inbox[0]['id']}/read", headers=_auth(MODEL))
        assert read.json() == {"success": True}
        assert client.get("/notifications?unread_only=true", headers=_auth(MODEL)).json() == []
