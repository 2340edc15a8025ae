from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import apps.rides.app.main as main  # type: ignore[import]
from apps.rides.app import db, gateway as gateway_mod, notify, settings
from apps.rides.app.cache import TTLCache
from apps.rides.app.webhooks import WebhookInbox, sign_payload


def _h(user_id: str, role: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": role}


RIDER_H = _h("rider-1", "rider")
DRIVER_A_H = _h("driver-a", "driver")
DRIVER_B_H = _h("driver-b", "driver")
ADMIN_H = _h("admin-1", "admin")


@pytest.fixture()
def client(engine, make_session, gateway, notifier, monkeypatch):
    def _get_session():
        with Session(engine) as s:
            yield s

    overrides = main.app.dependency_overrides
    overrides[db.get_session] = _get_session
    overrides[db.get_session_factory] = lambda: make_session
    overrides[gateway_mod.get_gateway] = lambda: gateway
    overrides[notify.get_notifier] = lambda: notifier
    monkeypatch.setattr(main.app.state, "cache", TTLCache(max_items=100, ttl_secs=60))
    monkeypatch.setattr(main, "inbox", WebhookInbox(maxsize=10))
    try:
        yield TestClient(main.app)
    finally:
        overrides.clear()


def _ride_payload(**kw) -> dict:
    pickup = datetime.now(timezone.utc) + timedelta(days=3)
    payload = {
        "pickup_address": "12 Elm St",
        "pickup_lat": 40.71,
        "pickup_lon": -74.0,
        "dropoff_address": "General Hospital",
        "dropoff_lat": 40.75,
        "dropoff_lon": -73.98,
        "scheduled_time": pickup.isoformat(),
        "estimated_distance": 10,
    }
    payload.update(kw)
    return payload


def _register(client: TestClient, card: bool = True) -> None:
    assert client.post("/riders", json={"name": "Rita", "gateway_customer_id": "cus_1"}, headers=RIDER_H).status_code == 200
    if card:
        r = client.post(
            "/riders/rider-1/payment_methods",
            json={"gateway_payment_method_id": "pm_card_visa", "brand": "visa", "last4": "4242"},
            headers=RIDER_H,
        )
        assert r.status_code == 200
        assert r.json()["is_default"] is True
    for headers, acct in ((DRIVER_A_H, "acct_a"), (DRIVER_B_H, "acct_b")):
        r = client.post("/drivers", json={"vehicle_type": "standard", "connected_account_id": acct}, headers=headers)
        assert r.status_code == 200


def _request_ride(client: TestClient, **kw) -> str:
    r = client.post("/rides", json=_ride_payload(**kw), headers=RIDER_H)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "requested"
    return r.json()["id"]


def test_health_reports_db_and_echoes_request_id(client):
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["checks"] == {"db": "ok"}
    assert r.headers["X-Request-ID"] == "req-123"


def test_ride_lifecycle_over_http(client, gateway_stub):
    """
    Rider requests a ride, two drivers bid, the rider accepts one: the
    card is charged, the other bid is rejected and the driver is paid out.
    """
    _register(client)
    ride_id = _request_ride(client)

    assert client.get(f"/rides/{ride_id}", headers=DRIVER_A_H).status_code == 200
    bid_a = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 9_000}, headers=DRIVER_A_H)
    assert bid_a.status_code == 200
    assert bid_a.json()["awaiting"] == "rider"
    bid_b = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 9_500}, headers=DRIVER_B_H)
    assert bid_b.status_code == 200

    dup = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 8_000}, headers=DRIVER_A_H)
    assert dup.status_code == 400
    assert dup.json()["error"] == "DuplicateBid"

    listed = client.get(f"/rides/{ride_id}/bids", headers=RIDER_H).json()
    assert [b["amount_cents"] for b in listed] == [9_000, 9_500]

    r = client.post(f"/bids/{bid_a.json()['id']}/accept", headers=RIDER_H)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["bid"]["status"] == "accepted"
    assert body["ride"]["status"] == "paid"
    assert body["ride"]["driver_id"] == "driver-a"
    assert body["ride"]["final_price_cents"] == 9_000
    assert body["payment"]["success"] is True

    history = client.get(f"/bids/{bid_b.json()['id']}/history", headers=DRIVER_B_H).json()
    assert history[0]["status"] == "rejected"

    payout = client.get(f"/rides/{ride_id}/payout", headers=DRIVER_A_H)
    assert payout.status_code == 200
    assert payout.json()["status"] == "completed"
    assert payout.json()["driver_amount_cents"] == 8_550
    assert client.get(f"/rides/{ride_id}/payout", headers=DRIVER_B_H).status_code == 403

    for status in ("en_route", "arrived", "in_progress", "completed"):
        r = client.post(f"/rides/{ride_id}/status", json={"status": status}, headers=DRIVER_A_H)
        assert r.status_code == 200
        assert r.json()["status"] == status

    payouts = client.get("/drivers/driver-a/payouts", headers=DRIVER_A_H).json()
    assert [p["ride_id"] for p in payouts] == [ride_id]
    assert len(gateway_stub.calls("POST", "/transfers")) == 1


def test_accept_without_card_schedules_ride_and_reports_payment_problem(client, gateway_stub):
    _register(client, card=False)
    ride_id = _request_ride(client)
    bid = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 9_000}, headers=DRIVER_A_H).json()

    r = client.post(f"/bids/{bid['id']}/accept", headers=RIDER_H)

    assert r.status_code == 200
    body = r.json()
    assert body["ride"]["status"] == "scheduled"
    assert body["payment"]["success"] is False
    assert body["payment"]["error"] == "NoPaymentMethod"
    assert gateway_stub.requests == []


def test_admin_refund_and_override_charge_over_http(client, gateway_stub):
    _register(client)
    ride_id = _request_ride(client)
    bid = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 9_000}, headers=DRIVER_A_H).json()
    txn_id = client.post(f"/bids/{bid['id']}/accept", headers=RIDER_H).json()["payment"]["transaction_id"]

    assert client.post(f"/payments/{txn_id}/refund", json={"amount_cents": 2_000}, headers=RIDER_H).status_code == 403
    r = client.post(f"/payments/{txn_id}/refund", json={"amount_cents": 2_000, "reason": "late pickup"}, headers=ADMIN_H)
    assert r.status_code == 200, r.text
    assert r.json()["type"] == "partial_refund"
    assert r.json()["status"] == "succeeded"
    assert r.json()["reason"] == "late pickup"

    over = client.post(f"/payments/{txn_id}/refund", json={"amount_cents": 8_000}, headers=ADMIN_H)
    assert over.status_code == 400
    assert over.json()["error"] == "InvalidAmount"
    assert client.post("/payments/txn_nope/refund", json={}, headers=ADMIN_H).status_code == 404
    assert len(gateway_stub.calls("POST", "/refunds")) == 1

    other = _request_ride(client)
    bid = client.post("/bids", json={"ride_id": other, "amount_cents": 7_000}, headers=DRIVER_B_H).json()
    gateway_stub.charge_error = (402, {"error": {"code": "card_declined"}})
    assert client.post(f"/bids/{bid['id']}/accept", headers=RIDER_H).json()["ride"]["status"] == "scheduled"

    assert client.post(f"/rides/{other}/admin-charge", json={}, headers=RIDER_H).status_code == 403
    r = client.post(f"/rides/{other}/admin-charge", json={"notes": "paid at the desk"}, headers=ADMIN_H)
    assert r.status_code == 200, r.text
    assert r.json()["success"] is True
    assert r.json()["ride_status"] == "paid"


def test_counter_offer_negotiation_over_http(client):
    _register(client)
    ride_id = _request_ride(client)
    root = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 10_000}, headers=DRIVER_A_H).json()

    c1 = client.post(f"/bids/{root['id']}/counter", json={"amount_cents": 9_000, "counter_party": "rider"}, headers=RIDER_H)
    assert c1.status_code == 200
    assert c1.json()["awaiting"] == "driver"
    c2 = client.post(
        f"/bids/{c1.json()['id']}/counter", json={"amount_cents": 9_500, "counter_party": "driver"}, headers=DRIVER_A_H
    )
    assert c2.status_code == 200

    r = client.post(f"/bids/{c2.json()['id']}/counter", json={"amount_cents": 9_200, "counter_party": "rider"}, headers=RIDER_H)
    assert r.status_code == 400
    assert r.json()["error"] == "ChainLimitReached"

    history = client.get(f"/bids/{root['id']}/history", headers=RIDER_H).json()
    assert [b["bid_count"] for b in history] == [1, 2, 3]
    assert history[0]["status"] == "maxReached"


def test_withdraw_over_http(client):
    _register(client)
    ride_id = _request_ride(client)
    bid = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 9_000}, headers=DRIVER_A_H).json()

    assert client.delete(f"/bids/{bid['id']}", headers=DRIVER_B_H).status_code == 403
    r = client.delete(f"/bids/{bid['id']}", headers=DRIVER_A_H)
    assert r.status_code == 200
    assert r.json()["status"] == "withdrawn"
    again = client.delete(f"/bids/{bid['id']}", headers=DRIVER_A_H)
    assert again.status_code == 400
    assert again.json()["error"] == "InvalidWithdraw"


def test_cancel_and_edit_over_http(client):
    # No card on file: acceptance leaves the ride scheduled and unpaid.
    _register(client, card=False)
    soon = (datetime.now(timezone.utc) + timedelta(hours=6)).isoformat()
    ride_id = _request_ride(client, scheduled_time=soon)
    bid = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 9_000}, headers=DRIVER_B_H).json()
    assert client.post(f"/bids/{bid['id']}/accept", headers=RIDER_H).json()["ride"]["status"] == "scheduled"

    edit = client.post(f"/rides/{ride_id}/edit", json={"needs_ramp": True}, headers=RIDER_H)
    assert edit.status_code == 200
    assert client.get(f"/rides/{ride_id}", headers=RIDER_H).json()["status"] == "edit_pending"
    assert client.post(f"/ride_edits/{edit.json()['id']}/resolve", json={"accept": True}, headers=DRIVER_A_H).status_code == 403
    resolved = client.post(f"/ride_edits/{edit.json()['id']}/resolve", json={"accept": True}, headers=DRIVER_B_H)
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "scheduled"
    assert resolved.json()["driver_id"] == "driver-b"
    assert resolved.json()["needs_ramp"] is True

    r = client.post(f"/rides/{ride_id}/cancel", json={"reason": "appointment moved"}, headers=RIDER_H)
    assert r.status_code == 200
    assert r.json()["is_late_cancellation"] is True
    assert r.json()["cancellation_fee_cents"] == 2500
    assert r.json()["ride"]["status"] == "cancelled"
    assert r.json()["ride"]["cancellation_reason"] == "appointment moved"

    again = client.post(f"/rides/{ride_id}/cancel", json={}, headers=RIDER_H)
    assert again.status_code == 400
    assert again.json()["error"] == "InvalidTransition"


def test_identity_headers_are_required(client):
    r = client.post("/rides", json=_ride_payload())
    assert r.status_code == 401
    assert r.json()["error"] == "Unauthenticated"

    r = client.post("/rides", json=_ride_payload(), headers=_h("x", "superuser"))
    assert r.status_code == 403


def test_role_checks(client):
    _register(client)
    ride_id = _request_ride(client)
    r = client.post("/bids", json={"ride_id": ride_id, "amount_cents": 9_000}, headers=RIDER_H)
    assert r.status_code == 403
    r = client.post("/rides", json=_ride_payload(), headers=DRIVER_A_H)
    assert r.status_code == 403
    r = client.post("/riders", json={"id": "someone-else"}, headers=RIDER_H)
    assert r.status_code == 403


def test_validation_errors_are_400(client):
    _register(client)
    r = client.post("/bids", json={"ride_id": "x", "amount_cents": "lots"}, headers=DRIVER_A_H)
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"

    r = client.post("/rides", json=_ride_payload(estimated_distance=5000), headers=RIDER_H)
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidDistance"

    assert client.get("/rides/does-not-exist", headers=RIDER_H).status_code == 404


def test_platform_fee_settings_are_admin_only_and_applied(client):
    assert client.get("/settings", headers=RIDER_H).status_code == 403
    assert client.get("/settings", headers=ADMIN_H).json() == {"platform_fee_percentage": 5.0}

    r = client.post("/settings", json={"platform_fee_percentage": 10}, headers=ADMIN_H)
    assert r.status_code == 200
    assert client.get("/settings", headers=ADMIN_H).json() == {"platform_fee_percentage": 10.0}
    quote = client.post("/fare/quote", json={"distance": 10}).json()
    assert quote["platform_fee"] == 7.0

    r = client.post("/settings", json={"platform_fee_percentage": 60}, headers=ADMIN_H)
    assert r.status_code == 400


def test_fare_quote(client, monkeypatch):
    r = client.post("/fare/quote", json={"distance": 10})
    assert r.status_code == 200
    assert r.json()["total"] == 79.38
    assert r.json()["suggested_bid_range"] == {"min": 55, "max": 104}

    monkeypatch.setattr(settings, "INTERNAL_API_SECRET", "s3cret")
    assert client.post("/fare/quote", json={"distance": 10}).status_code == 403
    ok = client.post("/fare/quote", json={"distance": 10}, headers={"X-Internal-Secret": "s3cret"})
    assert ok.status_code == 200


def test_webhook_requires_valid_signature(client, monkeypatch):
    monkeypatch.setattr(main, "GATEWAY_WEBHOOK_SECRET", "whsec_test")
    body = json.dumps({"id": "evt_1", "type": "charge.succeeded", "data": {"object": {"id": "ch_1"}}}).encode()

    bad = client.post("/webhooks/gateway", content=body, headers={"X-Gateway-Signature": "sha256=deadbeef"})
    assert bad.status_code == 403
    assert main.inbox.queue.qsize() == 0

    good = client.post(
        "/webhooks/gateway",
        content=body,
        headers={"X-Gateway-Signature": f"sha256={sign_payload(body, 'whsec_test')}", "Content-Type": "application/json"},
    )
    assert good.status_code == 202
    assert main.inbox.queue.get_nowait()["id"] == "evt_1"


def test_webhook_rejects_malformed_and_sheds_load(client, monkeypatch):
    monkeypatch.setattr(main, "GATEWAY_WEBHOOK_SECRET", "")
    monkeypatch.setattr(main, "inbox", WebhookInbox(maxsize=1))

    assert client.post("/webhooks/gateway", content=b"not json").status_code == 400
    assert client.post("/webhooks/gateway", json={"type": "charge.succeeded"}).status_code == 400
    assert client.post("/webhooks/gateway", json={"id": "evt_1", "type": "charge.succeeded"}).status_code == 202
    assert client.post("/webhooks/gateway", json={"id": "evt_2", "type": "charge.succeeded"}).status_code == 503


def test_unsigned_webhooks_refused_in_prod(client, monkeypatch):
    monkeypatch.setattr(main, "GATEWAY_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "ENV", "prod")
    r = client.post("/webhooks/gateway", json={"id": "evt_1", "type": "charge.succeeded"})
    assert r.status_code == 403


def test_internal_errors_are_scrubbed_in_prod(client, monkeypatch):
    def _broken_gateway():
        raise RuntimeError("db password is hunter2")

    main.app.dependency_overrides[gateway_mod.get_gateway] = _broken_gateway
    monkeypatch.setattr(settings, "ENV", "prod")
    _register(client)
    ride_id = _request_ride(client)

    r = TestClient(main.app, raise_server_exceptions=False).post(f"/rides/{ride_id}/process-payment", headers=RIDER_H)

    assert r.status_code == 500
    body = r.json()
    assert body["detail"] == "internal error"
    assert body["request_id"]
