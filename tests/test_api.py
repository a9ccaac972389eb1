import hashlib
import hmac
import json
import time

import stripe
from fastapi.testclient import TestClient

import main
from settings import settings

ADDRESS = {"name": "Ada", "street": "1 Main St", "city": "Leeds", "zip_code": "LS1", "country": "UK"}


def stripe_header(payload: str) -> str:
    ts = int(time.time())
    sig = hmac.new(settings.stripe_webhook_secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def test_checkout_flow(client, make_user, make_product, headers, monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create", lambda **kw: {"id": "pi_flow", "client_secret": "sec_flow"})
    user = make_user()
    auth_headers = headers(user)
    product = make_product(price=60, stock=4)

    created = client.post(
        "/api/orders",
        json={"products": [{"product": product["id"], "quantity": 2}], "shipping_address": ADDRESS},
        headers=auth_headers,
    )
    assert created.status_code == 201
    order = created.json()["data"]
    assert order["total"] == 132.0

    intent = client.post("/api/orders/create-payment-intent", json={"order_id": order["id"]}, headers=auth_headers)
    assert intent.json() == {"success": True, "client_secret": "sec_flow", "order_id": order["id"]}

    payload = json.dumps({
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_flow", "metadata": {"order_id": order["id"]}}},
    })
    hook = client.post(
        "/api/orders/webhook",
        content=payload,
        headers={"Stripe-Signature": stripe_header(payload), "Content-Type": "application/json"},
    )
    assert hook.status_code == 200
    assert hook.json() == {"received": True}

    mine = client.get("/api/orders/myorders", headers=auth_headers).json()
    assert mine["count"] == 1
    assert mine["data"][0]["status"] == "processing"
    assert mine["data"][0]["payment_info"]["status"] == "completed"


def test_webhook_bad_signature_is_400(client):
    res = client.post("/api/orders/webhook", content="{}", headers={"Stripe-Signature": "t=1,v1=abc"})
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_webhook_non_utf8_body_is_400(client):
    res = client.post("/api/orders/webhook", content=b"\xff\xfe{}", headers={"Stripe-Signature": "t=1,v1=abc"})
    assert res.status_code == 400
    assert res.json() == {"success": False, "error": "Webhook Error: invalid payload"}


def test_lifespan_ensures_indexes(db, local_storage, monkeypatch):
    calls = []
    monkeypatch.setattr(main, "ensure_indexes", lambda: calls.append(True))
    with TestClient(main.app) as client:
        assert client.get("/health").status_code == 200
    assert calls == [True]


def test_out_of_stock_is_conflict(client, make_user, make_product, headers):
    product = make_product(stock=1)
    res = client.post(
        "/api/orders",
        json={"products": [{"product": product["id"], "quantity": 2}], "shipping_address": ADDRESS},
        headers=headers(make_user()),
    )
    assert res.status_code == 409
    assert "out of stock" in res.json()["error"]


def test_orders_are_private(client, make_user, make_product, headers):
    owner, other, admin = make_user(), make_user(name="Eve"), make_user(name="Boss", role="admin")
    order = client.post(
        "/api/orders",
        json={"products": [{"product": make_product()["id"], "quantity": 1}], "shipping_address": ADDRESS},
        headers=headers(owner),
    ).json()["data"]

    assert client.get(f"/api/orders/{order['id']}", headers=headers(other)).status_code == 403
    assert client.get(f"/api/orders/{order['id']}", headers=headers(admin)).status_code == 200
    assert client.get("/api/orders", headers=headers(other)).json()["count"] == 0
    assert client.get("/api/orders", headers=headers(admin)).json()["pagination"]["total"] == 1


def test_booking_endpoints(client, make_user, headers):
    user = make_user()
    admin = make_user(name="Boss", role="admin")
    body = {
        "session_type": "wedding",
        "date": "2026-06-20T12:00:00Z",
        "time_slot": {"start": "2026-06-20T12:00:00Z", "end": "2026-06-20T18:00:00Z"},
        "location": "Old Chapel",
        "payment": {"amount": 1500, "deposit": 300, "method": "bank_transfer"},
    }
    created = client.post("/api/bookings", json=body, headers=headers(user))
    assert created.status_code == 201
    booking_id = created.json()["data"]["id"]

    confirmed = client.put(f"/api/bookings/{booking_id}/status", json={"status": "confirmed"}, headers=headers(admin))
    assert confirmed.json()["data"]["status"] == "confirmed"

    locked = client.put(f"/api/bookings/{booking_id}", json={"location": "Barn"}, headers=headers(user))
    assert locked.status_code == 403

    cancelled = client.put(f"/api/bookings/{booking_id}/cancel", json={"cancellation_reason": "moved"}, headers=headers(user))
    assert cancelled.json()["data"]["status"] == "cancelled"

    assert client.get("/api/bookings/mybookings", headers=headers(user)).json()["count"] == 1


def test_booking_missing_fields_is_400(client, make_user, headers):
    res = client.post("/api/bookings", json={"session_type": "portrait"}, headers=headers(make_user()))
    assert res.status_code == 400
    assert res.json()["error"] == "Please provide all required booking details"


def test_calendly_webhook_endpoint(client, make_user, db):
    make_user(email="ada@example.com")
    payload = {
        "event": "invitee.created",
        "payload": {
            "invitee": {"email": "ada@example.com"},
            "event_type": {"name": "Family mini session"},
            "scheduled_event": {
                "uuid": "cal-9",
                "start_time": "2026-07-01T09:00:00Z",
                "end_time": "2026-07-01T10:00:00Z",
                "location": {},
            },
        },
    }
    res = client.post("/api/bookings/calendly-webhook", json=payload)
    assert res.json() == {"success": True}
    stored = db["booking"].find_one({"calendly_event_id": "cal-9"})
    assert stored["session_type"] == "family"
    assert stored["location"] == "To be determined"
