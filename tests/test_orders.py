import hashlib
import hmac
import json
import time

import pytest
import stripe
from bson import ObjectId

import orders
from errors import ForbiddenError, InsufficientStockError, IntegrationError, NotFoundError, ValidationError
from settings import settings

ADDRESS = {
    "name": "Ada Lovelace",
    "street": "12 St James's Square",
    "city": "London",
    "zip_code": "SW1Y 4JH",
    "country": "UK",
}


def stock_of(db, product):
    return db["product"].find_one({"_id": ObjectId(product["id"])})["stock"]


def signed(payload: str, secret: str = None):
    secret = secret or settings.stripe_webhook_secret
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def intent_event(event_type, order_id, intent_id="pi_123"):
    return json.dumps({
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {"id": intent_id, "object": "payment_intent", "metadata": {"order_id": order_id}}},
    })


class TestTotals:
    def test_boundary_subtotal_pays_shipping(self):
        assert orders.calculate_totals(100) == {"subtotal": 100, "tax": 10, "shipping": 10, "total": 120}

    def test_free_shipping_above_threshold(self):
        totals = orders.calculate_totals(100.01)
        assert totals["shipping"] == 0
        assert totals["total"] == round(100.01 + 10.0, 2)

    def test_small_order(self):
        assert orders.calculate_totals(25) == {"subtotal": 25, "tax": 2.5, "shipping": 10, "total": 37.5}


class TestCreateOrder:
    def test_example_order(self, db, make_user, make_product):
        user = make_user()
        product = make_product(price=50, stock=5)

        order = orders.create_order(user, [{"product": product["id"], "quantity": 2}], ADDRESS)

        assert order["subtotal"] == 100
        assert order["tax"] == 10
        assert order["shipping"] == 10
        assert order["total"] == 120
        assert order["status"] == "pending"
        assert order["payment_info"]["status"] == "pending"
        assert order["items"][0] == {"product_id": product["id"], "name": "Sunset Print", "price": 50, "quantity": 2}
        assert order["order_number"].startswith("ORD-")
        assert stock_of(db, product) == 3

    def test_line_price_is_snapshotted(self, db, make_user, make_product):
        user = make_user()
        product = make_product(price=40, stock=5)
        order = orders.create_order(user, [{"product": product["id"], "quantity": 1}], ADDRESS)

        db["product"].update_one({"_id": ObjectId(product["id"])}, {"$set": {"price": 99, "name": "Renamed"}})

        stored = orders.get_order(order["id"], user)
        assert stored["items"][0]["price"] == 40
        assert stored["items"][0]["name"] == "Sunset Print"

    def test_duplicate_lines_are_merged(self, db, make_user, make_product):
        user = make_user()
        product = make_product(stock=3)
        with pytest.raises(InsufficientStockError):
            orders.create_order(
                user,
                [{"product": product["id"], "quantity": 2}, {"product": product["id"], "quantity": 2}],
                ADDRESS,
            )
        assert stock_of(db, product) == 3

    def test_rejects_empty_cart_and_missing_address(self, db, make_user, make_product):
        user = make_user()
        product = make_product()
        with pytest.raises(ValidationError):
            orders.create_order(user, [], ADDRESS)
        with pytest.raises(ValidationError):
            orders.create_order(user, [{"product": product["id"], "quantity": 1}], None)

    def test_unknown_product(self, db, make_user):
        with pytest.raises(NotFoundError):
            orders.create_order(make_user(), [{"product": str(ObjectId()), "quantity": 1}], ADDRESS)

    def test_failure_on_later_item_leaves_stock_untouched(self, db, make_user, make_product):
        user = make_user()
        first = make_product(name="A", stock=5)
        second = make_product(name="B", stock=1)
        with pytest.raises(InsufficientStockError):
            orders.create_order(
                user,
                [{"product": first["id"], "quantity": 2}, {"product": second["id"], "quantity": 4}],
                ADDRESS,
            )
        assert stock_of(db, first) == 5
        assert stock_of(db, second) == 1
        assert db["order"].count_documents({}) == 0

    def test_competing_orders_for_last_unit(self, db, make_user, make_product):
        product = make_product(stock=1)
        cart = [{"product": product["id"], "quantity": 1}]

        # both checkouts pass the availability check before either reserves
        lines_a = orders.check_availability(cart)
        lines_b = orders.check_availability(cart)

        orders.reserve_stock(lines_a)
        with pytest.raises(InsufficientStockError):
            orders.reserve_stock(lines_b)
        assert stock_of(db, product) == 0

    def test_lost_race_rolls_back_earlier_reservations(self, db, make_product):
        first = make_product(name="A", stock=5)
        second = make_product(name="B", stock=1)
        lines = orders.check_availability(
            [{"product": first["id"], "quantity": 2}, {"product": second["id"], "quantity": 1}]
        )
        db["product"].update_one({"_id": ObjectId(second["id"])}, {"$set": {"stock": 0}})

        with pytest.raises(InsufficientStockError):
            orders.reserve_stock(lines)
        assert stock_of(db, first) == 5
        assert stock_of(db, second) == 0


class TestOrderStatus:
    def test_admin_cannot_jump_to_processing(self, db, make_user, make_product):
        order = orders.create_order(make_user(), [{"product": make_product()["id"], "quantity": 1}], ADDRESS)
        with pytest.raises(ValidationError):
            orders.update_order_status(order["id"], "processing")

    def test_cancel_returns_stock(self, db, make_user, make_product):
        product = make_product(stock=5)
        order = orders.create_order(make_user(), [{"product": product["id"], "quantity": 2}], ADDRESS)
        updated = orders.update_order_status(order["id"], "cancelled")
        assert updated["status"] == "cancelled"
        assert stock_of(db, product) == 5

    def test_fulfilment_path(self, db, make_user, make_product):
        order = orders.create_order(make_user(), [{"product": make_product()["id"], "quantity": 1}], ADDRESS)
        db["order"].update_one({"_id": ObjectId(order["id"])}, {"$set": {"status": "processing"}})
        shipped = orders.update_order_status(order["id"], "shipped", tracking_number="TRK1")
        assert shipped["tracking_number"] == "TRK1"
        assert orders.update_order_status(order["id"], "delivered")["status"] == "delivered"
        with pytest.raises(ValidationError):
            orders.update_order_status(order["id"], "cancelled")


class TestPaymentIntent:
    def test_creates_intent_in_cents(self, db, make_user, make_product, monkeypatch):
        calls = {}

        def fake_create(**kwargs):
            calls.update(kwargs)
            return {"id": "pi_abc", "client_secret": "pi_abc_secret"}

        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
        user = make_user()
        product = make_product(price=19.99, stock=5)
        order = orders.create_order(user, [{"product": product["id"], "quantity": 1}], ADDRESS)

        result = orders.create_payment_intent(order["id"], user)

        assert result["client_secret"] == "pi_abc_secret"
        assert calls["amount"] == round(order["total"] * 100)
        assert calls["metadata"]["order_id"] == order["id"]
        stored = orders.get_order(order["id"], user)
        assert stored["payment_info"] == {"type": "stripe", "transaction_id": "pi_abc", "status": "pending"}
        assert stored["status"] == "pending"

    def test_only_owner_can_pay(self, db, make_user, make_product):
        owner, other = make_user(name="Owner"), make_user(name="Other")
        order = orders.create_order(owner, [{"product": make_product()["id"], "quantity": 1}], ADDRESS)
        with pytest.raises(ForbiddenError):
            orders.create_payment_intent(order["id"], other)

    def test_gateway_failure_aborts(self, db, make_user, make_product, monkeypatch):
        def boom(**kwargs):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe.PaymentIntent, "create", boom)
        user = make_user()
        order = orders.create_order(user, [{"product": make_product()["id"], "quantity": 1}], ADDRESS)
        with pytest.raises(IntegrationError):
            orders.create_payment_intent(order["id"], user)
        assert orders.get_order(order["id"], user)["payment_info"]["transaction_id"] is None


class TestPaymentWebhook:
    def test_succeeded_moves_order_to_processing(self, db, make_user, make_product):
        user = make_user()
        order = orders.create_order(user, [{"product": make_product()["id"], "quantity": 1}], ADDRESS)
        payload = intent_event("payment_intent.succeeded", order["id"])

        assert orders.handle_payment_webhook(payload.encode(), signed(payload)) == {"received": True}

        stored = orders.get_order(order["id"], user)
        assert stored["status"] == "processing"
        assert stored["payment_info"]["status"] == "completed"

    def test_payment_after_cancellation_is_recorded(self, db, make_user, make_product):
        user = make_user()
        order = orders.create_order(user, [{"product": make_product()["id"], "quantity": 1}], ADDRESS)
        orders.update_order_status(order["id"], "cancelled")
        payload = intent_event("payment_intent.succeeded", order["id"], intent_id="pi_late")

        assert orders.handle_payment_webhook(payload.encode(), signed(payload)) == {"received": True}

        stored = orders.get_order(order["id"], user)
        assert stored["status"] == "cancelled"
        assert stored["payment_info"]["status"] == "completed"
        assert stored["payment_info"]["transaction_id"] == "pi_late"

    def test_non_utf8_body_rejected(self, db):
        with pytest.raises(ValidationError):
            orders.handle_payment_webhook(b"\xff\xfe{}", "t=1,v1=abc")

    def test_failed_payment(self, db, make_user, make_product):
        user = make_user()
        order = orders.create_order(user, [{"product": make_product()["id"], "quantity": 1}], ADDRESS)
        payload = intent_event("payment_intent.payment_failed", order["id"])
        orders.handle_payment_webhook(payload.encode(), signed(payload))
        stored = orders.get_order(order["id"], user)
        assert stored["status"] == "pending"
        assert stored["payment_info"]["status"] == "failed"

    def test_unknown_order_is_acknowledged(self, db):
        payload = intent_event("payment_intent.succeeded", str(ObjectId()), intent_id="pi_missing")
        assert orders.handle_payment_webhook(payload.encode(), signed(payload)) == {"received": True}

    def test_bad_signature_rejected(self, db, make_user, make_product):
        user = make_user()
        order = orders.create_order(user, [{"product": make_product()["id"], "quantity": 1}], ADDRESS)
        payload = intent_event("payment_intent.succeeded", order["id"])
        with pytest.raises(ValidationError):
            orders.handle_payment_webhook(payload.encode(), signed(payload, secret="whsec_wrong"))
        assert orders.get_order(order["id"], user)["status"] == "pending"

    def test_unknown_event_type_ignored(self, db):
        payload = json.dumps({"type": "charge.refunded", "data": {"object": {}}})
        assert orders.handle_payment_webhook(payload.encode(), signed(payload)) == {"received": True}
