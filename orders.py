"""
Order workflow: cart checkout with stock reservation, Stripe payment intents,
payment webhooks and admin fulfilment updates.

Order states::

    pending -> processing -> shipped -> delivered
       |           |
       +-----------+--> cancelled

``processing`` is only entered from the payment webhook.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument

from auth import is_admin
from database import create_document, db
from errors import ForbiddenError, InsufficientStockError, NotFoundError, ValidationError, describe_errors
from querying import ensure_object_id, page_params, paginate, serialize_doc
from schemas import Order as OrderSchema, OrderItem, PaymentInfo, ShippingAddress
from settings import settings
import payments

logger = logging.getLogger(__name__)

ADMIN_TRANSITIONS = {
    "pending": {"cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}


def calculate_totals(subtotal: float) -> Dict[str, float]:
    """Server-side pricing: flat tax rate, free shipping strictly above the threshold."""
    subtotal = round(subtotal, 2)
    tax = round(subtotal * settings.tax_rate, 2)
    shipping = 0.0 if subtotal > settings.free_shipping_threshold else settings.flat_shipping_fee
    total = round(subtotal + tax + shipping, 2)
    return {"subtotal": subtotal, "tax": tax, "shipping": shipping, "total": total}


def with_order_number(order: Dict[str, Any]) -> Dict[str, Any]:
    created = order.get("created_at")
    if created and order.get("id"):
        millis = str(int(created.replace(tzinfo=created.tzinfo or timezone.utc).timestamp() * 1000))
        order["order_number"] = f"ORD-{millis[-6:]}-{order['id'][-4:]}"
    return order


def _merge_lines(items: List[Dict[str, Any]]) -> List[Tuple[str, int]]:
    quantities: Dict[str, int] = {}
    for item in items:
        product_id = item.get("product") or item.get("product_id")
        quantity = item.get("quantity", 1)
        if not product_id:
            raise ValidationError("Each item needs a product")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        ensure_object_id(product_id, "product id")
        quantities[product_id] = quantities.get(product_id, 0) + quantity
    return list(quantities.items())


def check_availability(items: List[Dict[str, Any]]) -> List[Tuple[str, int]]:
    """Validate every cart line against current stock without writing anything."""
    lines = _merge_lines(items)
    for product_id, quantity in lines:
        product = db["product"].find_one({"_id": ObjectId(product_id)})
        if not product:
            raise NotFoundError(f"Product not found with id of {product_id}")
        if product.get("stock", 0) < quantity:
            raise InsufficientStockError(
                f"{product.get('name', 'Product')} is out of stock. Only {product.get('stock', 0)} available."
            )
    return lines


def release_stock(reserved: List[Tuple[str, int]]) -> None:
    for product_id, quantity in reserved:
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$inc": {"stock": quantity}})
    if reserved:
        logger.warning("Released stock for %d order lines", len(reserved))


def reserve_stock(lines: List[Tuple[str, int]]) -> List[OrderItem]:
    """Atomically decrement stock for each line and snapshot name/price.

    All-or-nothing: if any line cannot be reserved the lines already
    reserved are returned to stock before InsufficientStockError is raised.
    """
    reserved: List[Tuple[str, int]] = []
    order_items: List[OrderItem] = []
    for product_id, quantity in lines:
        product = db["product"].find_one_and_update(
            {"_id": ObjectId(product_id), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.BEFORE,
        )
        if product is None:
            release_stock(reserved)
            current = db["product"].find_one({"_id": ObjectId(product_id)})
            if not current:
                raise NotFoundError(f"Product not found with id of {product_id}")
            raise InsufficientStockError(
                f"{current.get('name', 'Product')} is out of stock. Only {current.get('stock', 0)} available."
            )
        reserved.append((product_id, quantity))
        order_items.append(OrderItem(
            product_id=product_id,
            name=product.get("name", "Product"),
            price=float(product.get("price", 0)),
            quantity=quantity,
        ))
    return order_items


def create_order(user: Dict[str, Any], items: Optional[List[Dict[str, Any]]], shipping_address: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not items:
        raise ValidationError("Please add at least one product to your order")
    if not shipping_address:
        raise ValidationError("Please provide a shipping address")
    try:
        address = ShippingAddress(**shipping_address)
    except PydanticValidationError as exc:
        raise ValidationError(describe_errors(exc.errors()))

    lines = check_availability(items)
    order_items = reserve_stock(lines)
    totals = calculate_totals(sum(i.price * i.quantity for i in order_items))

    order = OrderSchema(
        user_id=user["id"],
        items=order_items,
        shipping_address=address,
        payment_info=PaymentInfo(),
        status="pending",
        **totals,
    )
    try:
        order_id = create_document("order", order)
    except Exception:
        release_stock([(i.product_id, i.quantity) for i in order_items])
        raise
    logger.info("Order %s created for user %s (total %.2f)", order_id, user["id"], totals["total"])
    return get_order_doc(order_id)


def get_order_doc(order_id: str) -> Dict[str, Any]:
    doc = db["order"].find_one({"_id": ensure_object_id(order_id, "order id")})
    if not doc:
        raise NotFoundError(f"Order not found with id of {order_id}")
    return with_order_number(serialize_doc(doc))


def get_order(order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = get_order_doc(order_id)
    if order["user_id"] != user["id"] and not is_admin(user):
        raise ForbiddenError(f"User {user['id']} is not authorized to view this order")
    return order


def list_orders(user: Dict[str, Any], params: Mapping[str, str]) -> Tuple[List[dict], dict]:
    query = {} if is_admin(user) else {"user_id": user["id"]}
    page, limit = page_params(params.get("page"), params.get("limit"))
    items, pagination = paginate(db["order"], query, [("created_at", -1)], page, limit)
    return [with_order_number(o) for o in items], pagination


def my_orders(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    cursor = db["order"].find({"user_id": user["id"]}).sort("created_at", -1)
    return [with_order_number(serialize_doc(o)) for o in cursor]


def update_order_status(order_id: str, status: Optional[str], tracking_number: Optional[str] = None) -> Dict[str, Any]:
    if not status:
        raise ValidationError("Please provide a status")
    order = get_order_doc(order_id)
    current = order["status"]
    if status not in ADMIN_TRANSITIONS.get(current, set()):
        raise ValidationError(f"Cannot change order status from {current} to {status}")

    update: Dict[str, Any] = {"status": status, "updated_at": datetime.now(timezone.utc)}
    if tracking_number:
        update["tracking_number"] = tracking_number
    res = db["order"].update_one({"_id": ObjectId(order_id), "status": current}, {"$set": update})
    if res.modified_count == 0:
        raise ValidationError("Order status changed concurrently; retry")
    if status == "cancelled":
        release_stock([(i["product_id"], i["quantity"]) for i in order["items"]])
    logger.info("Order %s moved %s -> %s", order_id, current, status)
    return get_order_doc(order_id)


def create_payment_intent(order_id: Optional[str], user: Dict[str, Any]) -> Dict[str, Any]:
    if not order_id:
        raise ValidationError("Please provide an order ID")
    order = get_order_doc(order_id)
    if order["user_id"] != user["id"]:
        raise ForbiddenError(f"User {user['id']} is not authorized to pay for this order")
    if order["status"] != "pending":
        raise ValidationError(f"Order is already {order['status']}")

    intent = payments.create_payment_intent(
        order["total"], metadata={"order_id": order["id"], "user_id": user["id"]}
    )
    db["order"].update_one(
        {"_id": ObjectId(order_id)},
        {"$set": {
            "payment_info": PaymentInfo(type="stripe", transaction_id=intent["id"], status="pending").model_dump(),
            "updated_at": datetime.now(timezone.utc),
        }},
    )
    return {"client_secret": intent["client_secret"], "order_id": order["id"]}


def _find_order_for_intent(intent: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    order_id = (intent.get("metadata") or {}).get("order_id")
    if order_id and ObjectId.is_valid(order_id):
        order = db["order"].find_one({"_id": ObjectId(order_id)})
        if order:
            return order
    if intent.get("id"):
        return db["order"].find_one({"payment_info.transaction_id": intent["id"]})
    return None


def handle_payment_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Apply a verified Stripe event. Unknown events and orders are acknowledged."""
    event = payments.parse_webhook_event(payload, signature)
    event_type = event.get("type")
    intent = (event.get("data") or {}).get("object") or {}

    if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        logger.info("Ignoring Stripe event %s", event_type)
        return {"received": True}

    order = _find_order_for_intent(intent)
    if not order:
        logger.warning("Stripe event %s for unknown order (intent %s)", event_type, intent.get("id"))
        return {"received": True}

    now = datetime.now(timezone.utc)
    if event_type == "payment_intent.succeeded":
        paid = {
            "payment_info.status": "completed",
            "payment_info.transaction_id": intent.get("id") or order.get("payment_info", {}).get("transaction_id"),
            "updated_at": now,
        }
        res = db["order"].update_one(
            {"_id": order["_id"], "status": "pending"},
            {"$set": {**paid, "status": "processing"}},
        )
        if res.modified_count:
            logger.info("Payment completed for order %s", order["_id"])
        else:
            # Money was captured anyway; record it so the order can be refunded
            db["order"].update_one({"_id": order["_id"]}, {"$set": paid})
            logger.warning(
                "Payment %s captured for order %s in status %s; refund required",
                intent.get("id"), order["_id"], order.get("status"),
            )
    else:
        db["order"].update_one(
            {"_id": order["_id"], "payment_info.status": "pending"},
            {"$set": {"payment_info.status": "failed", "updated_at": now}},
        )
        logger.info("Payment failed for order %s", order["_id"])
    return {"received": True}
