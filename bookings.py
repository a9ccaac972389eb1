"""
Booking workflow: client requests, admin scheduling and Calendly sync.

Booking states::

    pending -> confirmed -> completed
       |           |
       +-----------+--> cancelled
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument

from auth import is_admin
from database import create_document, db
from errors import ForbiddenError, NotFoundError, ValidationError, best_effort, describe_errors
from querying import ensure_object_id, page_params, paginate, serialize_doc
from schemas import SESSION_TYPES, AdditionalDetails, Booking as BookingSchema, TimeSlot
import calendly

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}
LOCKED_FOR_CLIENTS = ("confirmed", "completed")
CANCELLABLE = ("pending", "confirmed")
UPDATABLE_FIELDS = ("session_type", "date", "time_slot", "location", "additional_details", "notes")


def with_reference_number(booking: Dict[str, Any]) -> Dict[str, Any]:
    date = booking.get("date")
    if isinstance(date, datetime) and booking.get("id"):
        booking["reference_number"] = f"BK-{date:%Y%m%d}-{booking['id'][-4:]}"
    return booking


def _load(booking_id: str) -> Dict[str, Any]:
    doc = db["booking"].find_one({"_id": ensure_object_id(booking_id, "booking id")})
    if not doc:
        raise NotFoundError(f"Booking not found with id of {booking_id}")
    return doc


def _present(doc: Dict[str, Any]) -> Dict[str, Any]:
    return with_reference_number(serialize_doc(doc))


def _check_owner(booking: Dict[str, Any], user: Dict[str, Any], action: str) -> None:
    if booking.get("client_id") != user["id"] and not is_admin(user):
        raise ForbiddenError(f"User {user['id']} is not authorized to {action} this booking")


def _dump(model) -> Any:
    return model.model_dump() if hasattr(model, "model_dump") else model


def create_booking(client: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    required = ("session_type", "date", "time_slot", "location", "payment")
    if any(not fields.get(name) for name in required):
        raise ValidationError("Please provide all required booking details")
    try:
        booking = BookingSchema(
            client_id=client["id"],
            session_type=fields["session_type"],
            date=fields["date"],
            time_slot=_dump(fields["time_slot"]),
            location=fields["location"],
            additional_details=_dump(fields.get("additional_details")) or {},
            payment=_dump(fields["payment"]),
            calendly_event_id=fields.get("calendly_event_id"),
            notes=fields.get("notes"),
            status="pending",
        )
    except PydanticValidationError as exc:
        raise ValidationError(describe_errors(exc.errors()))
    booking_id = create_document("booking", booking)
    logger.info("Booking %s requested by %s", booking_id, client["id"])
    return _present(_load(booking_id))


def get_booking(booking_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    booking = _load(booking_id)
    allowed = (
        booking.get("client_id") == user["id"]
        or (booking.get("photographer_id") and booking["photographer_id"] == user["id"])
        or is_admin(user)
    )
    if not allowed:
        raise ForbiddenError(f"User {user['id']} is not authorized to view this booking")
    return _present(booking)


def list_bookings(user: Dict[str, Any], params: Mapping[str, str]) -> Tuple[List[dict], dict]:
    query: Dict[str, Any] = {} if is_admin(user) else {"client_id": user["id"]}
    status = params.get("status")
    if status:
        if status not in TRANSITIONS:
            raise ValidationError(f"Unknown booking status '{status}'")
        query["status"] = status
    page, limit = page_params(params.get("page"), params.get("limit"))
    items, pagination = paginate(db["booking"], query, [("date", -1)], page, limit)
    return [with_reference_number(b) for b in items], pagination


def my_bookings(user: Dict[str, Any]) -> List[Dict[str, Any]]:
    cursor = db["booking"].find({"client_id": user["id"]}).sort("date", -1)
    return [_present(b) for b in cursor]


def update_booking(booking_id: str, user: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Partial update by the client or an admin; clients cannot edit once confirmed."""
    booking = _load(booking_id)
    _check_owner(booking, user, "update")
    if booking.get("status") in LOCKED_FOR_CLIENTS and not is_admin(user):
        raise ForbiddenError(f"Cannot update a booking that is already {booking['status']}")

    update = {k: _dump(v) for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None}
    if not update:
        return _present(booking)
    merged = {k: v for k, v in booking.items() if k != "_id"}
    merged.update(update)
    try:
        validated = BookingSchema(**merged)
    except PydanticValidationError as exc:
        raise ValidationError(describe_errors(exc.errors()))
    clean = validated.model_dump()
    update = {k: clean[k] for k in update}
    update["updated_at"] = datetime.now(timezone.utc)
    db["booking"].update_one({"_id": booking["_id"]}, {"$set": update})
    return _present(_load(booking_id))


def update_booking_status(booking_id: str, status: Optional[str]) -> Dict[str, Any]:
    if not status:
        raise ValidationError("Please provide a status")
    if status == "cancelled":
        raise ValidationError("Use the cancel endpoint to cancel a booking")
    booking = _load(booking_id)
    current = booking.get("status")
    if status not in TRANSITIONS.get(current, set()):
        raise ValidationError(f"Cannot change booking status from {current} to {status}")
    updated = db["booking"].find_one_and_update(
        {"_id": booking["_id"], "status": current},
        {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ValidationError("Booking status changed concurrently; retry")
    logger.info("Booking %s moved %s -> %s", booking_id, current, status)
    return _present(updated)


def cancel_booking(booking_id: str, user: Dict[str, Any], reason: Optional[str] = None) -> Dict[str, Any]:
    """Cancel locally, then best-effort cancel the linked Calendly event.

    Cancelling an already cancelled booking is a no-op.
    """
    booking = _load(booking_id)
    _check_owner(booking, user, "cancel")
    if booking.get("status") == "completed":
        raise ValidationError("Cannot cancel a completed booking")
    if booking.get("status") == "cancelled":
        return _present(booking)

    updated = db["booking"].find_one_and_update(
        {"_id": booking["_id"], "status": {"$in": list(CANCELLABLE)}},
        {"$set": {"status": "cancelled", "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # lost a race with another status change
        current = _load(booking_id)
        if current.get("status") == "completed":
            raise ValidationError("Cannot cancel a completed booking")
        return _present(current)

    event_id = updated.get("calendly_event_id")
    if event_id and calendly.is_configured():
        with best_effort(f"cancel Calendly event {event_id}"):
            calendly.cancel_event(event_id, reason or "Cancelled by user")
    logger.info("Booking %s cancelled by %s", booking_id, user["id"])
    return _present(updated)


def assign_photographer(booking_id: str, photographer_id: Optional[str]) -> Dict[str, Any]:
    if not photographer_id:
        raise ValidationError("Please provide a photographer ID")
    photographer = db["user"].find_one({"_id": ensure_object_id(photographer_id, "photographer id")})
    if not photographer or not photographer.get("is_photographer"):
        raise NotFoundError(f"Photographer not found with id of {photographer_id}")
    booking = _load(booking_id)
    db["booking"].update_one(
        {"_id": booking["_id"]},
        {"$set": {"photographer_id": photographer_id, "updated_at": datetime.now(timezone.utc)}},
    )
    return _present(_load(booking_id))


# ----- Calendly webhook -----

def _session_type_from(name: Optional[str]) -> str:
    lowered = (name or "").lower()
    for session_type in SESSION_TYPES:
        if session_type in lowered:
            return session_type
    return "other"


def _invitee_created(payload: Dict[str, Any]) -> Optional[str]:
    invitee = payload.get("invitee") or {}
    scheduled = payload.get("scheduled_event") or {}
    email = (invitee.get("email") or payload.get("email") or "").strip().lower()
    event_id = scheduled.get("uuid")
    if not email or not event_id:
        logger.warning("Calendly invitee.created without invitee email or event id; ignored")
        return None
    user = db["user"].find_one({"email": email})
    if not user:
        logger.warning("Calendly invitee %s has no local account; booking not created", email)
        return None
    if db["booking"].find_one({"calendly_event_id": event_id}):
        logger.info("Calendly event %s already recorded", event_id)
        return None
    slot = TimeSlot(start=scheduled["start_time"], end=scheduled["end_time"])
    booking = BookingSchema(
        client_id=str(user["_id"]),
        session_type=_session_type_from((payload.get("event_type") or {}).get("name")),
        date=slot.start,
        time_slot=slot,
        location=((scheduled.get("location") or {}).get("location")) or "To be determined",
        additional_details=AdditionalDetails(),
        payment={"amount": 0, "is_paid": False},
        calendly_event_id=event_id,
        status="pending",
    )
    booking_id = create_document("booking", booking)
    logger.info("Booking %s created from Calendly event %s", booking_id, event_id)
    return booking_id


def _invitee_canceled(payload: Dict[str, Any]) -> None:
    event_id = (payload.get("scheduled_event") or {}).get("uuid")
    if not event_id:
        logger.warning("Calendly invitee.canceled without event id; ignored")
        return
    res = db["booking"].update_one(
        {"calendly_event_id": event_id, "status": {"$in": list(CANCELLABLE)}},
        {"$set": {"status": "cancelled", "updated_at": datetime.now(timezone.utc)}},
    )
    if res.matched_count == 0:
        logger.warning("Calendly cancellation for unknown or closed event %s; ignored", event_id)


def handle_calendar_webhook(raw_body: Union[bytes, str], signature: Optional[str] = None) -> Dict[str, Any]:
    calendly.verify_webhook(raw_body, signature)
    try:
        event = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Invalid webhook payload")
    if not isinstance(event, dict):
        raise ValidationError("Invalid webhook payload")
    event_type = event.get("event")
    payload = event.get("payload") or {}
    try:
        if event_type == "invitee.created":
            _invitee_created(payload)
        elif event_type == "invitee.canceled":
            _invitee_canceled(payload)
        else:
            logger.info("Ignoring Calendly event %s", event_type)
    except (KeyError, ValueError, TypeError, PydanticValidationError) as exc:
        raise ValidationError(f"Malformed Calendly {event_type} payload: {exc}")
    return {"received": True}
