"""
Booking State Machine.

    pending   -> confirmed | cancelled | rejected
    confirmed -> cancelled | completed
    cancelled, completed, rejected are terminal

Every transition reads the booking, validates it against the caller and the
state table, then writes with a conditional update on the status it
observed. When two callers race, exactly one update matches; the loser gets
``InvalidTransition`` and must re-read before trying again.

Transitions that move the property in or out of the market record the
target status in ``property_sync`` as part of that same write. The property
is updated right after and the entry is marked applied;
``reconcile_property_sync`` re-applies entries a crash or a failed write
left behind, so booking and property always end up agreeing.
"""
import secrets
import time
from datetime import datetime, timedelta
from typing import Optional, Tuple

import structlog
from dateutil.relativedelta import relativedelta
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import settings
from database import BOOKINGS, PROPERTIES, USERS, as_utc, create_document, now_utc, to_object_id
from errors import (
    DuplicateReference,
    Forbidden,
    InvalidTransition,
    NotFound,
    PropertyNotApproved,
    PropertyUnavailable,
    ValidationError,
)
from properties import get_property_doc
from schemas import ACTIVE_BOOKING_STATUSES, Booking, BookingCreate, Identity, PropertySync

logger = structlog.get_logger(__name__)

BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
DEPOSIT_MONTHS = 2
PAYMENT_METHODS = ("card", "upi", "netbanking", "wallet", "cash")
PARTY_FIELDS = {"name": 1, "email": 1, "phone": 1}

TRANSITIONS = {
    "pending": ("confirmed", "cancelled", "rejected"),
    "confirmed": ("cancelled", "completed"),
    "cancelled": (),
    "completed": (),
    "rejected": (),
}


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def generate_booking_reference(at: datetime = None) -> str:
    """``BK-<base36 epoch millis>-<4 random base36 chars>``."""
    millis = int((at or now_utc()).timestamp() * 1000)
    suffix = "".join(secrets.choice(BASE36) for _ in range(4))
    return f"BK-{to_base36(millis)}-{suffix}"


def generate_transaction_id() -> str:
    suffix = "".join(secrets.choice(BASE36) for _ in range(9))
    return f"TXN{int(time.time() * 1000)}{suffix}"


def compute_totals(monthly_rent: float, duration: int) -> Tuple[float, float]:
    """Return (security_deposit, total_amount) for a rent snapshot."""
    security_deposit = monthly_rent * DEPOSIT_MONTHS
    return security_deposit, monthly_rent * duration + security_deposit


def compute_check_out(check_in: datetime, duration: int) -> datetime:
    # days past the end of a shorter month roll into the next one (31 Jan + 1 -> 3 Mar)
    first_of_month = check_in.replace(day=1) + relativedelta(months=duration)
    return first_of_month + timedelta(days=check_in.day - 1)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


# ---------- Lookups ----------

def get_booking_doc(db: Database, booking_id: str) -> dict:
    booking = db[BOOKINGS].find_one({"_id": to_object_id(booking_id, "Booking")})
    if not booking:
        raise NotFound("Booking not found")
    return booking


def _is_party(actor: Identity, booking: dict) -> bool:
    return actor.id in (booking["renter_id"], booking["landlord_id"])


def populate(db: Database, booking: dict) -> dict:
    booking["property"] = db[PROPERTIES].find_one(
        {"_id": to_object_id(booking["property_id"])},
        {"documents": 0, "favorited_by": 0},
    )
    booking["renter"] = db[USERS].find_one({"_id": to_object_id(booking["renter_id"])}, PARTY_FIELDS)
    booking["landlord"] = db[USERS].find_one(
        {"_id": to_object_id(booking["landlord_id"])}, PARTY_FIELDS
    )
    return booking


def get_booking(db: Database, actor: Identity, booking_id: str) -> dict:
    booking = get_booking_doc(db, booking_id)
    if not _is_party(actor, booking) and not actor.is_admin:
        raise Forbidden("Not authorized to view this booking")
    return populate(db, booking)


def get_invoice_data(db: Database, actor: Identity, booking_id: str) -> Tuple[dict, dict, dict, dict]:
    """Resolve everything the invoice needs: (booking, property, renter, landlord)."""
    booking = get_booking_doc(db, booking_id)
    if not _is_party(actor, booking) and not actor.is_admin:
        raise Forbidden("Not authorized to download this invoice")
    populate(db, booking)
    for key in ("property", "renter", "landlord"):
        if booking[key] is None:
            raise NotFound(f"The {key} of this booking no longer exists")
    return booking, booking["property"], booking["renter"], booking["landlord"]


def list_renter_bookings(db: Database, renter: Identity) -> list:
    cursor = db[BOOKINGS].find({"renter_id": renter.id}).sort("created_at", -1)
    return [populate(db, b) for b in cursor]


def list_landlord_bookings(db: Database, landlord: Identity) -> list:
    if landlord.role not in ("landlord", "admin"):
        raise Forbidden("Access denied. Landlord privileges required.")
    cursor = db[BOOKINGS].find({"landlord_id": landlord.id}).sort("created_at", -1)
    return [populate(db, b) for b in cursor]


def list_property_bookings(db: Database, owner: Identity, property_id: str) -> list:
    prop = get_property_doc(db, property_id)
    if prop["owner_id"] != owner.id:
        raise Forbidden("Not authorized to view bookings for this property")
    cursor = db[BOOKINGS].find({"property_id": str(prop["_id"])}).sort("created_at", -1)
    return [populate(db, b) for b in cursor]


# ---------- Creation ----------

def create_booking(db: Database, renter: Identity, data: BookingCreate) -> dict:
    if data.duration < 1:
        raise ValidationError("Duration must be at least 1 month")
    if data.number_of_occupants < 1:
        raise ValidationError("At least one occupant is required")
    if len(data.special_requests or "") > 500:
        raise ValidationError("Special requests cannot exceed 500 characters")

    prop = get_property_doc(db, data.property_id)
    if prop.get("status") != "available":
        raise PropertyUnavailable()
    if not prop.get("is_approved"):
        raise PropertyNotApproved()

    check_in = as_utc(data.check_in_date)
    monthly_rent = prop["price"]
    security_deposit, _ = compute_totals(monthly_rent, data.duration)

    attempts = max(1, settings.BOOKING_REFERENCE_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        booking = Booking(
            booking_reference=generate_booking_reference(),
            property_id=str(prop["_id"]),
            renter_id=renter.id,
            landlord_id=prop["owner_id"],
            check_in_date=check_in,
            check_out_date=compute_check_out(check_in, data.duration),
            duration=data.duration,
            monthly_rent=monthly_rent,
            security_deposit=security_deposit,
            number_of_occupants=data.number_of_occupants,
            special_requests=(data.special_requests or "").strip(),
        )
        try:
            doc = create_document(db, BOOKINGS, booking)
        except DuplicateKeyError:
            logger.warning(
                "booking_reference_collision",
                reference=booking.booking_reference,
                attempt=attempt,
            )
            continue
        logger.info(
            "booking_created",
            booking_id=str(doc["_id"]),
            reference=doc["booking_reference"],
            property_id=doc["property_id"],
            renter_id=renter.id,
            total_amount=doc["total_amount"],
        )
        return doc
    raise DuplicateReference()


# ---------- Transitions ----------

def _apply_property_sync(db: Database, booking: dict) -> dict:
    sync = booking.get("property_sync")
    if not sync or sync.get("applied"):
        return booking
    try:
        result = db[PROPERTIES].update_one(
            {"_id": to_object_id(booking["property_id"])},
            {"$set": {"status": sync["status"], "updated_at": now_utc()}},
        )
        if result.matched_count == 0:
            logger.warning("property_sync_target_missing", booking_id=str(booking["_id"]))
        db[BOOKINGS].update_one(
            {"_id": booking["_id"], "property_sync.status": sync["status"]},
            {"$set": {"property_sync.applied": True}},
        )
    except PyMongoError as exc:
        # left unapplied; reconcile_property_sync picks it up
        logger.error(
            "property_sync_deferred",
            booking_id=str(booking["_id"]),
            status=sync["status"],
            error=str(exc),
        )
        return booking
    booking["property_sync"] = {"status": sync["status"], "applied": True}
    logger.info(
        "property_sync_applied",
        booking_id=str(booking["_id"]),
        property_id=booking["property_id"],
        status=sync["status"],
    )
    return booking


def _transition(
    db: Database,
    booking: dict,
    target: str,
    fields: dict,
    property_status: Optional[str] = None,
) -> dict:
    current = booking["booking_status"]
    fields = dict(fields, booking_status=target, updated_at=now_utc())
    if property_status:
        fields["property_sync"] = PropertySync(status=property_status).model_dump()

    updated = db[BOOKINGS].find_one_and_update(
        {"_id": booking["_id"], "booking_status": current},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.info("booking_transition_lost", booking_id=str(booking["_id"]), target=target)
        raise InvalidTransition("Booking status changed while processing the request")
    logger.info(
        "booking_transition",
        booking_id=str(updated["_id"]),
        reference=updated.get("booking_reference"),
        from_status=current,
        to_status=target,
    )
    return _apply_property_sync(db, updated)


def confirm_booking(db: Database, landlord: Identity, booking_id: str) -> dict:
    booking = get_booking_doc(db, booking_id)
    if booking["landlord_id"] != landlord.id:
        raise Forbidden("Not authorized to confirm this booking")
    if not can_transition(booking["booking_status"], "confirmed"):
        raise InvalidTransition("Only pending bookings can be confirmed")
    return _transition(
        db,
        booking,
        "confirmed",
        {"confirmed_at": now_utc(), "confirmed_by": landlord.id},
        property_status="rented",
    )


def reject_booking(
    db: Database, landlord: Identity, booking_id: str, reason: str = None
) -> dict:
    booking = get_booking_doc(db, booking_id)
    if booking["landlord_id"] != landlord.id:
        raise Forbidden("Not authorized to reject this booking")
    if not can_transition(booking["booking_status"], "rejected"):
        raise InvalidTransition("Only pending bookings can be rejected")
    return _transition(
        db,
        booking,
        "rejected",
        {
            "rejected_at": now_utc(),
            "rejected_by": landlord.id,
            "rejection_reason": reason or "Rejected by landlord",
        },
    )


def cancel_booking(
    db: Database, actor: Identity, booking_id: str, reason: str = None
) -> dict:
    booking = get_booking_doc(db, booking_id)
    if not _is_party(actor, booking):
        raise Forbidden("Not authorized to cancel this booking")
    if not can_transition(booking["booking_status"], "cancelled"):
        raise InvalidTransition("This booking cannot be cancelled")
    return _transition(
        db,
        booking,
        "cancelled",
        {
            "cancelled_at": now_utc(),
            "cancelled_by": actor.id,
            "cancellation_reason": reason,
        },
        property_status="available",
    )


def complete_booking(db: Database, landlord: Identity, booking_id: str) -> dict:
    booking = get_booking_doc(db, booking_id)
    if booking["landlord_id"] != landlord.id:
        raise Forbidden("Not authorized to complete this booking")
    if not can_transition(booking["booking_status"], "completed"):
        raise InvalidTransition("Only confirmed bookings can be completed")
    return _transition(
        db,
        booking,
        "completed",
        {"completed_at": now_utc()},
        property_status="available",
    )


def reconcile_property_sync(db: Database) -> int:
    """Apply every property status change a booking still owes."""
    applied = 0
    for booking in db[BOOKINGS].find({"property_sync.applied": False}):
        if _apply_property_sync(db, booking)["property_sync"]["applied"]:
            applied += 1
    if applied:
        logger.info("property_sync_reconciled", applied=applied)
    return applied


# ---------- Payments ----------

def record_payment(
    db: Database,
    renter: Identity,
    booking_id: str,
    amount: float,
    method: str,
    transaction_id: Optional[str] = None,
) -> dict:
    """Accrue a payment against a pending or confirmed booking.

    ``paid_amount`` only ever grows. ``payment_status`` follows it to
    ``partial`` and then ``completed`` and never moves back from
    ``completed``.
    """
    if amount is None or amount <= 0:
        raise ValidationError("Payment amount must be greater than zero")
    if method not in PAYMENT_METHODS:
        raise ValidationError("Valid payment method is required")

    booking = get_booking_doc(db, booking_id)
    if booking["renter_id"] != renter.id:
        raise Forbidden("Not authorized to make payment for this booking")
    if booking["booking_status"] not in ACTIVE_BOOKING_STATUSES:
        raise InvalidTransition("Payments are only accepted for pending or confirmed bookings")

    transaction_id = transaction_id or generate_transaction_id()
    updated = db[BOOKINGS].find_one_and_update(
        {
            "_id": booking["_id"],
            "renter_id": renter.id,
            "booking_status": {"$in": list(ACTIVE_BOOKING_STATUSES)},
        },
        {
            "$inc": {"paid_amount": amount},
            "$set": {
                "payment_method": method,
                "transaction_id": transaction_id,
                "payment_date": now_utc(),
                "updated_at": now_utc(),
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition("Booking status changed while processing the payment")

    if updated["paid_amount"] >= updated["total_amount"]:
        db[BOOKINGS].update_one({"_id": updated["_id"]}, {"$set": {"payment_status": "completed"}})
    elif updated["paid_amount"] > 0:
        db[BOOKINGS].update_one(
            {"_id": updated["_id"], "payment_status": {"$ne": "completed"}},
            {"$set": {"payment_status": "partial"}},
        )
    updated = db[BOOKINGS].find_one({"_id": updated["_id"]})
    logger.info(
        "payment_recorded",
        booking_id=str(updated["_id"]),
        amount=amount,
        paid_amount=updated["paid_amount"],
        payment_status=updated["payment_status"],
        method=method,
    )
    return updated
