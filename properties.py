"""
Property Approval Ledger.

Listings enter as ``pending`` and only become bookable once an admin
approves them (``is_approved``) while their ``status`` is ``available``.
``is_approved`` always mirrors ``approval_status == "approved"``.
"""
import re
from typing import Any, Optional

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database

from database import BOOKINGS, PROPERTIES, USERS, create_document, get_documents, now_utc, to_object_id
from errors import Forbidden, InvalidTransition, NotFound, ValidationError
from identity import get_user, require_admin
from schemas import (
    Identity,
    Property,
    PropertyCreate,
    PropertyDocuments,
    PropertyProof,
    PropertyUpdate,
    SearchFilters,
)

logger = structlog.get_logger(__name__)

PROPERTY_STATUSES = ("available", "rented", "maintenance", "unlisted")
OWNER_FIELDS = {"name": 1, "email": 1, "phone": 1}
ZIP_CODE_RE = re.compile(r"^\d{5,6}$")

SORT_FIELDS = {
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "views": [("views", -1)],
}


def _contains(text: str) -> dict:
    return {"$regex": re.escape(text.strip()), "$options": "i"}


def is_bookable(prop: dict) -> bool:
    return bool(prop.get("is_approved")) and prop.get("status") == "available"


def get_property_doc(db: Database, property_id: str) -> dict:
    prop = db[PROPERTIES].find_one({"_id": to_object_id(property_id, "Property")})
    if not prop:
        raise NotFound("Property not found")
    return prop


def attach_owner(db: Database, prop: dict) -> dict:
    owner = db[USERS].find_one({"_id": to_object_id(prop["owner_id"])}, OWNER_FIELDS)
    prop["owner"] = owner
    return prop


def _require_owner(actor: Identity, prop: dict, action: str) -> None:
    if prop["owner_id"] != actor.id and not actor.is_admin:
        raise Forbidden(f"You are not authorized to {action} this property")


def _validate_listing(fields: dict) -> None:
    for key in ("name", "location"):
        if key in fields and not (fields[key] or "").strip():
            raise ValidationError(f"Property {key} is required")
    if fields.get("price") is not None and fields["price"] < 0:
        raise ValidationError("Price cannot be negative")
    if len(fields.get("name") or "") > 100:
        raise ValidationError("Name cannot be more than 100 characters")
    if len(fields.get("description") or "") > 2000:
        raise ValidationError("Description cannot be more than 2000 characters")
    zip_code = fields.get("zip_code")
    if zip_code and not ZIP_CODE_RE.match(zip_code.strip()):
        raise ValidationError("Please provide a valid ZIP code (5-6 digits)")
    for key in ("bedrooms", "bathrooms", "area"):
        if fields.get(key) is not None and fields[key] < 0:
            raise ValidationError(f"{key.capitalize()} cannot be negative")


# ---------- Submission & approval ----------

def submit_property(db: Database, owner: Identity, data: PropertyCreate) -> dict:
    if owner.role not in ("landlord", "admin"):
        raise Forbidden("Access denied. Landlord privileges required.")
    fields = data.model_dump(exclude={"property_proof"})
    _validate_listing(fields)

    documents = PropertyDocuments()
    if data.property_proof is not None:
        documents.property_proof = PropertyProof(
            **data.property_proof.model_dump(), uploaded_at=now_utc()
        )

    prop = Property(
        **fields,
        owner_id=owner.id,
        documents=documents,
        approval_status="pending",
        is_approved=False,
        status="available",
    )
    doc = create_document(db, PROPERTIES, prop)
    logger.info("property_submitted", property_id=str(doc["_id"]), owner_id=owner.id)
    return doc


def _set_approval(db: Database, property_id: str, update: dict) -> dict:
    update.setdefault("$set", {})["updated_at"] = now_utc()
    prop = db[PROPERTIES].find_one_and_update(
        {"_id": to_object_id(property_id, "Property")},
        update,
        return_document=ReturnDocument.AFTER,
    )
    if not prop:
        raise NotFound("Property not found")
    return prop


def approve_property(db: Database, admin: Identity, property_id: str) -> dict:
    require_admin(admin)
    prop = _set_approval(
        db,
        property_id,
        {
            "$set": {
                "is_approved": True,
                "approval_status": "approved",
                "approved_by": admin.id,
                "approved_at": now_utc(),
            },
            "$unset": {"rejection_reason": ""},
        },
    )
    logger.info("property_approved", property_id=property_id, admin_id=admin.id)
    return prop


def reject_property(
    db: Database, admin: Identity, property_id: str, reason: str = None
) -> dict:
    require_admin(admin)
    prop = _set_approval(
        db,
        property_id,
        {
            "$set": {
                "is_approved": False,
                "approval_status": "rejected",
                "approved_by": admin.id,
                "rejection_reason": reason or "Invalid or incomplete property details",
            }
        },
    )
    logger.info("property_rejected", property_id=property_id, admin_id=admin.id)
    return prop


def mark_under_review(db: Database, admin: Identity, property_id: str) -> dict:
    require_admin(admin)
    prop = _set_approval(
        db,
        property_id,
        {"$set": {"is_approved": False, "approval_status": "under_review"}},
    )
    logger.info("property_under_review", property_id=property_id, admin_id=admin.id)
    return prop


def set_availability(db: Database, property_id: str, status: str) -> dict:
    """Flip a listing's availability; used by the booking workflow."""
    if status not in PROPERTY_STATUSES:
        raise ValidationError(f"Invalid property status: {status}")
    prop = db[PROPERTIES].find_one_and_update(
        {"_id": to_object_id(property_id, "Property")},
        {"$set": {"status": status, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not prop:
        raise NotFound("Property not found")
    logger.info("property_status_changed", property_id=property_id, status=status)
    return prop


# ---------- Owner edits ----------

def update_property(
    db: Database, owner: Identity, property_id: str, data: PropertyUpdate
) -> dict:
    prop = get_property_doc(db, property_id)
    if prop["owner_id"] != owner.id:
        raise Forbidden("You are not authorized to update this property")
    update = data.model_dump(exclude_none=True)
    if not update:
        raise ValidationError("No fields to update")
    _validate_listing(update)
    if update.get("status") == "available" and db[BOOKINGS].count_documents(
        {"property_id": str(prop["_id"]), "booking_status": "confirmed"}
    ):
        # a confirmed booking holds the property until it is cancelled or completed
        raise InvalidTransition("Property has a confirmed booking and cannot be made available")
    update["updated_at"] = now_utc()
    return db[PROPERTIES].find_one_and_update(
        {"_id": prop["_id"]},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )


def delete_property(db: Database, actor: Identity, property_id: str) -> None:
    prop = get_property_doc(db, property_id)
    _require_owner(actor, prop, "delete")
    pid = str(prop["_id"])
    db[PROPERTIES].delete_one({"_id": prop["_id"]})
    db[USERS].update_many({"favorites": pid}, {"$pull": {"favorites": pid}})
    logger.info("property_deleted", property_id=pid, actor_id=actor.id)


# ---------- Favorites ----------

def toggle_favorite(db: Database, property_id: str, user_id: str) -> bool:
    """Toggle a favorite on both sides; returns the new favorited state.

    Membership is decided once from the property record and the same
    decision is applied to the user record, so the two sets stay mirrored.
    """
    prop = get_property_doc(db, property_id)
    user = get_user(db, user_id)
    pid, uid = str(prop["_id"]), str(user["_id"])

    if uid in prop.get("favorited_by", []):
        db[PROPERTIES].update_one({"_id": prop["_id"]}, {"$pull": {"favorited_by": uid}})
        db[USERS].update_one({"_id": user["_id"]}, {"$pull": {"favorites": pid}})
        favorited = False
    else:
        db[PROPERTIES].update_one({"_id": prop["_id"]}, {"$addToSet": {"favorited_by": uid}})
        db[USERS].update_one({"_id": user["_id"]}, {"$addToSet": {"favorites": pid}})
        favorited = True
    logger.info("favorite_toggled", property_id=pid, user_id=uid, favorited=favorited)
    return favorited


# ---------- Reads ----------

def search(db: Database, filters: SearchFilters) -> list:
    """Approved, available listings narrowed by the given filters."""
    query: dict[str, Any] = {"is_approved": True, "status": "available"}
    if filters.zipcode:
        query["zip_code"] = _contains(filters.zipcode)
    if filters.city:
        query["city"] = _contains(filters.city)
    if filters.min_price is not None or filters.max_price is not None:
        price_cond = {}
        if filters.min_price is not None:
            price_cond["$gte"] = filters.min_price
        if filters.max_price is not None:
            price_cond["$lte"] = filters.max_price
        query["price"] = price_cond
    if filters.bedrooms is not None:
        query["bedrooms"] = filters.bedrooms
    if filters.type:
        query["type"] = _contains(filters.type)
    return [attach_owner(db, p) for p in db[PROPERTIES].find(query).sort("created_at", -1)]


def list_properties(
    db: Database,
    status: str = "available",
    city: Optional[str] = None,
    property_type: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    q: Optional[str] = None,
    sort: str = "newest",
    page: int = 1,
    limit: int = 10,
    viewer_id: Optional[str] = None,
) -> dict:
    filt: dict[str, Any] = {"status": status, "is_approved": True}
    if city and city != "all":
        filt["city"] = _contains(city)
    if property_type and property_type != "all":
        filt["type"] = property_type
    if min_price is not None or max_price is not None:
        price_cond = {}
        if min_price is not None:
            price_cond["$gte"] = min_price
        if max_price is not None:
            price_cond["$lte"] = max_price
        filt["price"] = price_cond
    if q:
        filt["$or"] = [{"name": _contains(q)}, {"location": _contains(q)}]

    page = max(1, page)
    limit = min(max(1, limit), 100)
    total = db[PROPERTIES].count_documents(filt)
    cursor = (
        db[PROPERTIES]
        .find(filt)
        .sort(SORT_FIELDS.get(sort, SORT_FIELDS["newest"]))
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = []
    for prop in cursor:
        if viewer_id:
            prop["is_favorited"] = viewer_id in prop.get("favorited_by", [])
        items.append(attach_owner(db, prop))
    return {
        "items": items,
        "total": total,
        "page": page,
        "pages": -(-total // limit),
    }


def get_property(db: Database, property_id: str, viewer_id: Optional[str] = None) -> dict:
    """Fetch a listing and count the view."""
    prop = db[PROPERTIES].find_one_and_update(
        {"_id": to_object_id(property_id, "Property")},
        {"$inc": {"views": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not prop:
        raise NotFound("Property not found")
    if viewer_id:
        prop["is_favorited"] = viewer_id in prop.get("favorited_by", [])
    return attach_owner(db, prop)


def list_owner_properties(db: Database, owner: Identity) -> list:
    return get_documents(db, PROPERTIES, {"owner_id": owner.id}, sort=[("created_at", -1)])


def list_all_properties(db: Database, admin: Identity, approval_status: str = None) -> list:
    require_admin(admin)
    filt = {"approval_status": approval_status} if approval_status else {}
    return [attach_owner(db, p) for p in db[PROPERTIES].find(filt).sort("created_at", -1)]
