"""
Identity & Verification Ledger.

Accounts, credentials and the admin-gated verification workflow. Admins
are verified from the moment they sign up and never go through document
review. Block/unblock toggle ``is_blocked`` and ``is_active`` together.
"""
import re
from typing import Optional, Tuple

import structlog
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import (
    BOOKINGS,
    PROPERTIES,
    USERS,
    create_document,
    get_documents,
    now_utc,
    to_object_id,
)
from errors import (
    AccountBlocked,
    AccountDeactivated,
    AdminExempt,
    DuplicateEmail,
    Forbidden,
    InvalidCredentials,
    InvalidTransition,
    NotFound,
    Unauthenticated,
    ValidationError,
)
from schemas import ACTIVE_BOOKING_STATUSES, Identity, IdProof, User
from security import create_access_token, decode_access_token, hash_password, verify_password

logger = structlog.get_logger(__name__)

MIN_PASSWORD_LENGTH = 6
SUMMARY_FIELDS = {"name": 1, "price": 1, "location": 1, "image": 1}
CONTACT_FIELDS = {"name": 1, "email": 1, "phone": 1, "role": 1, "avatar": 1}
USER_SEARCH_LIMIT = 20


def is_admin_email(email: str) -> bool:
    return email.strip().lower().endswith(settings.ADMIN_EMAIL_DOMAIN.lower())


def identity_from_user(user: dict) -> Identity:
    return Identity(
        id=str(user["_id"]),
        role=user["role"],
        is_verified=user.get("is_verified", False),
        is_active=user.get("is_active", True),
        is_blocked=user.get("is_blocked", False),
        verification_status=user.get("verification_status", "pending"),
    )


def require_admin(actor: Identity) -> None:
    if not actor.is_admin:
        raise Forbidden("Access denied. Admin privileges required.")


def get_user(db: Database, user_id: str) -> dict:
    user = db[USERS].find_one({"_id": to_object_id(user_id, "User")})
    if not user:
        raise NotFound("User not found")
    return user


def _check_account_enabled(user: dict) -> None:
    if user.get("is_blocked"):
        raise AccountBlocked(user.get("block_reason"))
    if not user.get("is_active", True):
        raise AccountDeactivated()


# ---------- Accounts ----------

def register_user(
    db: Database,
    name: str,
    email: str,
    password: str,
    phone: str,
    role_hint: str = "renter",
) -> dict:
    name = (name or "").strip()
    phone = (phone or "").strip()
    email = (email or "").strip().lower()
    if not name:
        raise ValidationError("Name is required")
    if len(name) > 50:
        raise ValidationError("Name cannot be more than 50 characters")
    if not email:
        raise ValidationError("Please provide a valid email")
    if not phone:
        raise ValidationError("Phone number is required")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if role_hint not in ("renter", "landlord", "admin"):
        raise ValidationError("Invalid user type")

    if db[USERS].find_one({"email": email}):
        raise DuplicateEmail()

    admin = is_admin_email(email)
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        phone=phone,
        role="admin" if admin else role_hint,
        is_verified=admin,
        verification_status="approved" if admin else "pending",
    )
    try:
        doc = create_document(db, USERS, user)
    except DuplicateKeyError:
        raise DuplicateEmail()
    logger.info("user_registered", user_id=str(doc["_id"]), role=doc["role"])
    return doc


def authenticate(db: Database, email: str, password: str) -> Tuple[str, dict]:
    """Check credentials and issue a session token bound to the user id."""
    user = db[USERS].find_one({"email": (email or "").strip().lower()})
    if not user or not verify_password(password or "", user.get("password_hash")):
        logger.info("login_failed", email=email)
        raise InvalidCredentials()
    _check_account_enabled(user)
    token = create_access_token(str(user["_id"]))
    logger.info("login_succeeded", user_id=str(user["_id"]))
    return token, user


def resolve_identity(db: Database, token: Optional[str]) -> Identity:
    if not token:
        raise Unauthenticated("Not authorized to access this route - No token")
    user_id = decode_access_token(token)
    try:
        user = get_user(db, user_id)
    except NotFound:
        raise Unauthenticated("User not found")
    _check_account_enabled(user)
    return identity_from_user(user)


def get_profile(db: Database, user_id: str) -> dict:
    user = get_user(db, user_id)
    owned = list(
        db[PROPERTIES].find({"owner_id": str(user["_id"])}, SUMMARY_FIELDS)
    )
    favorites = list(
        db[PROPERTIES].find(
            {"_id": {"$in": [to_object_id(pid) for pid in user.get("favorites", [])]}},
            SUMMARY_FIELDS,
        )
    )
    user["properties"] = owned
    user["favorite_properties"] = favorites
    return user


# ---------- Verification ----------

def submit_verification_document(
    db: Database, user_id: str, doc_type: str, doc_number: str, doc_blob: str
) -> dict:
    user = get_user(db, user_id)
    if user["role"] == "admin":
        raise AdminExempt()
    if not (doc_number or "").strip():
        raise ValidationError("Document number is required")
    if not doc_blob:
        raise ValidationError("Document file is required")

    proof = IdProof(
        document_type=doc_type,
        document_number=doc_number.strip(),
        document_base64=doc_blob,
        uploaded_at=now_utc(),
    )
    updated = db[USERS].find_one_and_update(
        {"_id": user["_id"]},
        {
            "$set": {
                "id_proof": proof.model_dump(),
                "verification_status": "pending",
                "updated_at": now_utc(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    logger.info("verification_document_submitted", user_id=user_id, document_type=doc_type)
    return updated


def _update_user(db: Database, user_id: str, update: dict) -> dict:
    update.setdefault("$set", {})["updated_at"] = now_utc()
    user = db[USERS].find_one_and_update(
        {"_id": to_object_id(user_id, "User")},
        update,
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFound("User not found")
    return user


def approve_verification(db: Database, admin: Identity, user_id: str) -> dict:
    require_admin(admin)
    user = _update_user(
        db,
        user_id,
        {
            "$set": {
                "is_verified": True,
                "verification_status": "approved",
                "verified_at": now_utc(),
                "verified_by": admin.id,
            },
            "$unset": {"rejection_reason": ""},
        },
    )
    logger.info("verification_approved", user_id=user_id, admin_id=admin.id)
    return user


def reject_verification(
    db: Database, admin: Identity, user_id: str, reason: str = None
) -> dict:
    require_admin(admin)
    user = _update_user(
        db,
        user_id,
        {
            "$set": {
                "is_verified": False,
                "verification_status": "rejected",
                "verified_at": now_utc(),
                "verified_by": admin.id,
                "rejection_reason": reason or "Invalid or unclear ID proof",
            }
        },
    )
    logger.info("verification_rejected", user_id=user_id, admin_id=admin.id)
    return user


def block_user(db: Database, admin: Identity, user_id: str, reason: str = None) -> dict:
    require_admin(admin)
    if admin.id == user_id:
        raise InvalidTransition("Admins cannot block their own account")
    user = _update_user(
        db,
        user_id,
        {
            "$set": {
                "is_blocked": True,
                "is_active": False,
                "block_reason": reason or "Violated terms of service",
            }
        },
    )
    logger.info("user_blocked", user_id=user_id, admin_id=admin.id)
    return user


def unblock_user(db: Database, admin: Identity, user_id: str) -> dict:
    require_admin(admin)
    user = _update_user(
        db,
        user_id,
        {"$set": {"is_blocked": False, "is_active": True}, "$unset": {"block_reason": ""}},
    )
    logger.info("user_unblocked", user_id=user_id, admin_id=admin.id)
    return user


# ---------- Administration ----------

def list_users(db: Database) -> list:
    return get_documents(db, USERS, {"role": {"$ne": "admin"}}, sort=[("created_at", -1)])


def list_pending_users(db: Database) -> list:
    return list(
        db[USERS]
        .find({"verification_status": "pending", "role": {"$ne": "admin"}})
        .sort("created_at", -1)
    )


def admin_stats(db: Database) -> dict:
    users = db[USERS]
    properties = db[PROPERTIES]
    not_admin = {"role": {"$ne": "admin"}}
    return {
        "users": {
            "total": users.count_documents(not_admin),
            "pending": users.count_documents({"verification_status": "pending", **not_admin}),
            "verified": users.count_documents({"is_verified": True, **not_admin}),
            "rejected": users.count_documents({"verification_status": "rejected", **not_admin}),
            "blocked": users.count_documents({"is_blocked": True}),
        },
        "properties": {
            "total": properties.count_documents({}),
            "pending": properties.count_documents({"approval_status": "pending"}),
            "approved": properties.count_documents({"is_approved": True}),
            "rejected": properties.count_documents({"approval_status": "rejected"}),
        },
    }


def delete_user(db: Database, actor: Identity, user_id: str) -> None:
    """Delete an account along with the listings it owns.

    Refused while the user is renter or landlord of a pending or confirmed
    booking.
    """
    if actor.id != user_id:
        require_admin(actor)
    user = get_user(db, user_id)
    uid = str(user["_id"])

    active = db[BOOKINGS].count_documents(
        {
            "$or": [{"renter_id": uid}, {"landlord_id": uid}],
            "booking_status": {"$in": list(ACTIVE_BOOKING_STATUSES)},
        }
    )
    if active:
        raise InvalidTransition("Account has active bookings and cannot be deleted")

    owned_ids = [str(p["_id"]) for p in db[PROPERTIES].find({"owner_id": uid}, {"_id": 1})]
    if owned_ids:
        db[PROPERTIES].delete_many({"owner_id": uid})
        db[USERS].update_many(
            {"favorites": {"$in": owned_ids}},
            {"$pull": {"favorites": {"$in": owned_ids}}},
        )
    db[PROPERTIES].update_many({"favorited_by": uid}, {"$pull": {"favorited_by": uid}})
    db[USERS].delete_one({"_id": user["_id"]})
    logger.info("user_deleted", user_id=uid, actor_id=actor.id, properties_deleted=len(owned_ids))


def search_users(db: Database, query: Optional[str] = None, role: Optional[str] = None) -> list:
    """Contact lookup by name or email, case-insensitive."""
    filt = {}
    if query and query.strip():
        pattern = {"$regex": re.escape(query.strip()), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"email": pattern}]
    if role:
        filt["role"] = role
    return list(db[USERS].find(filt, CONTACT_FIELDS).limit(USER_SEARCH_LIMIT))


def list_favorites(db: Database, user_id: str) -> list:
    user = get_user(db, user_id)
    ids = [to_object_id(pid) for pid in user.get("favorites", [])]
    return list(db[PROPERTIES].find({"_id": {"$in": ids}}))


def user_stats(db: Database, actor: Identity) -> dict:
    stats = {}
    if actor.role == "landlord":
        properties = list(db[PROPERTIES].find({"owner_id": actor.id}))
        stats["total_properties"] = len(properties)
        stats["available_properties"] = sum(1 for p in properties if p.get("status") == "available")
        stats["rented_properties"] = sum(1 for p in properties if p.get("status") == "rented")
        stats["total_views"] = sum(p.get("views", 0) for p in properties)
        stats["total_favorites"] = sum(len(p.get("favorited_by", [])) for p in properties)
        if properties:
            most_viewed = max(properties, key=lambda p: p.get("views", 0))
            stats["most_viewed_property"] = {
                "id": str(most_viewed["_id"]),
                "name": most_viewed["name"],
                "views": most_viewed.get("views", 0),
            }
    else:
        favorites = list_favorites(db, actor.id)
        stats["total_favorites"] = len(favorites)
        if favorites:
            stats["average_favorite_price"] = round(
                sum(p["price"] for p in favorites) / len(favorites)
            )
    return stats
