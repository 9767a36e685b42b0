"""
MongoDB access for the marketplace.

Each record type lives in its own collection named after the lowercase of
its schema class (User -> "user", Property -> "property", Booking ->
"booking"). Core functions never reach for a global handle: they receive
the ``Database`` they operate on, which the HTTP layer provides through the
``get_db`` dependency.
"""
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Iterator, Optional

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings
from errors import NotFound

logger = structlog.get_logger(__name__)

USERS = "user"
PROPERTIES = "property"
BOOKINGS = "booking"

# never leaves the API
PRIVATE_FIELDS = ("password_hash",)


@lru_cache(maxsize=1)
def get_client() -> MongoClient:
    logger.info("mongo_client_created", database=settings.DATABASE_NAME)
    return MongoClient(settings.DATABASE_URL, tz_aware=True)


def get_db() -> Iterator[Database]:
    yield get_client()[settings.DATABASE_NAME]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored datetimes come back naive from some drivers; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_object_id(id_str: str, label: str = "Resource") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def ensure_indexes(db: Database) -> None:
    """Create the indexes the ledgers rely on (idempotent)."""
    db[USERS].create_index("email", unique=True)

    db[PROPERTIES].create_index([("is_approved", ASCENDING), ("status", ASCENDING)])
    db[PROPERTIES].create_index([("city", ASCENDING), ("zip_code", ASCENDING)])
    db[PROPERTIES].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
    db[PROPERTIES].create_index([("price", ASCENDING)])

    db[BOOKINGS].create_index("booking_reference", unique=True)
    db[BOOKINGS].create_index([("property_id", ASCENDING), ("renter_id", ASCENDING)])
    db[BOOKINGS].create_index([("landlord_id", ASCENDING), ("booking_status", ASCENDING)])
    db[BOOKINGS].create_index([("renter_id", ASCENDING), ("booking_status", ASCENDING)])
    db[BOOKINGS].create_index([("created_at", DESCENDING)])


def create_document(db: Database, collection_name: str, data: Any) -> dict:
    """Insert a document stamped with created_at/updated_at and return it."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = now_utc()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    return data_dict


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: dict = None,
    sort: list = None,
    skip: int = 0,
    limit: int = 0,
) -> list:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Shape a stored document (and any populated sub-documents) for JSON."""
    if doc is None:
        return None
    out = {k: _serialize_value(v) for k, v in doc.items() if k not in PRIVATE_FIELDS}
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out
