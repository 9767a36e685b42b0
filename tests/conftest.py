import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import mongomock
import pytest
from fastapi.testclient import TestClient

import identity
from database import PROPERTIES, USERS, create_document, ensure_indexes, get_db
from main import app
from schemas import Property
from security import create_access_token

PASSWORD = "secret123"


@pytest.fixture
def db():
    """In-memory MongoDB with the production indexes."""
    client = mongomock.MongoClient()
    database = client["rentbase_test"]
    ensure_indexes(database)
    yield database
    client.close()


@pytest.fixture
def user_factory(db):
    def make_user(name, email, role="renter", verified=True):
        user = identity.register_user(db, name, email, PASSWORD, "9876543210", role_hint=role)
        if verified and user["role"] != "admin":
            db[USERS].update_one(
                {"_id": user["_id"]},
                {"$set": {"is_verified": True, "verification_status": "approved"}},
            )
            user = db[USERS].find_one({"_id": user["_id"]})
        return user

    return make_user


@pytest.fixture
def admin(db, user_factory):
    return identity.identity_from_user(user_factory("Site Admin", "root@admin.com", role="admin"))


@pytest.fixture
def landlord(db, user_factory):
    return identity.identity_from_user(
        user_factory("Lata Landlord", "lata@rentbase.in", role="landlord")
    )


@pytest.fixture
def renter(db, user_factory):
    return identity.identity_from_user(user_factory("Ravi Renter", "ravi@rentbase.in"))


@pytest.fixture
def other_renter(db, user_factory):
    return identity.identity_from_user(user_factory("Meera Renter", "meera@rentbase.in"))


@pytest.fixture
def property_factory(db):
    def make_property(owner, approved=True, status="available", created_at=None, **fields):
        data = {
            "name": "Sea View Flat",
            "price": 25000,
            "location": "Bandra West, Mumbai 400050",
            "city": "Mumbai",
            "zip_code": "400050",
            "type": "Luxury Apartment",
            "bedrooms": 2,
            "bathrooms": 2,
        }
        data.update(fields)
        prop = Property(
            owner_id=owner.id,
            is_approved=approved,
            approval_status="approved" if approved else "pending",
            status=status,
            **data,
        ).model_dump()
        if created_at is not None:
            prop["created_at"] = created_at
        return create_document(db, PROPERTIES, prop)

    return make_property


@pytest.fixture
def listing(landlord, property_factory):
    return property_factory(landlord)


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(caller) -> dict:
    return {"Authorization": f"Bearer {create_access_token(caller.id)}"}


@pytest.fixture
def headers():
    return auth_headers
