import pytest

import bookings
import properties
from database import PROPERTIES, USERS
from errors import Forbidden, InvalidTransition, NotFound, ValidationError
from schemas import BookingCreate, PropertyCreate, PropertyUpdate, SearchFilters


def new_listing(**overrides):
    data = {
        "name": "Garden Cottage",
        "price": 18000,
        "location": "Koramangala, Bengaluru",
        "city": "Bengaluru",
        "zip_code": "560034",
        "type": "Urban Home",
        "bedrooms": 3,
    }
    data.update(overrides)
    return PropertyCreate(**data)


class TestSubmission:
    """Listings enter the approval queue"""

    def test_submitted_listing_is_pending(self, db, landlord):
        prop = properties.submit_property(
            db,
            landlord,
            new_listing(property_proof={"document_type": "sale_deed", "document_number": "SD-9"}),
        )

        assert prop["approval_status"] == "pending"
        assert prop["is_approved"] is False
        assert prop["status"] == "available"
        assert prop["owner_id"] == landlord.id
        assert prop["documents"]["property_proof"]["document_type"] == "sale_deed"
        assert not properties.is_bookable(prop)

    def test_renters_cannot_list(self, db, renter):
        with pytest.raises(Forbidden):
            properties.submit_property(db, renter, new_listing())

    @pytest.mark.parametrize(
        "overrides",
        [{"name": "  "}, {"price": -1}, {"zip_code": "12AB"}, {"bedrooms": -2}],
    )
    def test_invalid_listing(self, db, landlord, overrides):
        with pytest.raises(ValidationError):
            properties.submit_property(db, landlord, new_listing(**overrides))


class TestApproval:
    def test_approve_makes_bookable(self, db, admin, landlord):
        prop = properties.submit_property(db, landlord, new_listing())

        approved = properties.approve_property(db, admin, str(prop["_id"]))

        assert approved["is_approved"] is True
        assert approved["approval_status"] == "approved"
        assert approved["approved_by"] == admin.id
        assert properties.is_bookable(approved)

    def test_reject_and_review_clear_approval(self, db, admin, listing):
        pid = str(listing["_id"])

        rejected = properties.reject_property(db, admin, pid)
        assert rejected["is_approved"] is False
        assert rejected["rejection_reason"] == "Invalid or incomplete property details"

        reviewed = properties.mark_under_review(db, admin, pid)
        assert reviewed["approval_status"] == "under_review"
        assert reviewed["is_approved"] is False

    def test_landlord_cannot_approve(self, db, landlord, listing):
        with pytest.raises(Forbidden):
            properties.approve_property(db, landlord, str(listing["_id"]))

    def test_unknown_property(self, db, admin):
        with pytest.raises(NotFound):
            properties.approve_property(db, admin, "not-an-id")

    def test_set_availability_rejects_unknown_status(self, db, listing):
        with pytest.raises(ValidationError):
            properties.set_availability(db, str(listing["_id"]), "sold")


class TestOwnerEdits:
    def test_owner_updates(self, db, landlord, listing):
        updated = properties.update_property(
            db, landlord, str(listing["_id"]), PropertyUpdate(price=27000, status="maintenance")
        )
        assert updated["price"] == 27000
        assert updated["status"] == "maintenance"

    def test_other_user_cannot_update(self, db, renter, listing):
        with pytest.raises(Forbidden):
            properties.update_property(db, renter, str(listing["_id"]), PropertyUpdate(price=1))

    def test_empty_update(self, db, landlord, listing):
        with pytest.raises(ValidationError):
            properties.update_property(db, landlord, str(listing["_id"]), PropertyUpdate())

    def test_confirmed_booking_blocks_reopening(self, db, landlord, renter, listing):
        pid = str(listing["_id"])
        booking = bookings.create_booking(
            db,
            renter,
            BookingCreate(property_id=pid, check_in_date="2026-11-01T00:00:00Z", duration=6),
        )
        bookings.confirm_booking(db, landlord, str(booking["_id"]))

        with pytest.raises(InvalidTransition):
            properties.update_property(db, landlord, pid, PropertyUpdate(status="available"))
        assert db[PROPERTIES].find_one({"_id": listing["_id"]})["status"] == "rented"

        unlisted = properties.update_property(db, landlord, pid, PropertyUpdate(status="unlisted"))
        assert unlisted["status"] == "unlisted"

    def test_reopen_after_completion(self, db, landlord, renter, listing):
        pid = str(listing["_id"])
        booking = bookings.create_booking(
            db,
            renter,
            BookingCreate(property_id=pid, check_in_date="2026-11-01T00:00:00Z", duration=6),
        )
        bookings.confirm_booking(db, landlord, str(booking["_id"]))
        bookings.complete_booking(db, landlord, str(booking["_id"]))
        properties.update_property(db, landlord, pid, PropertyUpdate(status="maintenance"))

        reopened = properties.update_property(db, landlord, pid, PropertyUpdate(status="available"))

        assert reopened["status"] == "available"

    def test_delete_pulls_favorites(self, db, landlord, renter, listing):
        properties.toggle_favorite(db, str(listing["_id"]), renter.id)

        properties.delete_property(db, landlord, str(listing["_id"]))

        assert db[PROPERTIES].count_documents({}) == 0
        assert db[USERS].find_one({"email": "ravi@rentbase.in"})["favorites"] == []


class TestFavorites:
    def test_toggle_is_its_own_inverse(self, db, renter, listing):
        pid = str(listing["_id"])

        assert properties.toggle_favorite(db, pid, renter.id) is True
        assert renter.id in db[PROPERTIES].find_one({"_id": listing["_id"]})["favorited_by"]
        assert pid in db[USERS].find_one({"email": "ravi@rentbase.in"})["favorites"]

        assert properties.toggle_favorite(db, pid, renter.id) is False
        assert db[PROPERTIES].find_one({"_id": listing["_id"]})["favorited_by"] == []
        assert db[USERS].find_one({"email": "ravi@rentbase.in"})["favorites"] == []


class TestSearch:
    """Public discovery only ever shows approved listings"""

    @pytest.fixture
    def catalogue(self, landlord, property_factory):
        return {
            "mumbai": property_factory(landlord),
            "pune": property_factory(
                landlord, name="Hill Villa", price=40000, city="Pune", zip_code="411001",
                location="Baner, Pune", type="Modern Villa", bedrooms=4,
            ),
            "rented": property_factory(landlord, name="Taken Flat", status="rented"),
            "pending": property_factory(landlord, name="Queued Flat", approved=False),
        }

    def test_only_approved_available(self, db, catalogue):
        names = {p["name"] for p in properties.search(db, SearchFilters())}
        assert names == {"Sea View Flat", "Hill Villa"}

    def test_filters(self, db, catalogue):
        assert [p["name"] for p in properties.search(db, SearchFilters(city="pune"))] == ["Hill Villa"]
        assert [p["name"] for p in properties.search(db, SearchFilters(zipcode="4000"))] == ["Sea View Flat"]
        assert [p["name"] for p in properties.search(db, SearchFilters(max_price=30000))] == ["Sea View Flat"]
        assert [p["name"] for p in properties.search(db, SearchFilters(bedrooms=4))] == ["Hill Villa"]

    def test_search_attaches_owner(self, db, catalogue):
        owner = properties.search(db, SearchFilters(city="Mumbai"))[0]["owner"]
        assert owner["email"] == "lata@rentbase.in"
        assert "password_hash" not in owner

    def test_listing_pages(self, db, catalogue):
        page = properties.list_properties(db, sort="price_desc", limit=1)

        assert page["total"] == 2
        assert page["pages"] == 2
        assert page["items"][0]["name"] == "Hill Villa"

    def test_listing_never_shows_unapproved(self, db, catalogue):
        names = {p["name"] for p in properties.list_properties(db, q="Flat")["items"]}
        assert names == {"Sea View Flat"}

    def test_get_property_counts_views(self, db, renter, catalogue):
        pid = str(catalogue["mumbai"]["_id"])
        properties.get_property(db, pid)
        prop = properties.get_property(db, pid, viewer_id=renter.id)

        assert prop["views"] == 2
        assert prop["is_favorited"] is False

    def test_admin_listing_filters_by_approval(self, db, admin, catalogue):
        pending = properties.list_all_properties(db, admin, "pending")
        assert [p["name"] for p in pending] == ["Queued Flat"]
