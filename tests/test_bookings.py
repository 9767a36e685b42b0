import re
from datetime import datetime, timezone

import pytest

import bookings
from database import BOOKINGS, PROPERTIES, as_utc
from errors import (
    DuplicateReference,
    Forbidden,
    InvalidTransition,
    PropertyNotApproved,
    PropertyUnavailable,
    ValidationError,
)
from schemas import BookingCreate

REFERENCE_RE = re.compile(r"^BK-[0-9A-Z]+-[0-9A-Z]{4}$")


def request_for(prop, duration=12, check_in=None, **extra):
    return BookingCreate(
        property_id=str(prop["_id"]),
        check_in_date=check_in or datetime(2026, 11, 1, tzinfo=timezone.utc),
        duration=duration,
        **extra,
    )


def property_status(db, prop):
    return db[PROPERTIES].find_one({"_id": prop["_id"]})["status"]


@pytest.fixture
def booking(db, renter, listing):
    return bookings.create_booking(db, renter, request_for(listing))


class TestReferences:
    def test_base36(self):
        assert bookings.to_base36(0) == "0"
        assert bookings.to_base36(35) == "Z"
        assert bookings.to_base36(36) == "10"

    def test_reference_format(self):
        at = datetime(2026, 10, 19, tzinfo=timezone.utc)
        reference = bookings.generate_booking_reference(at)

        assert REFERENCE_RE.match(reference)
        millis = int(at.timestamp() * 1000)
        assert reference.split("-")[1] == bookings.to_base36(millis)

    def test_transaction_id_format(self):
        assert re.match(r"^TXN\d+[0-9A-Z]{9}$", bookings.generate_transaction_id())


class TestCreateBooking:
    """Snapshotting rent and deriving totals"""

    def test_totals_for_a_year(self, db, renter, listing, booking):
        assert booking["monthly_rent"] == 25000
        assert booking["security_deposit"] == 50000
        assert booking["total_amount"] == 350000
        assert booking["booking_status"] == "pending"
        assert booking["payment_status"] == "pending"
        assert booking["paid_amount"] == 0
        assert booking["renter_id"] == renter.id
        assert booking["landlord_id"] == listing["owner_id"]

    def test_reference_is_stable(self, db, booking):
        assert REFERENCE_RE.match(booking["booking_reference"])
        stored = db[BOOKINGS].find_one({"_id": booking["_id"]})
        assert stored["booking_reference"] == booking["booking_reference"]

    def test_rent_is_a_snapshot(self, db, landlord, booking, listing):
        db[PROPERTIES].update_one({"_id": listing["_id"]}, {"$set": {"price": 99000}})

        stored = db[BOOKINGS].find_one({"_id": booking["_id"]})
        assert stored["monthly_rent"] == 25000
        assert stored["total_amount"] == 350000

    def test_check_out_rolls_past_short_month(self, db, renter, listing):
        doc = bookings.create_booking(
            db,
            renter,
            request_for(listing, duration=1, check_in=datetime(2026, 1, 31, tzinfo=timezone.utc)),
        )
        assert as_utc(doc["check_out_date"]).date() == datetime(2026, 3, 3).date()

    @pytest.mark.parametrize(
        "check_in,duration,expected",
        [
            (datetime(2026, 1, 15, tzinfo=timezone.utc), 12, datetime(2027, 1, 15, tzinfo=timezone.utc)),
            (datetime(2026, 1, 31, tzinfo=timezone.utc), 3, datetime(2026, 5, 1, tzinfo=timezone.utc)),
            (datetime(2024, 1, 30, tzinfo=timezone.utc), 1, datetime(2024, 3, 1, tzinfo=timezone.utc)),
            (datetime(2026, 11, 30, tzinfo=timezone.utc), 3, datetime(2027, 3, 2, tzinfo=timezone.utc)),
        ],
    )
    def test_compute_check_out(self, check_in, duration, expected):
        assert bookings.compute_check_out(check_in, duration) == expected

    def test_unavailable_property_creates_nothing(self, db, renter, landlord, property_factory):
        rented = property_factory(landlord, status="rented")

        with pytest.raises(PropertyUnavailable):
            bookings.create_booking(db, renter, request_for(rented))
        assert db[BOOKINGS].count_documents({}) == 0

    def test_unapproved_property(self, db, renter, landlord, property_factory):
        pending = property_factory(landlord, approved=False)

        with pytest.raises(PropertyNotApproved):
            bookings.create_booking(db, renter, request_for(pending))

    @pytest.mark.parametrize(
        "duration,extra",
        [(0, {}), (12, {"number_of_occupants": 0}), (12, {"special_requests": "x" * 501})],
    )
    def test_invalid_requests(self, db, renter, listing, duration, extra):
        with pytest.raises(ValidationError):
            bookings.create_booking(db, renter, request_for(listing, duration=duration, **extra))

    def test_reference_collisions_exhaust_attempts(self, db, renter, listing, monkeypatch):
        monkeypatch.setattr(bookings, "generate_booking_reference", lambda at=None: "BK-FIXED-AAAA")
        bookings.create_booking(db, renter, request_for(listing))

        with pytest.raises(DuplicateReference):
            bookings.create_booking(db, renter, request_for(listing))
        assert db[BOOKINGS].count_documents({}) == 1

    def test_reference_collision_is_retried(self, db, renter, listing, monkeypatch):
        references = iter(["BK-FIXED-AAAA", "BK-FIXED-AAAA", "BK-FIXED-BBBB"])
        monkeypatch.setattr(bookings, "generate_booking_reference", lambda at=None: next(references))
        bookings.create_booking(db, renter, request_for(listing))

        second = bookings.create_booking(db, renter, request_for(listing))

        assert second["booking_reference"] == "BK-FIXED-BBBB"


class TestTransitions:
    """Status changes and the property status they drag along"""

    def test_confirm_rents_the_property(self, db, landlord, booking, listing):
        confirmed = bookings.confirm_booking(db, landlord, str(booking["_id"]))

        assert confirmed["booking_status"] == "confirmed"
        assert confirmed["confirmed_by"] == landlord.id
        assert confirmed["property_sync"] == {"status": "rented", "applied": True}
        assert property_status(db, listing) == "rented"

    def test_double_confirm_fails(self, db, landlord, booking):
        bookings.confirm_booking(db, landlord, str(booking["_id"]))

        with pytest.raises(InvalidTransition):
            bookings.confirm_booking(db, landlord, str(booking["_id"]))

    def test_only_the_landlord_confirms(self, db, renter, booking):
        with pytest.raises(Forbidden):
            bookings.confirm_booking(db, renter, str(booking["_id"]))

    def test_lost_race_is_reported(self, db, landlord, booking):
        stale = db[BOOKINGS].find_one({"_id": booking["_id"]})
        bookings.confirm_booking(db, landlord, str(booking["_id"]))

        with pytest.raises(InvalidTransition):
            bookings._transition(db, stale, "rejected", {"rejected_by": landlord.id})
        assert db[BOOKINGS].find_one({"_id": booking["_id"]})["booking_status"] == "confirmed"

    def test_cancel_confirmed_frees_the_property(self, db, landlord, renter, booking, listing):
        bookings.confirm_booking(db, landlord, str(booking["_id"]))

        cancelled = bookings.cancel_booking(db, renter, str(booking["_id"]), "Plans changed")

        assert cancelled["booking_status"] == "cancelled"
        assert cancelled["cancellation_reason"] == "Plans changed"
        assert property_status(db, listing) == "available"

    def test_cancel_pending_makes_property_available(self, db, renter, booking, listing):
        bookings.create_booking(db, renter, request_for(listing))
        db[PROPERTIES].update_one({"_id": listing["_id"]}, {"$set": {"status": "maintenance"}})

        cancelled = bookings.cancel_booking(db, renter, str(booking["_id"]))

        assert cancelled["booking_status"] == "cancelled"
        assert cancelled["property_sync"] == {"status": "available", "applied": True}
        assert property_status(db, listing) == "available"

    def test_stranger_cannot_cancel(self, db, other_renter, booking):
        with pytest.raises(Forbidden):
            bookings.cancel_booking(db, other_renter, str(booking["_id"]))

    def test_reject_uses_default_reason(self, db, landlord, booking, listing):
        rejected = bookings.reject_booking(db, landlord, str(booking["_id"]))

        assert rejected["booking_status"] == "rejected"
        assert rejected["rejection_reason"] == "Rejected by landlord"
        assert property_status(db, listing) == "available"

    def test_complete_returns_property_to_market(self, db, landlord, booking, listing):
        bookings.confirm_booking(db, landlord, str(booking["_id"]))

        completed = bookings.complete_booking(db, landlord, str(booking["_id"]))

        assert completed["booking_status"] == "completed"
        assert completed["completed_at"] is not None
        assert property_status(db, listing) == "available"

    def test_pending_cannot_complete(self, db, landlord, booking):
        with pytest.raises(InvalidTransition):
            bookings.complete_booking(db, landlord, str(booking["_id"]))

    @pytest.mark.parametrize("terminal", ["cancelled", "completed", "rejected"])
    def test_terminal_states_have_no_exits(self, terminal):
        for target in ("pending", "confirmed", "cancelled", "completed", "rejected"):
            assert not bookings.can_transition(terminal, target)


class TestPropertySync:
    def test_reconcile_applies_leftovers(self, db, landlord, booking, listing):
        db[BOOKINGS].update_one(
            {"_id": booking["_id"]},
            {"$set": {"booking_status": "confirmed", "property_sync": {"status": "rented", "applied": False}}},
        )

        assert bookings.reconcile_property_sync(db) == 1
        assert property_status(db, listing) == "rented"
        assert db[BOOKINGS].find_one({"_id": booking["_id"]})["property_sync"]["applied"] is True
        assert bookings.reconcile_property_sync(db) == 0


class TestPayments:
    """Accrual of payments against a booking"""

    def test_partial_then_completed(self, db, renter, booking):
        bid = str(booking["_id"])

        first = bookings.record_payment(db, renter, bid, 3000, "upi")
        assert first["paid_amount"] == 3000
        assert first["payment_status"] == "partial"

        second = bookings.record_payment(db, renter, bid, 4000, "card", "TXN-OWN-1")
        assert second["paid_amount"] == 7000
        assert second["payment_status"] == "partial"
        assert second["transaction_id"] == "TXN-OWN-1"

        final = bookings.record_payment(db, renter, bid, 343000, "netbanking")
        assert final["paid_amount"] == 350000
        assert final["payment_status"] == "completed"

    def test_completed_never_regresses(self, db, renter, booking):
        bid = str(booking["_id"])
        bookings.record_payment(db, renter, bid, 350000, "upi")

        extra = bookings.record_payment(db, renter, bid, 100, "upi")

        assert extra["paid_amount"] == 350100
        assert extra["payment_status"] == "completed"

    def test_payment_after_cancel_rejected(self, db, renter, booking):
        bookings.cancel_booking(db, renter, str(booking["_id"]))

        with pytest.raises(InvalidTransition):
            bookings.record_payment(db, renter, str(booking["_id"]), 1000, "upi")

    @pytest.mark.parametrize("amount,method", [(0, "upi"), (-5, "upi"), (100, "cheque")])
    def test_invalid_payment(self, db, renter, booking, amount, method):
        with pytest.raises(ValidationError):
            bookings.record_payment(db, renter, str(booking["_id"]), amount, method)

    def test_only_the_renter_pays(self, db, landlord, booking):
        with pytest.raises(Forbidden):
            bookings.record_payment(db, landlord, str(booking["_id"]), 100, "upi")


class TestReads:
    def test_parties_see_populated_booking(self, db, renter, landlord, booking):
        for caller in (renter, landlord):
            doc = bookings.get_booking(db, caller, str(booking["_id"]))
            assert doc["property"]["name"] == "Sea View Flat"
            assert doc["renter"]["email"] == "ravi@rentbase.in"
            assert doc["landlord"]["email"] == "lata@rentbase.in"
            assert "favorited_by" not in doc["property"]

    def test_outsider_cannot_read(self, db, other_renter, booking):
        with pytest.raises(Forbidden):
            bookings.get_booking(db, other_renter, str(booking["_id"]))

    def test_admin_can_read(self, db, admin, booking):
        assert bookings.get_booking(db, admin, str(booking["_id"]))["_id"] == booking["_id"]

    def test_lists(self, db, renter, other_renter, landlord, listing, booking):
        assert len(bookings.list_renter_bookings(db, renter)) == 1
        assert bookings.list_renter_bookings(db, other_renter) == []
        assert len(bookings.list_landlord_bookings(db, landlord)) == 1
        assert len(bookings.list_property_bookings(db, landlord, str(listing["_id"]))) == 1

    def test_renter_cannot_list_property_bookings(self, db, renter, listing, booking):
        with pytest.raises(Forbidden):
            bookings.list_property_bookings(db, renter, str(listing["_id"]))
