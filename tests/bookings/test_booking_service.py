"""Tests for the date-booking state machine."""
from datetime import timedelta

import pytest

from app.core.exceptions import (
    AlreadyCheckedIn,
    AlreadyCompleted,
    CancellationWindowClosed,
    InsufficientFunds,
    InvalidState,
    OutOfRadius,
    TooEarly,
    Unauthorized,
    ValidationError,
)
from app.models.booking import Booking
from app.models.notification import Notification
from app.models.transaction_history import TransactionHistory
from app.services.audit.service import AuditService
from app.services.bookings.service import BookingService
from app.services.completion.service import CompletionService
from tests.factories import CUSTOMER, MODEL, NOW, balance, book, make_offering

LAT, LNG = 17.9757, 102.6331


def _kinds(db, recipient_kind, recipient_id):
    rows = (
        db.query(Notification)
        .filter(Notification.recipient_kind == recipient_kind, Notification.recipient_id == recipient_id)
        .all()
    )
    return [row.kind for row in rows]


class TestCreate:
    def test_create_holds_price(self, wallets, offering):
        booking = book(wallets, offering)

        assert booking.status == "pending"
        assert booking.payment_status == "held"
        hold = wallets.get(TransactionHistory, booking.hold_transaction_id)
        assert hold.status == "held"
        assert hold.amount == -100_000
        assert hold.booking_id == booking.id
        assert balance(wallets, "customer", "customer-1") == 400_000
        assert _kinds(wallets, "model", "model-1") == ["booking_created"]
        actions = [e.action for e in AuditService(wallets).list_for_entity("booking", booking.id)]
        assert actions == ["CREATE_BOOKING"]

    def test_insufficient_funds_creates_nothing(self, wallets, offering):
        with pytest.raises(InsufficientFunds):
            book(wallets, offering, price=900_000)

        assert wallets.query(Booking).count() == 0
        assert wallets.query(Notification).count() == 0
        assert balance(wallets, "customer", "customer-1") == 500_000

    def test_model_cannot_create(self, wallets, offering):
        with pytest.raises(Unauthorized):
            BookingService(wallets).create(MODEL, "model-1", offering.id, 100_000, NOW + timedelta(days=1))

    def test_offering_of_another_model(self, wallets):
        other = make_offering(wallets, model_id="model-2")
        with pytest.raises(ValidationError) as exc:
            BookingService(wallets).create(CUSTOMER, "model-1", other.id, 100_000, NOW + timedelta(days=1))
        assert exc.value.field == "service"

    def test_call_offering_is_not_a_date(self, wallets, call_offering):
        with pytest.raises(ValidationError):
            book(wallets, call_offering)

    @pytest.mark.parametrize("price", [0, -1, 10.5])
    def test_invalid_price(self, wallets, offering, price):
        with pytest.raises(ValidationError) as exc:
            book(wallets, offering, price=price)
        assert exc.value.field == "price"

    def test_end_before_start(self, wallets, offering):
        start = NOW + timedelta(days=1)
        with pytest.raises(ValidationError) as exc:
            book(wallets, offering, start=start, end_date=start - timedelta(hours=1))
        assert exc.value.field == "end_date"

    def test_half_coordinates(self, wallets, offering):
        with pytest.raises(ValidationError):
            book(wallets, offering, location_lat=LAT)


class TestEdit:
    def test_edit_pending(self, wallets, offering):
        booking = book(wallets, offering)
        edited = BookingService(wallets).edit(CUSTOMER, booking.id, location="Riverside", preferred_attire="casual")

        assert edited.location == "Riverside"
        assert edited.preferred_attire == "casual"
        assert edited.price == 100_000
        assert "booking_edited" in _kinds(wallets, "model", "model-1")

    def test_price_is_immutable(self, wallets, offering):
        booking = book(wallets, offering)
        with pytest.raises(ValidationError) as exc:
            BookingService(wallets).edit(CUSTOMER, booking.id, price=50_000)
        assert exc.value.field == "price"

    def test_unknown_field(self, wallets, offering):
        booking = book(wallets, offering)
        with pytest.raises(ValidationError):
            BookingService(wallets).edit(CUSTOMER, booking.id, status="completed")

    def test_only_pending(self, wallets, offering):
        booking = book(wallets, offering)
        service = BookingService(wallets)
        service.accept(MODEL, booking.id)
        with pytest.raises(InvalidState):
            service.edit(CUSTOMER, booking.id, location="Elsewhere")


class TestModelDecision:
    def test_accept(self, wallets, offering):
        booking = book(wallets, offering)
        accepted = BookingService(wallets).accept(MODEL, booking.id)

        assert accepted.status == "confirmed"
        assert accepted.payment_status == "held"
        assert _kinds(wallets, "customer", "customer-1") == ["booking_confirmed"]

    def test_accept_twice(self, wallets, offering):
        booking = book(wallets, offering)
        service = BookingService(wallets)
        service.accept(MODEL, booking.id)
        with pytest.raises(InvalidState):
            service.accept(MODEL, booking.id)

    def test_customer_cannot_accept(self, wallets, offering):
        booking = book(wallets, offering)
        with pytest.raises(Unauthorized):
            BookingService(wallets).accept(CUSTOMER, booking.id)

    def test_reject_refunds_in_full(self, wallets, offering):
        booking = book(wallets, offering)
        rejected = BookingService(wallets).reject(MODEL, booking.id, "  Not available  ")

        assert rejected.status == "rejected"
        assert rejected.payment_status == "refunded"
        assert rejected.reject_reason == "Not available"
        assert wallets.get(TransactionHistory, booking.hold_transaction_id).status == "refunded"
        assert balance(wallets, "customer", "customer-1") == 500_000
        assert "booking_rejected" in _kinds(wallets, "customer", "customer-1")


class TestCancel:
    def test_cancel_refunds(self, wallets, offering):
        booking = book(wallets, offering)
        service = BookingService(wallets)
        service.accept(MODEL, booking.id)
        cancelled = service.cancel(CUSTOMER, booking.id, now=NOW)

        assert cancelled.status == "cancelled"
        assert cancelled.payment_status == "refunded"
        assert balance(wallets, "customer", "customer-1") == 500_000
        assert "booking_cancelled" in _kinds(wallets, "model", "model-1")
        assert "payment_refunded" in _kinds(wallets, "customer", "customer-1")

    def test_late_cancel_changes_nothing(self, wallets, offering):
        booking = book(wallets, offering, start=NOW + timedelta(hours=1))

        with pytest.raises(CancellationWindowClosed):
            BookingService(wallets).cancel(CUSTOMER, booking.id, now=NOW)

        wallets.expire_all()
        reloaded = wallets.get(Booking, booking.id)
        assert reloaded.status == "pending"
        assert reloaded.payment_status == "held"
        assert wallets.get(TransactionHistory, booking.hold_transaction_id).status == "held"
        assert balance(wallets, "customer", "customer-1") == 400_000

    def test_cutoff_is_inclusive_at_two_hours(self, wallets, offering):
        booking = book(wallets, offering, start=NOW + timedelta(hours=2))
        assert BookingService(wallets).cancel(CUSTOMER, booking.id, now=NOW).status == "cancelled"

    def test_model_cannot_cancel(self, wallets, offering):
        booking = book(wallets, offering)
        with pytest.raises(Unauthorized):
            BookingService(wallets).cancel(MODEL, booking.id, now=NOW)

    def test_cannot_cancel_rejected(self, wallets, offering):
        booking = book(wallets, offering)
        service = BookingService(wallets)
        service.reject(MODEL, booking.id)
        with pytest.raises(InvalidState):
            service.cancel(CUSTOMER, booking.id, now=NOW)


class TestDelete:
    def test_delete_cancelled(self, wallets, offering):
        booking = book(wallets, offering)
        service = BookingService(wallets)
        service.cancel(CUSTOMER, booking.id, now=NOW)
        service.delete(CUSTOMER, booking.id)

        assert wallets.get(Booking, booking.id) is None

    def test_pending_cannot_be_deleted(self, wallets, offering):
        booking = book(wallets, offering)
        with pytest.raises(InvalidState):
            BookingService(wallets).delete(CUSTOMER, booking.id)

    def test_stranger_cannot_delete(self, wallets, offering):
        from app.services.auth.actor import Actor

        booking = book(wallets, offering)
        BookingService(wallets).cancel(CUSTOMER, booking.id, now=NOW)
        with pytest.raises(Unauthorized):
            BookingService(wallets).delete(Actor.for_customer("customer-2"), booking.id)


class TestCheckIn:
    def _confirmed(self, db, offering, **kwargs):
        booking = book(db, offering, start=NOW + timedelta(minutes=15), **kwargs)
        BookingService(db).accept(MODEL, booking.id)
        return booking

    def test_both_parties_move_to_in_progress(self, wallets, offering):
        booking = self._confirmed(wallets, offering, location_lat=LAT, location_lng=LNG)
        service = BookingService(wallets)

        first = service.check_in(MODEL, booking.id, LAT, LNG, now=NOW)
        assert first["both_checked_in"] is False
        assert first["distance_m"] == 0
        assert first["booking"].status == "confirmed"

        second = service.check_in(CUSTOMER, booking.id, LAT + 0.0001, LNG, now=NOW)
        assert second["both_checked_in"] is True
        assert second["booking"].status == "in_progress"
        assert "model_checked_in" in _kinds(wallets, "customer", "customer-1")
        assert "customer_checked_in" in _kinds(wallets, "model", "model-1")

    def test_repeat_check_in(self, wallets, offering):
        booking = self._confirmed(wallets, offering)
        service = BookingService(wallets)
        service.check_in(MODEL, booking.id, LAT, LNG, now=NOW)
        with pytest.raises(AlreadyCheckedIn):
            service.check_in(MODEL, booking.id, LAT, LNG, now=NOW)

    def test_out_of_radius_records_nothing(self, wallets, offering):
        booking = self._confirmed(wallets, offering, location_lat=LAT, location_lng=LNG)
        with pytest.raises(OutOfRadius):
            BookingService(wallets).check_in(CUSTOMER, booking.id, LAT + 0.01, LNG, now=NOW)

        wallets.expire_all()
        assert wallets.get(Booking, booking.id).customer_checked_in_at is None

    def test_pending_booking(self, wallets, offering):
        booking = book(wallets, offering, start=NOW + timedelta(minutes=15))
        with pytest.raises(InvalidState):
            BookingService(wallets).check_in(CUSTOMER, booking.id, LAT, LNG, now=NOW)

    def test_status_view(self, wallets, offering):
        booking = self._confirmed(wallets, offering)
        service = BookingService(wallets)
        service.check_in(MODEL, booking.id, LAT, LNG, now=NOW)

        status = service.check_in_status(CUSTOMER, booking.id, now=NOW)
        assert status["model_checked_in"] is True
        assert status["customer_checked_in"] is False
        assert status["hours_until_auto_release"] is None


class TestComplete:
    def test_complete_opens_confirmation_window(self, wallets, offering):
        booking = book(wallets, offering, start=NOW - timedelta(hours=1))
        service = BookingService(wallets)
        service.accept(MODEL, booking.id)
        completed = service.complete(MODEL, booking.id, now=NOW)

        assert completed.status == "awaiting_confirmation"
        assert completed.payment_status == "pending_release"
        assert completed.completion_token.startswith("xao_")
        assert completed.auto_release_at.replace(tzinfo=None) == (NOW + timedelta(hours=24)).replace(tzinfo=None)
        assert balance(wallets, "model", "model-1") == 0
        assert "booking_completed" in _kinds(wallets, "customer", "customer-1")
        assert service.check_in_status(MODEL, booking.id, now=NOW)["hours_until_auto_release"] == 24

    def test_too_early(self, wallets, offering):
        booking = book(wallets, offering, start=NOW + timedelta(hours=1))
        service = BookingService(wallets)
        service.accept(MODEL, booking.id)
        with pytest.raises(TooEarly, match="before the scheduled date"):
            service.complete(MODEL, booking.id, now=NOW)

    def test_complete_twice(self, wallets, offering):
        booking = book(wallets, offering, start=NOW - timedelta(hours=1))
        service = BookingService(wallets)
        service.accept(MODEL, booking.id)
        service.complete(MODEL, booking.id, now=NOW)
        with pytest.raises(AlreadyCompleted):
            service.complete(MODEL, booking.id, now=NOW)

    def test_pending_cannot_complete(self, wallets, offering):
        booking = book(wallets, offering, start=NOW - timedelta(hours=1))
        with pytest.raises(InvalidState):
            BookingService(wallets).complete(MODEL, booking.id, now=NOW)


class TestHappyPath:
    def test_create_to_confirm(self, wallets, offering):
        start = NOW + timedelta(minutes=10)
        booking = book(wallets, offering, start=start, location_lat=LAT, location_lng=LNG)
        bookings = BookingService(wallets)
        bookings.accept(MODEL, booking.id)
        bookings.check_in(MODEL, booking.id, LAT, LNG, now=NOW)
        bookings.check_in(CUSTOMER, booking.id, LAT, LNG, now=NOW)
        bookings.complete(MODEL, booking.id, now=start + timedelta(hours=2))

        confirmed = CompletionService(wallets).confirm(CUSTOMER, booking.id, now=start + timedelta(hours=3))

        assert confirmed.status == "completed"
        assert confirmed.payment_status == "released"
        assert balance(wallets, "customer", "customer-1") == 400_000
        assert balance(wallets, "model", "model-1") == 80_000
        earning = wallets.get(TransactionHistory, confirmed.release_transaction_id)
        assert earning.commission == 20_000


class TestQueries:
    def test_lists_and_pending_count(self, wallets, offering):
        first = book(wallets, offering)
        book(wallets, offering)
        service = BookingService(wallets)
        service.accept(MODEL, first.id)

        assert service.pending_count(MODEL) == 1
        assert len(service.list_for_customer(CUSTOMER)) == 2
        assert [b.id for b in service.list_for_model(MODEL, status="confirmed")] == [first.id]

    def test_lists_are_role_bound(self, wallets):
        service = BookingService(wallets)
        with pytest.raises(Unauthorized):
            service.pending_count(CUSTOMER)
        with pytest.raises(Unauthorized):
            service.list_for_model(CUSTOMER)

    def test_detail_requires_party(self, wallets, offering):
        from app.services.auth.actor import Actor

        booking = book(wallets, offering)
        with pytest.raises(Unauthorized):
            BookingService(wallets).get_detail(Actor.for_model("model-2"), booking.id)
