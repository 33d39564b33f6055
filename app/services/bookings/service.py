"""
BookingService: the date-booking state machine.

pending -> confirmed -> in_progress -> awaiting_confirmation -> completed
pending|confirmed -> cancelled, pending -> rejected, awaiting_confirmation -> disputed.

Each public operation is one unit of work: row lock, guards, ledger call,
compare-and-set status update, audit row and outbox notification, one commit.
Confirmation, dispute and auto-release live in app.services.completion.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    AlreadyCheckedIn,
    AlreadyCompleted,
    CancellationWindowClosed,
    InvalidState,
    TooEarly,
    Unauthorized,
    ValidationError,
)
from app.db.session import atomic
from app.models.booking import (
    DELETABLE_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    Booking,
)
from app.services.audit.service import AuditService
from app.services.auth.actor import Actor
from app.services.bookings.common import (
    get_offering,
    guarded,
    load_booking,
    require_party,
    transition,
    update_fields,
)
from app.services.bookings.tokens import new_completion_token
from app.services.checkin import gate
from app.services.notifications.events import (
    BookingCancelled,
    BookingCompleted,
    BookingConfirmed,
    BookingCreated,
    BookingEdited,
    BookingRejected,
    CustomerCheckedIn,
    ModelCheckedIn,
    PaymentRefunded,
)
from app.services.notifications.service import NotificationService
from app.services.wallet.service import WalletService
from app.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "start_date",
    "end_date",
    "day_amount",
    "location",
    "location_lat",
    "location_lng",
    "preferred_attire",
)


def _validate_schedule(start_date: datetime | None, end_date: datetime | None) -> None:
    if start_date is None:
        raise ValidationError("Start date is required!", field="start_date")
    if end_date is not None and as_utc(end_date) <= as_utc(start_date):
        raise ValidationError("End date must be after the start date!", field="end_date")


def _validate_coordinates(lat: float | None, lng: float | None) -> None:
    if (lat is None) != (lng is None):
        raise ValidationError("Both latitude and longitude are required!", field="location")
    if lat is not None and not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError("Invalid coordinates", field="location")


class BookingService:
    def __init__(
        self,
        db: Session,
        wallet: WalletService | None = None,
        notifier: NotificationService | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.db = db
        self.wallet = wallet or WalletService(db)
        self.notifier = notifier or NotificationService(db)
        self.audit = audit or AuditService(db)

    # ------------------------------------------------------------------
    # Create / edit
    # ------------------------------------------------------------------

    @guarded("create")
    def create(
        self,
        actor: Actor,
        model_id: str,
        service_offering_id: str,
        price: int,
        start_date: datetime | None,
        end_date: datetime | None = None,
        day_amount: int | None = None,
        location: str | None = None,
        location_lat: float | None = None,
        location_lng: float | None = None,
        preferred_attire: str | None = None,
    ) -> Booking:
        """Create a pending date booking and hold `price` from the customer's wallet."""
        if actor.kind != "customer":
            raise Unauthorized("Only customers can create bookings!")
        if not isinstance(price, int) or price <= 0:
            raise ValidationError("Price must be a positive amount!", field="price")
        _validate_schedule(start_date, end_date)
        _validate_coordinates(location_lat, location_lng)

        offering = get_offering(self.db, service_offering_id)
        if offering is None or not offering.enabled or offering.model_id != model_id:
            raise ValidationError("This service is not available!", field="service")
        if offering.billing_type != "per_session":
            raise ValidationError("This service is booked as a call!", field="service")

        with atomic(self.db):
            booking = Booking(
                id=str(uuid4()),
                customer_id=actor.id,
                model_id=model_id,
                service_offering_id=offering.id,
                price=price,
                day_amount=day_amount,
                location=location,
                location_lat=location_lat,
                location_lng=location_lng,
                preferred_attire=preferred_attire,
                start_date=start_date,
                end_date=end_date,
                status="pending",
                payment_status="pending",
            )
            self.db.add(booking)
            self.db.flush()

            hold = self.wallet.hold(actor.id, price, booking.id, kind="booking_hold")
            booking.hold_transaction_id = hold.id
            booking.payment_status = "held"
            self.db.flush()

            self.audit.log(actor, "CREATE_BOOKING", "booking", booking.id, {"price": price})
            self.notifier.notify_model(
                booking,
                BookingCreated(
                    booking_id=booking.id,
                    customer_id=actor.id,
                    service_name=offering.name,
                    price=price,
                    start_date=start_date,
                    location=location,
                ),
            )
        logger.info(
            "booking_created",
            extra={
                "booking_id": booking.id,
                "customer_id": actor.id,
                "model_id": model_id,
                "amount": price,
            },
        )
        return booking

    @guarded("edit")
    def edit(self, actor: Actor, booking_id: str, **changes) -> Booking:
        """Change schedule/location/attire of a pending booking. The held price never changes."""
        unknown = set(changes) - set(EDITABLE_FIELDS) - {"price"}
        if unknown:
            raise ValidationError(f"Cannot edit: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            require_party(booking, actor, "customer", "edit")
            if booking.status != "pending":
                raise InvalidState("Only pending bookings can be edited!")
            price = changes.pop("price", None)
            if price is not None and price != booking.price:
                raise ValidationError("Price cannot be changed after payment is held!", field="price")

            start_date = changes.get("start_date", booking.start_date)
            end_date = changes.get("end_date", booking.end_date)
            _validate_schedule(start_date, end_date)
            _validate_coordinates(
                changes.get("location_lat", booking.location_lat),
                changes.get("location_lng", booking.location_lng),
            )
            if not changes:
                return booking

            update_fields(self.db, booking, ("pending",), **changes)
            self.audit.log(actor, "EDIT_BOOKING", "booking", booking.id, {"fields": sorted(changes)})
            offering = get_offering(self.db, booking.service_offering_id)
            self.notifier.notify_model(
                booking,
                BookingEdited(
                    booking_id=booking.id,
                    customer_id=booking.customer_id,
                    service_name=offering.name if offering else "",
                    start_date=booking.start_date,
                    location=booking.location,
                ),
            )
        return booking

    # ------------------------------------------------------------------
    # Model decision
    # ------------------------------------------------------------------

    @guarded("accept")
    def accept(self, actor: Actor, booking_id: str) -> Booking:
        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            require_party(booking, actor, "model", "accept")
            if booking.status != "pending":
                raise InvalidState("Only pending bookings can be accepted!")
            transition(self.db, booking, ("pending",), "confirmed")
            self.audit.log(actor, "ACCEPT_BOOKING", "booking", booking.id)
            offering = get_offering(self.db, booking.service_offering_id)
            self.notifier.notify_customer(
                booking,
                BookingConfirmed(
                    booking_id=booking.id,
                    model_id=booking.model_id,
                    service_name=offering.name if offering else "",
                    start_date=booking.start_date,
                ),
            )
        return booking

    @guarded("reject")
    def reject(self, actor: Actor, booking_id: str, reason: str | None = None) -> Booking:
        """Reject a pending booking and refund the full hold."""
        reason = (reason or "").strip() or None
        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            require_party(booking, actor, "model", "reject")
            if booking.status != "pending":
                raise InvalidState("Only pending bookings can be rejected!")
            transition(
                self.db,
                booking,
                ("pending",),
                "rejected",
                reject_reason=reason,
                payment_status="refunded",
            )
            self._refund_hold(booking, "Booking rejected by model")
            self.audit.log(actor, "REJECT_BOOKING", "booking", booking.id, {"reason": reason})
            offering = get_offering(self.db, booking.service_offering_id)
            self.notifier.notify_customer(
                booking,
                BookingRejected(
                    booking_id=booking.id,
                    model_id=booking.model_id,
                    service_name=offering.name if offering else "",
                    reason=reason,
                ),
            )
        return booking

    # ------------------------------------------------------------------
    # Customer cancel / delete
    # ------------------------------------------------------------------

    @guarded("cancel")
    def cancel(self, actor: Actor, booking_id: str, now: datetime | None = None) -> Booking:
        """Cancel a pending or confirmed booking at least `cancellation_cutoff_hours` before start."""
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            require_party(booking, actor, "customer", "cancel")
            if booking.status not in ("pending", "confirmed"):
                raise InvalidState("Only pending or confirmed bookings can be cancelled!")
            hours_until_start = (as_utc(booking.start_date) - now).total_seconds() / 3600
            if hours_until_start < settings.cancellation_cutoff_hours:
                raise CancellationWindowClosed(
                    f"Bookings cannot be cancelled less than "
                    f"{settings.cancellation_cutoff_hours} hours before the start time!"
                )
            transition(
                self.db,
                booking,
                ("pending", "confirmed"),
                "cancelled",
                payment_status="refunded",
            )
            refunded = self._refund_hold(booking, "Booking cancelled by customer")
            self.audit.log(actor, "CANCEL_BOOKING", "booking", booking.id)
            offering = get_offering(self.db, booking.service_offering_id)
            self.notifier.notify_model(
                booking,
                BookingCancelled(
                    booking_id=booking.id,
                    customer_id=booking.customer_id,
                    service_name=offering.name if offering else "",
                    start_date=booking.start_date,
                ),
            )
            if refunded:
                self.notifier.notify_customer(
                    booking,
                    PaymentRefunded(booking_id=booking.id, amount=refunded, reason="Booking cancelled"),
                )
        return booking

    @guarded("delete")
    def delete(self, actor: Actor, booking_id: str) -> None:
        """Delete a finished booking whose payment is settled. Owners only."""
        with atomic(self.db):
            booking = load_booking(self.db, booking_id, calls=None)
            require_party(booking, actor, action="delete")
            if booking.status not in DELETABLE_STATUSES:
                raise InvalidState("Only cancelled, rejected, or completed bookings can be deleted!")
            if booking.payment_status not in TERMINAL_PAYMENT_STATUSES:
                raise InvalidState("Bookings with an unsettled payment cannot be deleted!")
            self.audit.log(actor, "DELETE_BOOKING", "booking", booking.id, {"status": booking.status})
            self.db.delete(booking)
        logger.info("booking_deleted", extra={"booking_id": booking_id, "actor_kind": actor.kind})

    # ------------------------------------------------------------------
    # Check-in / complete
    # ------------------------------------------------------------------

    @guarded("check_in")
    def check_in(
        self,
        actor: Actor,
        booking_id: str,
        lat: float,
        lng: float,
        now: datetime | None = None,
    ) -> dict:
        """
        Record the caller's arrival. When both parties are in, the booking
        moves to in_progress. Returns {booking, distance_m, both_checked_in}.
        """
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            require_party(booking, actor, action="check in to")
            if booking.status not in ("confirmed", "in_progress"):
                raise InvalidState("Check-in is only possible for confirmed bookings!")

            distance_m = gate.admit(booking, actor.kind, lat, lng, now)

            if actor.kind == "model":
                values = {
                    "model_checked_in_at": now,
                    "model_check_in_lat": lat,
                    "model_check_in_lng": lng,
                }
                own_column = Booking.model_checked_in_at
            else:
                values = {
                    "customer_checked_in_at": now,
                    "customer_check_in_lat": lat,
                    "customer_check_in_lng": lng,
                }
                own_column = Booking.customer_checked_in_at

            if self._mark_checked_in(booking, own_column, values) != 1:
                raise AlreadyCheckedIn("You have already checked in for this booking!")
            both_in = booking.model_checked_in_at is not None and booking.customer_checked_in_at is not None
            if both_in and booking.status == "confirmed":
                transition(self.db, booking, ("confirmed",), "in_progress")

            self.audit.log(
                actor,
                f"{actor.kind.upper()}_CHECK_IN",
                "booking",
                booking.id,
                {"distance_m": distance_m},
            )
            if actor.kind == "model":
                self.notifier.notify_customer(
                    booking,
                    ModelCheckedIn(booking_id=booking.id, model_id=actor.id, both_checked_in=both_in),
                )
            else:
                self.notifier.notify_model(
                    booking,
                    CustomerCheckedIn(booking_id=booking.id, customer_id=actor.id, both_checked_in=both_in),
                )
        logger.info(
            "booking_checked_in",
            extra={
                "booking_id": booking.id,
                "actor_kind": actor.kind,
                "distance_m": distance_m,
                "to_status": booking.status,
            },
        )
        return {"booking": booking, "distance_m": distance_m, "both_checked_in": both_in}

    def _mark_checked_in(self, booking: Booking, own_column, values: dict) -> int:
        result = self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking.id,
                Booking.status.in_(("confirmed", "in_progress")),
                own_column.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(booking)
        return result.rowcount

    @guarded("complete")
    def complete(self, actor: Actor, booking_id: str, now: datetime | None = None) -> Booking:
        """
        Model marks the service delivered: opens the confirmation window with a
        single-use completion token. Money does not move here.
        """
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            require_party(booking, actor, "model", "complete")
            if booking.status in ("awaiting_confirmation", "completed"):
                raise AlreadyCompleted("This booking has already been marked as completed!")
            if booking.status not in ("in_progress", "confirmed"):
                raise InvalidState("Only in-progress or confirmed bookings can be marked as completed!")
            if now < as_utc(booking.start_date):
                raise TooEarly("Cannot complete booking before the scheduled date!")

            window = timedelta(hours=settings.confirmation_window_hours)
            transition(
                self.db,
                booking,
                ("in_progress", "confirmed"),
                "awaiting_confirmation",
                payment_status="pending_release",
                model_completed_at=now,
                completion_token=new_completion_token(),
                completion_token_expires_at=now + window,
                auto_release_at=now + window,
            )
            self.audit.log(actor, "COMPLETE_BOOKING", "booking", booking.id)
            offering = get_offering(self.db, booking.service_offering_id)
            self.notifier.notify_customer(
                booking,
                BookingCompleted(
                    booking_id=booking.id,
                    model_id=booking.model_id,
                    service_name=offering.name if offering else "",
                    price=booking.price,
                    auto_release_at=now + window,
                ),
            )
        return booking

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_for_customer(self, actor: Actor, status: str | None = None, limit: int = 50) -> list[Booking]:
        if actor.kind != "customer":
            raise Unauthorized("Only customers have customer bookings!")
        q = self.db.query(Booking).filter(Booking.customer_id == actor.id, Booking.call_type.is_(None))
        if status:
            q = q.filter(Booking.status == status)
        return q.order_by(Booking.created_at.desc()).limit(limit).all()

    def list_for_model(self, actor: Actor, status: str | None = None, limit: int = 50) -> list[Booking]:
        if actor.kind != "model":
            raise Unauthorized("Only models have model bookings!")
        q = self.db.query(Booking).filter(Booking.model_id == actor.id, Booking.call_type.is_(None))
        if status:
            q = q.filter(Booking.status == status)
        return q.order_by(Booking.created_at.desc()).limit(limit).all()

    def get_detail(self, actor: Actor, booking_id: str) -> Booking:
        booking = load_booking(self.db, booking_id, for_update=False, calls=None)
        require_party(booking, actor, action="view")
        return booking

    def pending_count(self, actor: Actor) -> int:
        if actor.kind != "model":
            raise Unauthorized("Only models have pending requests!")
        return (
            self.db.query(func.count(Booking.id))
            .filter(
                Booking.model_id == actor.id,
                Booking.status == "pending",
                Booking.call_type.is_(None),
            )
            .scalar()
        )

    def check_in_status(self, actor: Actor, booking_id: str, now: datetime | None = None) -> dict:
        now = now or utcnow()
        booking = self.get_detail(actor, booking_id)
        hours_until_release = None
        if booking.auto_release_at is not None:
            remaining = (as_utc(booking.auto_release_at) - now).total_seconds() / 3600
            hours_until_release = max(0, math.ceil(remaining))
        return {
            "booking_id": booking.id,
            "status": booking.status,
            "model_checked_in": booking.model_checked_in_at is not None,
            "customer_checked_in": booking.customer_checked_in_at is not None,
            "model_checked_in_at": booking.model_checked_in_at,
            "customer_checked_in_at": booking.customer_checked_in_at,
            "hours_until_auto_release": hours_until_release,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _refund_hold(self, booking: Booking, reason: str) -> int:
        """Refund the booking's hold in full; returns the refunded amount (0 if nothing held)."""
        if not booking.hold_transaction_id:
            return 0
        hold = self.wallet.get_transaction(booking.hold_transaction_id)
        amount = hold.held_amount if hold is not None else booking.price
        self.wallet.refund(
            booking.hold_transaction_id,
            booking.customer_id,
            amount,
            booking.id,
            reason,
        )
        return amount
