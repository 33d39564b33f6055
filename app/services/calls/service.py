"""
CallBookingService: metered audio/video calls on the Booking row.

call_status: scheduled|ready_to_call -> ringing -> connecting -> in_call -> completed,
with missed and cancelled branches. The customer's hold covers up to
`call_max_hold_minutes`; on hang-up the call is billed per started minute
(minimum one) and the unused remainder is refunded in the same transaction.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Iterable
from uuid import uuid4

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    BookingError,
    InsufficientFunds,
    InvalidState,
    Unauthorized,
    ValidationError,
)
from app.db.session import atomic
from app.models.booking import Booking
from app.services.audit.service import AuditService
from app.services.auth.actor import Actor
from app.services.bookings.common import get_offering, guarded, load_booking, require_party
from app.services.bookings.tokens import new_call_room_id, new_peer_id
from app.services.notifications.events import (
    CallAccepted,
    CallDeclined,
    CallEnded,
    CallMissed,
    IncomingCall,
)
from app.services.notifications.service import NotificationService
from app.services.wallet.service import WalletService
from app.utils.currency import format_amount
from app.utils.metrics import call_duration_minutes, record_transition
from app.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

CALL_TYPES = ("audio", "video")
NOT_STARTED = ("ringing", "connecting")


def billable_minutes(elapsed_seconds: int) -> int:
    """Every started minute is billed; a call always costs at least one minute."""
    return max(1, math.ceil(max(0, elapsed_seconds) / 60))


def _elapsed_seconds(started_at: datetime | None, until: datetime) -> int:
    if started_at is None:
        return 0
    return max(0, int((until - as_utc(started_at)).total_seconds()))


class CallBookingService:
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
    # Create
    # ------------------------------------------------------------------

    @guarded("create_call")
    def create_call_booking(
        self,
        actor: Actor,
        service_offering_id: str,
        call_type: str,
        scheduled_time: datetime | None = None,
        now: datetime | None = None,
    ) -> Booking:
        """Hold min(balance, rate * call_max_hold_minutes) and open a call room."""
        now = now or utcnow()
        if actor.kind != "customer":
            raise Unauthorized("Only customers can book calls!")
        if call_type not in CALL_TYPES:
            raise ValidationError("Call type must be audio or video!", field="call_type")

        offering = get_offering(self.db, service_offering_id)
        if offering is None or not offering.enabled:
            raise ValidationError("Service not found!", field="service")
        if offering.billing_type != "per_minute":
            raise ValidationError("This service does not support call booking!", field="service")
        rate = offering.minute_rate or 0
        if rate <= 0:
            raise ValidationError("Call service rate not configured!", field="service")

        with atomic(self.db):
            wallet = self.wallet.get_active_wallet("customer", actor.id, for_update=True)
            if wallet.balance < rate:
                raise InsufficientFunds(
                    f"Insufficient balance! You need at least {format_amount(rate)} (1 minute) for this call.",
                    required=rate,
                    balance=wallet.balance,
                )
            hold_amount = min(wallet.balance, rate * settings.call_max_hold_minutes)
            initial = "scheduled" if scheduled_time else "ready_to_call"

            booking = Booking(
                id=str(uuid4()),
                customer_id=actor.id,
                model_id=offering.model_id,
                service_offering_id=offering.id,
                price=hold_amount,
                hold_amount=hold_amount,
                start_date=scheduled_time or now,
                status=initial,
                payment_status="pending",
                call_type=call_type,
                call_status=initial,
                call_room_id=new_call_room_id(),
                customer_peer_id=new_peer_id("customer"),
                scheduled_call_time=scheduled_time,
            )
            self.db.add(booking)
            self.db.flush()

            hold = self.wallet.hold(actor.id, hold_amount, booking.id, kind="call_hold")
            booking.hold_transaction_id = hold.id
            booking.payment_status = "held"
            self.db.flush()
            self.audit.log(
                actor,
                "CREATE_CALL_BOOKING",
                "booking",
                booking.id,
                {"call_type": call_type, "hold_amount": hold_amount, "minute_rate": rate},
            )
        logger.info(
            "call_booking_created",
            extra={"booking_id": booking.id, "customer_id": actor.id, "amount": hold_amount},
        )
        return booking

    # ------------------------------------------------------------------
    # Signalling
    # ------------------------------------------------------------------

    @guarded("initiate_call")
    def initiate_call(self, actor: Actor, booking_id: str, now: datetime | None = None) -> Booking:
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id, calls=True)
            require_party(booking, actor, "customer", "initiate")
            self._move(
                booking,
                ("scheduled", "ready_to_call"),
                "ringing",
                model_peer_id=booking.model_peer_id or new_peer_id("model"),
                call_ringing_at=now,
            )
            self.audit.log(actor, "INITIATE_CALL", "booking", booking.id)
            self.notifier.notify_model(
                booking,
                IncomingCall(
                    booking_id=booking.id,
                    customer_id=booking.customer_id,
                    call_type=booking.call_type,
                    room_id=booking.call_room_id,
                    customer_peer_id=booking.customer_peer_id,
                ),
            )
        return booking

    @guarded("accept_call")
    def accept_call(self, actor: Actor, booking_id: str) -> Booking:
        with atomic(self.db):
            booking = load_booking(self.db, booking_id, calls=True)
            require_party(booking, actor, "model", "accept")
            self._move(booking, ("ringing",), "connecting", status="confirmed")
            self.audit.log(actor, "ACCEPT_CALL", "booking", booking.id)
            self.notifier.notify_customer(
                booking,
                CallAccepted(
                    booking_id=booking.id,
                    model_id=booking.model_id,
                    model_peer_id=booking.model_peer_id,
                ),
            )
        return booking

    @guarded("decline_call")
    def decline_call(self, actor: Actor, booking_id: str) -> Booking:
        """Model declines a ringing call; the customer gets the full hold back."""
        with atomic(self.db):
            booking = load_booking(self.db, booking_id, calls=True)
            require_party(booking, actor, "model", "decline")
            self._move(
                booking,
                ("ringing",),
                "cancelled",
                status="rejected",
                payment_status="refunded",
            )
            self._refund_in_full(booking, "Call declined by model")
            self.audit.log(actor, "DECLINE_CALL", "booking", booking.id)
            self.notifier.notify_customer(booking, CallDeclined(booking_id=booking.id, model_id=booking.model_id))
        return booking

    @guarded("start_call_timer")
    def start_call_timer(self, actor: Actor, booking_id: str, now: datetime | None = None) -> Booking:
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id, calls=True)
            require_party(booking, actor, action="start")
            self._move(
                booking,
                ("connecting",),
                "in_call",
                status="in_progress",
                call_started_at=now,
                call_last_heartbeat=now,
            )
            self.audit.log(actor, "START_CALL", "booking", booking.id)
        return booking

    def record_heartbeat(self, actor: Actor, booking_id: str, now: datetime | None = None) -> dict:
        """Keep-alive from either participant. Never moves money."""
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id, calls=True)
            require_party(booking, actor, action="update")
            if booking.call_status != "in_call":
                raise InvalidState("Call is not active!")
            booking.call_last_heartbeat = now
            self.db.flush()
            rate = self._minute_rate(booking)
            elapsed = _elapsed_seconds(booking.call_started_at, now)
            current_cost = min(math.ceil(elapsed / 60) * rate, booking.hold_amount or 0)
            remaining = max(0, (booking.hold_amount or 0) - current_cost)
        return {
            "booking_id": booking.id,
            "current_duration": elapsed,
            "current_cost": current_cost,
            "remaining_balance": remaining,
            "low_balance": remaining < rate * settings.call_low_balance_minutes,
        }

    # ------------------------------------------------------------------
    # Hang-up / settlement
    # ------------------------------------------------------------------

    @guarded("end_call")
    def end_call(
        self,
        actor: Actor,
        booking_id: str,
        now: datetime | None = None,
        billed_until: datetime | None = None,
    ) -> Booking:
        """
        In-call: bill max(1, ceil(seconds / 60)) minutes, capped at the hold,
        release the charge and refund the remainder in one step.
        Ringing or connecting: nothing was delivered, cancel with a full refund.
        """
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id, calls=True)
            if not actor.is_system:
                require_party(booking, actor, action="end")
            if booking.call_status in NOT_STARTED:
                self._move(
                    booking,
                    NOT_STARTED,
                    "cancelled",
                    status="cancelled",
                    payment_status="refunded",
                    call_ended_at=now,
                    ended_by=actor.kind,
                )
                self._refund_in_full(booking, "Call ended before it started")
                self.audit.log(actor, "END_CALL", "booking", booking.id, {"started": False})
                return booking
            if booking.call_status != "in_call":
                raise InvalidState(f"Cannot end call with status: {booking.call_status}")

            rate = self._minute_rate(booking)
            elapsed = _elapsed_seconds(booking.call_started_at, billed_until or now)
            minutes = billable_minutes(elapsed)
            hold_amount = booking.hold_amount or booking.price
            charge = min(minutes * rate, hold_amount)

            self._move(
                booking,
                ("in_call",),
                "completed",
                status="completed",
                payment_status="released",
                call_ended_at=now,
                completed_at=now,
                minutes=minutes,
                price=charge,
                ended_by=actor.kind,
            )
            offering = get_offering(self.db, booking.service_offering_id)
            earning, refund = self.wallet.settle(
                booking.hold_transaction_id,
                booking.model_id,
                booking.customer_id,
                charge,
                booking.id,
                offering.commission_rate if offering else 0,
            )
            booking.release_transaction_id = earning.id
            self.db.flush()

            self.audit.log(
                actor,
                "END_CALL",
                "booking",
                booking.id,
                {
                    "minutes": minutes,
                    "charge": charge,
                    "refund": refund.amount if refund else 0,
                },
            )
            event = CallEnded(booking_id=booking.id, minutes=minutes, cost=charge, ended_by=actor.kind)
            self.notifier.notify_customer(booking, event)
            self.notifier.notify_model(booking, event)

        call_duration_minutes.labels(call_type=booking.call_type).observe(minutes)
        logger.info(
            "call_ended",
            extra={
                "booking_id": booking.id,
                "duration_minutes": minutes,
                "amount": charge,
                "net": earning.amount,
                "commission": earning.commission,
                "refund": refund.amount if refund else 0,
            },
        )
        return booking

    @guarded("handle_missed_call")
    def handle_missed_call(self, actor: Actor, booking_id: str, now: datetime | None = None) -> Booking:
        """Nobody answered: ringing -> missed with a full refund."""
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id, calls=True)
            if not actor.is_system:
                require_party(booking, actor, "customer", "cancel")
            self._move(
                booking,
                ("ringing",),
                "missed",
                status="cancelled",
                payment_status="refunded",
                call_ended_at=now,
                ended_by=actor.kind,
            )
            self._refund_in_full(booking, "Call was not answered")
            self.audit.log(actor, "MISSED_CALL", "booking", booking.id)
            self.notifier.notify_customer(booking, CallMissed(booking_id=booking.id, call_type=booking.call_type))
        return booking

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def process_missed_calls(self, now: datetime | None = None) -> list[dict]:
        """Ringing longer than call_ring_timeout_seconds -> missed."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.call_ring_timeout_seconds)
        ids = self._ids(
            Booking.call_status == "ringing",
            Booking.call_ringing_at.isnot(None),
            Booking.call_ringing_at <= cutoff,
        )
        system = Actor.system()
        return self._sweep(ids, "missed", lambda booking_id: self.handle_missed_call(system, booking_id, now=now))

    def process_stale_calls(self, now: datetime | None = None) -> list[dict]:
        """In-call without a heartbeat for call_heartbeat_timeout_seconds -> ended by system."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.call_heartbeat_timeout_seconds)
        last_seen = func.coalesce(Booking.call_last_heartbeat, Booking.call_started_at)
        rows = (
            self.db.query(Booking.id, last_seen)
            .filter(Booking.call_status == "in_call", last_seen <= cutoff)
            .limit(settings.auto_release_batch_size)
            .all()
        )
        self.db.rollback()
        system = Actor.system()
        last_seen_by_id = {row[0]: row[1] for row in rows}
        return self._sweep(
            list(last_seen_by_id),
            "ended",
            lambda booking_id: self.end_call(
                system,
                booking_id,
                now=now,
                billed_until=as_utc(last_seen_by_id[booking_id]),
            ),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_call_booking(self, actor: Actor, booking_id: str, now: datetime | None = None) -> dict:
        now = now or utcnow()
        booking = load_booking(self.db, booking_id, for_update=False, calls=True)
        require_party(booking, actor, action="view")
        rate = self._minute_rate(booking)
        hold_amount = booking.hold_amount or 0
        current_duration = current_cost = 0
        remaining = hold_amount
        if booking.call_status == "in_call" and booking.call_started_at is not None:
            current_duration = _elapsed_seconds(booking.call_started_at, now)
            current_cost = min(math.ceil(current_duration / 60) * rate, hold_amount)
            remaining = max(0, hold_amount - current_cost)
        return {
            "booking": booking,
            "minute_rate": rate,
            "current_duration": current_duration,
            "current_cost": current_cost,
            "remaining_balance": remaining,
            "max_minutes": hold_amount // rate if rate else 0,
        }

    def customer_call_history(self, actor: Actor, limit: int = 50) -> list[Booking]:
        if actor.kind != "customer":
            raise Unauthorized("Only customers have a customer call history!")
        return self._history(Booking.customer_id == actor.id, limit)

    def model_call_history(self, actor: Actor, limit: int = 50) -> list[Booking]:
        if actor.kind != "model":
            raise Unauthorized("Only models have a model call history!")
        return self._history(Booking.model_id == actor.id, limit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _history(self, owner_filter, limit: int) -> list[Booking]:
        return (
            self.db.query(Booking)
            .filter(owner_filter, Booking.call_type.isnot(None))
            .order_by(Booking.created_at.desc())
            .limit(limit)
            .all()
        )

    def _ids(self, *criteria) -> list[str]:
        ids = [
            row.id
            for row in self.db.query(Booking.id)
            .filter(Booking.call_type.isnot(None), *criteria)
            .limit(settings.auto_release_batch_size)
            .all()
        ]
        self.db.rollback()
        return ids

    def _sweep(self, ids: list[str], outcome: str, handler) -> list[dict]:
        results = []
        for booking_id in ids:
            try:
                handler(booking_id)
            except BookingError as e:
                logger.warning(
                    "call_sweep_failed",
                    extra={"booking_id": booking_id, "error_code": e.code, "error": e.message},
                )
                results.append({"booking_id": booking_id, "status": "failed", "error": e.message})
                continue
            except SQLAlchemyError as e:
                logger.exception("call_sweep_error", extra={"booking_id": booking_id})
                results.append({"booking_id": booking_id, "status": "failed", "error": str(e)})
                continue
            results.append({"booking_id": booking_id, "status": outcome, "error": None})
        return results

    def _minute_rate(self, booking: Booking) -> int:
        offering = get_offering(self.db, booking.service_offering_id)
        return offering.minute_rate if offering else 0

    def _move(self, booking: Booking, from_call_statuses: Iterable[str], to_call_status: str, **values) -> None:
        """Compare-and-set on call_status; `values` may also move status/payment_status."""
        from_call_statuses = tuple(from_call_statuses)
        if booking.call_status not in from_call_statuses:
            raise InvalidState(
                f"Cannot move call from '{booking.call_status}' to '{to_call_status}'!",
                call_status=booking.call_status,
            )
        from_status = booking.call_status
        result = self.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.call_status.in_(from_call_statuses))
            .values(call_status=to_call_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.refresh(booking)
            raise InvalidState(
                f"Cannot move call from '{booking.call_status}' to '{to_call_status}'!",
                call_status=booking.call_status,
            )
        self.db.refresh(booking)
        record_transition("call", to_call_status)
        logger.info(
            f"call_{to_call_status}",
            extra={"booking_id": booking.id, "from_status": from_status, "to_status": to_call_status},
        )

    def _refund_in_full(self, booking: Booking, reason: str) -> int:
        if not booking.hold_transaction_id:
            return 0
        amount = booking.hold_amount or booking.price
        self.wallet.refund(
            booking.hold_transaction_id,
            booking.customer_id,
            amount,
            booking.id,
            reason,
            kind="call_refund",
        )
        return amount
