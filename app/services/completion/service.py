"""
CompletionService: the escrow window.

After the model completes, the customer confirms (directly or by scanning the
completion token) or disputes. If neither happens before auto_release_at, the
sweep releases the payment. Release is net of the offering's commission.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    AlreadyCompleted,
    BookingError,
    InvalidState,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from app.db.session import atomic
from app.models.booking import Booking
from app.services.audit.service import AuditService
from app.services.auth.actor import Actor
from app.services.bookings.common import (
    get_offering,
    guarded,
    load_booking,
    require_party,
    transition,
)
from app.services.notifications.events import (
    BookingAutoCompleted,
    BookingDisputed,
    CompletionConfirmed,
    PaymentReleased,
)
from app.services.notifications.service import NotificationService
from app.services.wallet.service import WalletService
from app.utils.metrics import auto_release_total, bookings_awaiting_confirmation
from app.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)


class CompletionService:
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
    # Confirmation
    # ------------------------------------------------------------------

    @guarded("confirm")
    def confirm(self, actor: Actor, booking_id: str, now: datetime | None = None) -> Booking:
        """Customer confirms delivery; the hold is released to the model."""
        now = now or utcnow()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            require_party(booking, actor, "customer", "confirm")
            self._require_awaiting(booking)
            self._release(booking, actor, now, action="CONFIRM_COMPLETION")
        return booking

    @guarded("confirm_by_token")
    def confirm_by_token(self, actor: Actor, token: str, now: datetime | None = None) -> Booking:
        """Customer scans the model's QR code. The token is single-use and expires."""
        now = now or utcnow()
        with atomic(self.db):
            booking = self._load_by_token(token, for_update=True)
            require_party(booking, actor, "customer", "confirm")
            self._require_awaiting(booking)
            expires_at = as_utc(booking.completion_token_expires_at)
            if expires_at is not None and now > expires_at:
                raise TokenExpired("This completion code has expired!")
            self._release(booking, actor, now, action="CONFIRM_COMPLETION_BY_TOKEN")
        return booking

    # ------------------------------------------------------------------
    # Dispute
    # ------------------------------------------------------------------

    @guarded("dispute")
    def dispute(self, actor: Actor, booking_id: str, reason: str, now: datetime | None = None) -> Booking:
        """Freeze the escrow: no money moves until support resolves it."""
        now = now or utcnow()
        reason = (reason or "").strip()
        if len(reason) < settings.dispute_reason_min_length:
            raise ValidationError(
                f"Please describe the problem in at least {settings.dispute_reason_min_length} characters!",
                field="reason",
            )
        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            require_party(booking, actor, "customer", "dispute")
            self._require_awaiting(booking)
            transition(
                self.db,
                booking,
                ("awaiting_confirmation",),
                "disputed",
                dispute_reason=reason,
                disputed_at=now,
                completion_token=None,
                completion_token_expires_at=None,
            )
            self.audit.log(actor, "DISPUTE_BOOKING", "booking", booking.id, {"reason": reason})
            offering = get_offering(self.db, booking.service_offering_id)
            self.notifier.notify_model(
                booking,
                BookingDisputed(
                    booking_id=booking.id,
                    customer_id=booking.customer_id,
                    service_name=offering.name if offering else "",
                    reason=reason,
                ),
            )
        return booking

    # ------------------------------------------------------------------
    # Auto-release sweep
    # ------------------------------------------------------------------

    def process_auto_release(self, now: datetime | None = None, limit: int | None = None) -> list[dict]:
        """
        Release every booking whose confirmation deadline has passed. Each
        booking is its own transaction; one failure does not stop the sweep.
        """
        now = now or utcnow()
        limit = limit or settings.auto_release_batch_size
        awaiting = (
            self.db.query(func.count(Booking.id))
            .filter(Booking.status == "awaiting_confirmation")
            .scalar()
        )
        bookings_awaiting_confirmation.set(awaiting or 0)
        due_ids = [
            row.id
            for row in self.db.query(Booking.id)
            .filter(
                Booking.status == "awaiting_confirmation",
                Booking.payment_status == "pending_release",
                Booking.auto_release_at.isnot(None),
                Booking.auto_release_at <= now,
            )
            .order_by(Booking.auto_release_at.asc())
            .limit(limit)
            .all()
        ]
        self.db.rollback()

        results = []
        for booking_id in due_ids:
            try:
                self._auto_release_one(booking_id, now)
            except BookingError as e:
                auto_release_total.labels(status="failed").inc()
                logger.warning(
                    "auto_release_failed",
                    extra={"booking_id": booking_id, "error_code": e.code, "error": e.message},
                )
                results.append({"booking_id": booking_id, "status": "failed", "error": e.message})
                continue
            except SQLAlchemyError as e:
                auto_release_total.labels(status="failed").inc()
                logger.exception("auto_release_error", extra={"booking_id": booking_id})
                results.append({"booking_id": booking_id, "status": "failed", "error": str(e)})
                continue
            auto_release_total.labels(status="released").inc()
            results.append({"booking_id": booking_id, "status": "released", "error": None})

        released = sum(1 for r in results if r["status"] == "released")
        logger.info(
            "auto_release_sweep_done",
            extra={"processed": len(results), "released": released, "failed": len(results) - released},
        )
        return results

    def _auto_release_one(self, booking_id: str, now: datetime) -> None:
        system = Actor.system()
        with atomic(self.db):
            booking = load_booking(self.db, booking_id)
            self._require_awaiting(booking)
            if booking.payment_status != "pending_release":
                raise InvalidState("Payment is not awaiting release!")
            deadline = as_utc(booking.auto_release_at)
            if deadline is None or deadline > now:
                raise InvalidState("The confirmation window is still open!")
            net = self._release(booking, system, now, action="AUTO_RELEASE_PAYMENT", auto=True)
            offering = get_offering(self.db, booking.service_offering_id)
            self.notifier.notify_model(
                booking,
                PaymentReleased(
                    booking_id=booking.id,
                    amount=net,
                    service_name=offering.name if offering else None,
                ),
            )
            self.notifier.notify_customer(booking, BookingAutoCompleted(booking_id=booking.id))

    # ------------------------------------------------------------------
    # Token views
    # ------------------------------------------------------------------

    def get_booking_by_token(self, actor: Actor, token: str, now: datetime | None = None) -> dict:
        """Preview for the customer who scanned a QR code."""
        now = now or utcnow()
        booking = self._load_by_token(token, for_update=False)
        require_party(booking, actor, "customer", "view")
        expires_at = as_utc(booking.completion_token_expires_at)
        return {
            "booking": booking,
            "is_expired": expires_at is not None and now > expires_at,
            "is_completed": booking.status == "completed",
        }

    def get_booking_with_token(self, actor: Actor, booking_id: str, now: datetime | None = None) -> dict:
        """The model's view of its completion QR code while the window is open."""
        now = now or utcnow()
        booking = load_booking(self.db, booking_id, for_update=False)
        require_party(booking, actor, "model", "view")
        if booking.status != "awaiting_confirmation" or not booking.completion_token:
            raise InvalidState("This booking has no active completion code!")
        hours_left = None
        if booking.auto_release_at is not None:
            remaining = (as_utc(booking.auto_release_at) - now).total_seconds() / 3600
            hours_left = max(0, math.ceil(remaining))
        return {
            "booking": booking,
            "completion_token": booking.completion_token,
            "expires_at": booking.completion_token_expires_at,
            "hours_until_auto_release": hours_left,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_by_token(self, token: str, for_update: bool) -> Booking:
        if not token or not token.startswith(settings.completion_token_prefix):
            raise TokenInvalid("Invalid completion code!")
        q = self.db.query(Booking).filter(Booking.completion_token == token)
        if for_update:
            q = q.with_for_update().populate_existing()
        booking = q.one_or_none()
        if booking is None:
            raise TokenInvalid("Invalid completion code!")
        return booking

    @staticmethod
    def _require_awaiting(booking: Booking) -> None:
        if booking.status == "completed":
            raise AlreadyCompleted("This booking has already been completed!")
        if booking.status != "awaiting_confirmation":
            raise InvalidState("This booking is not awaiting confirmation!")

    def _release(self, booking: Booking, actor: Actor, now: datetime, action: str, auto: bool = False) -> int:
        """Status CAS first, then the ledger release. Returns the net credited to the model."""
        values = {"payment_status": "released", "completed_at": now}
        if not auto:
            # Redeemed: a replayed token no longer resolves.
            values.update(completion_token=None, completion_token_expires_at=None)
        transition(self.db, booking, ("awaiting_confirmation",), "completed", **values)

        offering = get_offering(self.db, booking.service_offering_id)
        commission_rate = offering.commission_rate if offering else 0
        earning = self.wallet.release(
            booking.hold_transaction_id,
            booking.model_id,
            booking.price,
            booking.id,
            commission_rate,
        )
        booking.release_transaction_id = earning.id
        self.db.flush()

        self.audit.log(
            actor,
            action,
            "booking",
            booking.id,
            {"net": earning.amount, "commission": earning.commission},
        )
        if not auto:
            self.notifier.notify_model(
                booking,
                CompletionConfirmed(
                    booking_id=booking.id,
                    customer_id=booking.customer_id,
                    service_name=offering.name if offering else "",
                    amount=earning.amount,
                ),
            )
        logger.info(
            "booking_payment_released",
            extra={
                "booking_id": booking.id,
                "model_id": booking.model_id,
                "amount": booking.price,
                "net": earning.amount,
                "commission": earning.commission,
            },
        )
        return earning.amount
