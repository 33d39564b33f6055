"""Helpers shared by the date-booking, call-booking and completion services."""
from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.exceptions import BookingError, BookingNotFound, InvalidState, Unauthorized
from app.models.booking import Booking
from app.models.service_offering import ServiceOffering
from app.services.auth.actor import Actor
from app.utils.metrics import booking_guard_failures_total, record_transition

logger = logging.getLogger(__name__)


def guarded(operation: str) -> Callable:
    """Count and log every BookingError raised by the wrapped operation, then re-raise."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except BookingError as e:
                booking_guard_failures_total.labels(operation=operation, code=e.code).inc()
                logger.info(
                    "booking_guard_failed",
                    extra={"operation": operation, "error_code": e.code, "error": e.message},
                )
                raise
        return wrapper
    return decorator


def load_booking(
    db: Session, booking_id: str, for_update: bool = True, calls: bool | None = False
) -> Booking:
    """
    Load a booking (row-locked by default). `calls` narrows to date bookings
    (False), call bookings (True) or either (None).
    """
    q = db.query(Booking).filter(Booking.id == booking_id)
    if calls is True:
        q = q.filter(Booking.call_type.isnot(None))
    elif calls is False:
        q = q.filter(Booking.call_type.is_(None))
    if for_update:
        q = q.with_for_update().populate_existing()
    booking = q.one_or_none()
    if booking is None:
        raise BookingNotFound("The booking does not exist!")
    return booking


def require_party(booking: Booking, actor: Actor, kind: str | None = None, action: str = "access") -> None:
    """Raise Unauthorized unless `actor` owns the booking (optionally as a given kind)."""
    if kind is not None and actor.kind != kind:
        raise Unauthorized(f"Only the {kind} can {action} this booking!")
    if not booking.is_owned_by(actor.kind, actor.id):
        raise Unauthorized(f"Unauthorized to {action} this booking!")


def get_offering(db: Session, offering_id: str) -> ServiceOffering | None:
    return db.query(ServiceOffering).filter(ServiceOffering.id == offering_id).one_or_none()


def transition(
    db: Session,
    booking: Booking,
    from_statuses: Iterable[str],
    to_status: str,
    message: str | None = None,
    **values: Any,
) -> None:
    """
    Compare-and-set booking.status from one of `from_statuses` to `to_status`
    together with any extra column `values`. A lost race raises InvalidState.
    """
    from_statuses = tuple(from_statuses)
    from_status = booking.status
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status.in_(from_statuses))
        .values(status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(booking)
        raise InvalidState(
            message or f"Cannot move booking from '{booking.status}' to '{to_status}'!",
            status=booking.status,
        )
    db.refresh(booking)
    record_transition("call" if booking.is_call else "date", to_status)
    logger.info(
        f"booking_{to_status}",
        extra={
            "booking_id": booking.id,
            "from_status": from_status,
            "to_status": to_status,
        },
    )


def update_fields(db: Session, booking: Booking, expected_status: Iterable[str], **values: Any) -> None:
    """Compare-and-set column update that keeps the current status."""
    expected_status = tuple(expected_status)
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status.in_(expected_status))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(booking)
        raise InvalidState(f"The booking changed concurrently (now '{booking.status}')!", status=booking.status)
    db.refresh(booking)
