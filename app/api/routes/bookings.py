"""
Date-booking routes. Every handler passes the authenticated actor into the
service; domain errors are turned into JSON by the BookingError handler.
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_actor
from app.db.session import get_db
from app.schemas.bookings import (
    BookingCreateIn,
    BookingEditIn,
    BookingOut,
    CheckInIn,
    CheckInOut,
    CheckInStatusOut,
    CompletionCodeOut,
    DisputeIn,
    PendingCountOut,
    RejectIn,
    TokenConfirmIn,
    TokenPreviewOut,
)
from app.services.auth.actor import Actor
from app.services.bookings.service import BookingService
from app.services.completion.service import CompletionService

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def create_booking(
    body: BookingCreateIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return BookingService(db).create(actor, **body.model_dump())


@router.get("", response_model=list[BookingOut])
def list_bookings(
    status_filter: str | None = Query(None, alias="status"),
    limit: int = 50,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """The caller's own bookings: as customer or as model, depending on the token."""
    svc = BookingService(db)
    limit = max(1, min(limit, 100))
    if actor.kind == "model":
        return svc.list_for_model(actor, status=status_filter, limit=limit)
    return svc.list_for_customer(actor, status=status_filter, limit=limit)


@router.get("/pending-count", response_model=PendingCountOut)
def pending_count(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return {"pending": BookingService(db).pending_count(actor)}


@router.get("/by-token/{token}", response_model=TokenPreviewOut)
def preview_by_token(token: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CompletionService(db).get_booking_by_token(actor, token)


@router.post("/confirm-by-token", response_model=BookingOut)
def confirm_by_token(
    body: TokenConfirmIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return CompletionService(db).confirm_by_token(actor, body.token)


@router.get("/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return BookingService(db).get_detail(actor, booking_id)


@router.patch("/{booking_id}", response_model=BookingOut)
def edit_booking(
    booking_id: str,
    body: BookingEditIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return BookingService(db).edit(actor, booking_id, **body.model_dump(exclude_unset=True))


@router.delete("/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_booking(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    BookingService(db).delete(actor, booking_id)


@router.post("/{booking_id}/accept", response_model=BookingOut)
def accept_booking(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return BookingService(db).accept(actor, booking_id)


@router.post("/{booking_id}/reject", response_model=BookingOut)
def reject_booking(
    booking_id: str,
    body: RejectIn | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return BookingService(db).reject(actor, booking_id, reason=body.reason if body else None)


@router.post("/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return BookingService(db).cancel(actor, booking_id)


@router.post("/{booking_id}/check-in", response_model=CheckInOut)
def check_in(
    booking_id: str,
    body: CheckInIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return BookingService(db).check_in(actor, booking_id, body.lat, body.lng)


@router.get("/{booking_id}/check-in", response_model=CheckInStatusOut)
def check_in_status(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return BookingService(db).check_in_status(actor, booking_id)


@router.post("/{booking_id}/complete", response_model=BookingOut)
def complete_booking(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return BookingService(db).complete(actor, booking_id)


@router.get("/{booking_id}/completion-code", response_model=CompletionCodeOut)
def completion_code(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CompletionService(db).get_booking_with_token(actor, booking_id)


@router.post("/{booking_id}/confirm", response_model=BookingOut)
def confirm_booking(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CompletionService(db).confirm(actor, booking_id)


@router.post("/{booking_id}/dispute", response_model=BookingOut)
def dispute_booking(
    booking_id: str,
    body: DisputeIn,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return CompletionService(db).dispute(actor, booking_id, body.reason)
