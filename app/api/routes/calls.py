"""Call-booking routes: signalling, heartbeat and hang-up."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_actor
from app.db.session import get_db
from app.schemas.calls import CallBookingOut, CallCreateIn, CallDetailOut, HeartbeatOut
from app.services.auth.actor import Actor
from app.services.calls.service import CallBookingService

router = APIRouter(prefix="/calls", tags=["calls"])


@router.post("", response_model=CallBookingOut, status_code=status.HTTP_201_CREATED)
def create_call(body: CallCreateIn, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).create_call_booking(
        actor, body.service_offering_id, body.call_type, scheduled_time=body.scheduled_time
    )


@router.get("", response_model=list[CallBookingOut])
def call_history(limit: int = 50, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    svc = CallBookingService(db)
    limit = max(1, min(limit, 100))
    if actor.kind == "model":
        return svc.model_call_history(actor, limit=limit)
    return svc.customer_call_history(actor, limit=limit)


@router.get("/{booking_id}", response_model=CallDetailOut)
def get_call(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).get_call_booking(actor, booking_id)


@router.post("/{booking_id}/initiate", response_model=CallBookingOut)
def initiate_call(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).initiate_call(actor, booking_id)


@router.post("/{booking_id}/accept", response_model=CallBookingOut)
def accept_call(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).accept_call(actor, booking_id)


@router.post("/{booking_id}/decline", response_model=CallBookingOut)
def decline_call(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).decline_call(actor, booking_id)


@router.post("/{booking_id}/start", response_model=CallBookingOut)
def start_call(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).start_call_timer(actor, booking_id)


@router.post("/{booking_id}/heartbeat", response_model=HeartbeatOut)
def heartbeat(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).record_heartbeat(actor, booking_id)


@router.post("/{booking_id}/end", response_model=CallBookingOut)
def end_call(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).end_call(actor, booking_id)


@router.post("/{booking_id}/missed", response_model=CallBookingOut)
def missed_call(booking_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return CallBookingService(db).handle_missed_call(actor, booking_id)
