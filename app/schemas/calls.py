from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

from app.schemas.bookings import BookingOut


class CallCreateIn(BaseModel):
    service_offering_id: str
    call_type: Literal["audio", "video"]
    scheduled_time: datetime | None = None


class CallBookingOut(BookingOut):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    call_type: str
    call_status: str | None = None
    call_room_id: str | None = None
    customer_peer_id: str | None = None
    model_peer_id: str | None = None
    scheduled_call_time: datetime | None = None
    call_ringing_at: datetime | None = None
    call_started_at: datetime | None = None
    call_ended_at: datetime | None = None
    hold_amount: int | None = None
    minutes: int | None = None
    ended_by: str | None = None


class CallDetailOut(BaseModel):
    booking: CallBookingOut
    minute_rate: int
    current_duration: int
    current_cost: int
    remaining_balance: int
    max_minutes: int


class HeartbeatOut(BaseModel):
    booking_id: str
    current_duration: int
    current_cost: int
    remaining_balance: int
    low_balance: bool
