"""
Booking aggregate: date bookings and metered call bookings share one row.
call_type is NULL for date bookings and "audio"/"video" for calls.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, Integer, String, Text

from app.db.base import Base

TERMINAL_STATUSES = ("completed", "cancelled", "rejected", "disputed")
DELETABLE_STATUSES = ("completed", "cancelled", "rejected")
TERMINAL_PAYMENT_STATUSES = ("released", "refunded")
LIVE_PAYMENT_STATUSES = ("held", "pending_release")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    customer_id = Column(String, nullable=False, index=True)
    model_id = Column(String, nullable=False, index=True)
    service_offering_id = Column(String, nullable=False, index=True)

    price = Column(Integer, nullable=False)
    day_amount = Column(Integer, nullable=True)
    location = Column(String, nullable=True)
    location_lat = Column(Float, nullable=True)
    location_lng = Column(Float, nullable=True)
    preferred_attire = Column(String, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=True)

    # pending / confirmed / in_progress / awaiting_confirmation / completed / cancelled / rejected / disputed
    # (calls also use scheduled / ready_to_call)
    status = Column(String, nullable=False, default="pending", index=True)
    # pending / held / pending_release / released / refunded
    payment_status = Column(String, nullable=False, default="pending", index=True)
    hold_transaction_id = Column(String, nullable=True)
    release_transaction_id = Column(String, nullable=True)
    reject_reason = Column(Text, nullable=True)

    # Check-in
    model_checked_in_at = Column(DateTime(timezone=True), nullable=True)
    model_check_in_lat = Column(Float, nullable=True)
    model_check_in_lng = Column(Float, nullable=True)
    customer_checked_in_at = Column(DateTime(timezone=True), nullable=True)
    customer_check_in_lat = Column(Float, nullable=True)
    customer_check_in_lng = Column(Float, nullable=True)

    # Completion / escrow window
    model_completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    completion_token = Column(String, nullable=True, unique=True)
    completion_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    auto_release_at = Column(DateTime(timezone=True), nullable=True, index=True)
    dispute_reason = Column(Text, nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)

    # Call bookings
    call_type = Column(String, nullable=True)  # audio / video
    call_status = Column(String, nullable=True, index=True)
    call_room_id = Column(String, nullable=True)
    customer_peer_id = Column(String, nullable=True)
    model_peer_id = Column(String, nullable=True)
    scheduled_call_time = Column(DateTime(timezone=True), nullable=True)
    call_ringing_at = Column(DateTime(timezone=True), nullable=True)
    call_started_at = Column(DateTime(timezone=True), nullable=True)
    call_ended_at = Column(DateTime(timezone=True), nullable=True)
    call_last_heartbeat = Column(DateTime(timezone=True), nullable=True)
    hold_amount = Column(Integer, nullable=True)
    minutes = Column(Integer, nullable=True)
    ended_by = Column(String, nullable=True)  # customer / model / system

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_call(self) -> bool:
        return self.call_type is not None

    @property
    def has_location(self) -> bool:
        return self.location_lat is not None and self.location_lng is not None

    def is_owned_by(self, actor_kind: str, actor_id: str) -> bool:
        if actor_kind == "customer":
            return self.customer_id == actor_id
        if actor_kind == "model":
            return self.model_id == actor_id
        return False
