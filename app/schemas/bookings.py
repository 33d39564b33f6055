from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BookingCreateIn(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    service_offering_id: str
    price: int
    start_date: datetime | None = None
    end_date: datetime | None = None
    day_amount: int | None = None
    location: str | None = None
    location_lat: float | None = None
    location_lng: float | None = None
    preferred_attire: str | None = None


class BookingEditIn(BaseModel):
    # Only fields the client actually sends are applied (exclude_unset).
    model_config = ConfigDict(extra="forbid")

    start_date: datetime | None = None
    end_date: datetime | None = None
    day_amount: int | None = None
    location: str | None = None
    location_lat: float | None = None
    location_lng: float | None = None
    preferred_attire: str | None = None
    price: int | None = None


class RejectIn(BaseModel):
    reason: str | None = None


class CheckInIn(BaseModel):
    lat: float
    lng: float


class DisputeIn(BaseModel):
    reason: str = Field(default="")


class TokenConfirmIn(BaseModel):
    token: str

    @field_validator("token")
    @classmethod
    def strip_token(cls, v: str) -> str:
        return v.strip()


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: str
    customer_id: str
    model_id: str
    service_offering_id: str
    price: int
    day_amount: int | None = None
    location: str | None = None
    location_lat: float | None = None
    location_lng: float | None = None
    preferred_attire: str | None = None
    start_date: datetime
    end_date: datetime | None = None
    status: str
    payment_status: str
    reject_reason: str | None = None
    model_checked_in_at: datetime | None = None
    customer_checked_in_at: datetime | None = None
    model_completed_at: datetime | None = None
    completed_at: datetime | None = None
    auto_release_at: datetime | None = None
    dispute_reason: str | None = None
    disputed_at: datetime | None = None
    created_at: datetime


class CheckInOut(BaseModel):
    booking: BookingOut
    distance_m: int | None = None
    both_checked_in: bool


class CheckInStatusOut(BaseModel):
    booking_id: str
    status: str
    model_checked_in: bool
    customer_checked_in: bool
    model_checked_in_at: datetime | None = None
    customer_checked_in_at: datetime | None = None
    hours_until_auto_release: int | None = None


class TokenPreviewOut(BaseModel):
    booking: BookingOut
    is_expired: bool
    is_completed: bool


class CompletionCodeOut(BaseModel):
    booking: BookingOut
    completion_token: str
    expires_at: datetime | None = None
    hours_until_auto_release: int | None = None


class PendingCountOut(BaseModel):
    pending: int
