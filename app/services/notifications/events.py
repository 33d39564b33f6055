"""
Typed notification events.

Each event is a frozen pydantic model tagged by `kind`. The JSON form is stored
in Notification.data and parsed back through `event_adapter` at dispatch time.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, ClassVar, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from app.utils.currency import format_amount


class BookingEvent(BaseModel):
    booking_id: str

    model_config = {"frozen": True, "protected_namespaces": ()}

    title: ClassVar[str] = ""
    # Also sent by SMS when the gateway is configured
    sms: ClassVar[bool] = False

    def render(self) -> str:
        raise NotImplementedError


def _when(value: datetime | None) -> str:
    return f" on {value:%Y-%m-%d %H:%M}" if value else ""


class BookingCreated(BookingEvent):
    kind: Literal["booking_created"] = "booking_created"
    customer_id: str
    service_name: str
    price: int
    start_date: datetime | None = None
    location: str | None = None

    title: ClassVar[str] = "New Booking Request"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        where = f" at {self.location}" if self.location else ""
        return (
            f'New booking request for your "{self.service_name}" service'
            f"{_when(self.start_date)}{where} ({format_amount(self.price)}). "
            "Please accept or reject it in the app."
        )


class BookingEdited(BookingEvent):
    kind: Literal["booking_edited"] = "booking_edited"
    customer_id: str
    service_name: str
    start_date: datetime | None = None
    location: str | None = None

    title: ClassVar[str] = "Booking Updated"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        where = f" Location: {self.location}." if self.location else ""
        return f'The customer has updated the booking for "{self.service_name}"{_when(self.start_date)}.{where}'


class BookingConfirmed(BookingEvent):
    kind: Literal["booking_confirmed"] = "booking_confirmed"
    model_id: str
    service_name: str
    start_date: datetime | None = None

    title: ClassVar[str] = "Booking Confirmed"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        return (
            f'Your booking for "{self.service_name}"{_when(self.start_date)} has been accepted. '
            "Please check in when you arrive."
        )


class BookingRejected(BookingEvent):
    kind: Literal["booking_rejected"] = "booking_rejected"
    model_id: str
    service_name: str
    reason: str | None = None

    title: ClassVar[str] = "Booking Rejected"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        reason = f" Reason: {self.reason}" if self.reason else ""
        return f'Your booking for "{self.service_name}" was declined.{reason} The payment has been refunded to your wallet.'


class BookingCancelled(BookingEvent):
    kind: Literal["booking_cancelled"] = "booking_cancelled"
    customer_id: str
    service_name: str
    start_date: datetime | None = None

    title: ClassVar[str] = "Booking Cancelled"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        return f'The customer has cancelled the booking for "{self.service_name}"{_when(self.start_date)}.'


class ModelCheckedIn(BookingEvent):
    kind: Literal["model_checked_in"] = "model_checked_in"
    model_id: str
    both_checked_in: bool = False

    title: ClassVar[str] = "Model Checked In"

    def render(self) -> str:
        if self.both_checked_in:
            return "The model has checked in. Your booking is now in progress."
        return "The model has arrived and checked in."


class CustomerCheckedIn(BookingEvent):
    kind: Literal["customer_checked_in"] = "customer_checked_in"
    customer_id: str
    both_checked_in: bool = False

    title: ClassVar[str] = "Customer Checked In"

    def render(self) -> str:
        if self.both_checked_in:
            return "The customer has checked in. The booking is now in progress."
        return "The customer has arrived and checked in."


class BookingCompleted(BookingEvent):
    kind: Literal["booking_completed"] = "booking_completed"
    model_id: str
    service_name: str
    price: int
    auto_release_at: datetime

    title: ClassVar[str] = "Service Completed"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        return (
            f'The "{self.service_name}" service ({format_amount(self.price)}) was marked complete. '
            f"Please confirm or dispute before {self.auto_release_at:%Y-%m-%d %H:%M} UTC, "
            "otherwise the payment is released automatically."
        )


class CompletionConfirmed(BookingEvent):
    kind: Literal["completion_confirmed"] = "completion_confirmed"
    customer_id: str
    service_name: str
    amount: int

    title: ClassVar[str] = "Payment Released"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        return f'The customer confirmed "{self.service_name}". {format_amount(self.amount)} has been added to your wallet.'


class BookingDisputed(BookingEvent):
    kind: Literal["booking_disputed"] = "booking_disputed"
    customer_id: str
    service_name: str
    reason: str

    title: ClassVar[str] = "Booking Disputed"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        return (
            f'The customer has disputed the "{self.service_name}" booking. Reason: {self.reason}. '
            "The payment stays on hold until support resolves it."
        )


class PaymentRefunded(BookingEvent):
    kind: Literal["payment_refunded"] = "payment_refunded"
    amount: int
    reason: str

    title: ClassVar[str] = "Payment Refunded"

    def render(self) -> str:
        return f"{format_amount(self.amount)} has been refunded to your wallet. Reason: {self.reason}"


class PaymentReleased(BookingEvent):
    kind: Literal["payment_released"] = "payment_released"
    amount: int
    service_name: str | None = None

    title: ClassVar[str] = "Payment Auto-Released"
    sms: ClassVar[bool] = True

    def render(self) -> str:
        service = f' for "{self.service_name}"' if self.service_name else ""
        return (
            f"{format_amount(self.amount)}{service} has been released to your wallet "
            "because the confirmation window expired."
        )


class BookingAutoCompleted(BookingEvent):
    kind: Literal["booking_auto_completed"] = "booking_auto_completed"

    title: ClassVar[str] = "Booking Auto-Completed"

    def render(self) -> str:
        return "Your booking was completed automatically after the confirmation window expired."


class IncomingCall(BookingEvent):
    kind: Literal["call_incoming"] = "call_incoming"
    customer_id: str
    call_type: str
    room_id: str
    customer_peer_id: str

    title: ClassVar[str] = "Incoming Call"

    def render(self) -> str:
        return f"Incoming {self.call_type} call. Answer now to start the session."


class CallAccepted(BookingEvent):
    kind: Literal["call_accepted"] = "call_accepted"
    model_id: str
    model_peer_id: str

    title: ClassVar[str] = "Call Accepted"

    def render(self) -> str:
        return "The model accepted your call. Connecting..."


class CallDeclined(BookingEvent):
    kind: Literal["call_declined"] = "call_declined"
    model_id: str

    title: ClassVar[str] = "Call Declined"

    def render(self) -> str:
        return "The model declined your call. Your payment has been refunded."


class CallMissed(BookingEvent):
    kind: Literal["call_missed"] = "call_missed"
    call_type: str

    title: ClassVar[str] = "Missed Call"

    def render(self) -> str:
        return f"The {self.call_type} call was not answered. Any held payment has been refunded."


class CallEnded(BookingEvent):
    kind: Literal["call_ended"] = "call_ended"
    minutes: int
    cost: int
    ended_by: str

    title: ClassVar[str] = "Call Ended"

    def render(self) -> str:
        return f"Call ended after {self.minutes} minute(s). Total: {format_amount(self.cost)}."


NotificationEvent = Annotated[
    Union[
        BookingCreated,
        BookingEdited,
        BookingConfirmed,
        BookingRejected,
        BookingCancelled,
        ModelCheckedIn,
        CustomerCheckedIn,
        BookingCompleted,
        CompletionConfirmed,
        BookingDisputed,
        PaymentRefunded,
        PaymentReleased,
        BookingAutoCompleted,
        IncomingCall,
        CallAccepted,
        CallDeclined,
        CallMissed,
        CallEnded,
    ],
    Field(discriminator="kind"),
]

event_adapter: TypeAdapter[NotificationEvent] = TypeAdapter(NotificationEvent)


def parse_event(data: dict) -> BookingEvent:
    return event_adapter.validate_python(data)
