"""
Check-in admission: a party may check in from `checkin_window_minutes` before
the start until the booking ends, and only within `checkin_radius_meters` of
the stored booking location.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta

from app.core.config import settings
from app.core.exceptions import AlreadyCheckedIn, CheckInWindowClosed, OutOfRadius, ValidationError
from app.models.booking import Booking
from app.utils.time import as_utc

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two WGS84 points, in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def check_radius(
    target_lat: float,
    target_lng: float,
    lat: float,
    lng: float,
    radius_m: float | None = None,
) -> tuple[bool, int]:
    """Return (within_radius, distance rounded to whole meters)."""
    radius_m = settings.checkin_radius_meters if radius_m is None else radius_m
    distance_km = haversine_km(target_lat, target_lng, lat, lng)
    return distance_km <= radius_m / 1000.0, round(distance_km * 1000)


def check_time_window(
    start: datetime,
    end: datetime | None,
    now: datetime,
    window_minutes: int | None = None,
) -> None:
    """Raise CheckInWindowClosed unless now is inside [start - window, end]."""
    window_minutes = settings.checkin_window_minutes if window_minutes is None else window_minutes
    start = as_utc(start)
    end = as_utc(end)
    opens_at = start - timedelta(minutes=window_minutes)
    if now < opens_at:
        minutes_until_open = math.ceil((opens_at - now).total_seconds() / 60)
        raise CheckInWindowClosed(
            f"Check-in opens {window_minutes} minutes before the booking starts. "
            f"Check-in opens in {minutes_until_open} minutes.",
            minutes_until_open=minutes_until_open,
        )
    if end is not None and now > end:
        raise CheckInWindowClosed("This booking has already ended.")


def admit(booking: Booking, party: str, lat: float, lng: float, now: datetime) -> int | None:
    """
    Admit `party` ("customer" or "model") to the booking.

    Returns the distance in meters, or None when the booking has no stored
    coordinates and the radius check is skipped.
    """
    if lat is None or lng is None:
        raise ValidationError("Location is required to check in", field="location")
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError("Invalid coordinates", field="location")

    checked_in_at = booking.model_checked_in_at if party == "model" else booking.customer_checked_in_at
    if checked_in_at is not None:
        raise AlreadyCheckedIn("You have already checked in for this booking!")

    check_time_window(booking.start_date, booking.end_date, now)

    if not booking.has_location:
        return None
    within, distance_m = check_radius(booking.location_lat, booking.location_lng, lat, lng)
    if not within:
        raise OutOfRadius(
            f"You are {distance_m}m away from the booking location. "
            f"Please move within {int(settings.checkin_radius_meters)}m to check in.",
            distance_m=distance_m,
            radius_m=settings.checkin_radius_meters,
        )
    return distance_m
