"""
Notification outbox.

Booking services call `notify_customer` / `notify_model` inside their unit of
work; the row commits (or rolls back) with the booking change. The Celery
dispatcher later pushes undelivered rows to Redis and, for SMS-worthy events,
to the SMS gateway.
"""
from __future__ import annotations

import logging

import httpx
import pybreaker
import redis
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.booking import Booking
from app.models.notification import Notification
from app.services.notifications.events import BookingEvent, parse_event
from app.services.notifications.publisher import RedisPublisher
from app.services.notifications.sms import SmsClient, SmsGatewayError
from app.utils.metrics import notifications_total
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

DELIVERY_ERRORS = (
    redis.RedisError,
    httpx.HTTPError,
    SmsGatewayError,
    pybreaker.CircuitBreakerError,
    PydanticValidationError,
)


class NotificationService:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Outbox writes
    # ------------------------------------------------------------------

    def notify(self, recipient_kind: str, recipient_id: str, event: BookingEvent) -> Notification | None:
        """Queue one notification. Never raises: a notification must not fail a booking."""
        try:
            row = Notification(
                recipient_kind=recipient_kind,
                recipient_id=recipient_id,
                kind=event.kind,
                title=event.title,
                message=event.render(),
                data=event.model_dump(mode="json"),
            )
            self.db.add(row)
        except Exception:
            logger.exception(
                "notification_queue_failed",
                extra={"kind": getattr(event, "kind", None), "booking_id": event.booking_id},
            )
            notifications_total.labels(kind=getattr(event, "kind", "unknown"), status="failed").inc()
            return None
        notifications_total.labels(kind=event.kind, status="queued").inc()
        return row

    def notify_customer(self, booking: Booking, event: BookingEvent) -> Notification | None:
        return self.notify("customer", booking.customer_id, event)

    def notify_model(self, booking: Booking, event: BookingEvent) -> Notification | None:
        return self.notify("model", booking.model_id, event)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_for(
        self, recipient_kind: str, recipient_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        q = self.db.query(Notification).filter(
            Notification.recipient_kind == recipient_kind,
            Notification.recipient_id == recipient_id,
        )
        if unread_only:
            q = q.filter(Notification.is_read.is_(False))
        return q.order_by(Notification.created_at.desc()).limit(limit).all()

    def mark_read(self, recipient_kind: str, recipient_id: str, notification_id: str) -> bool:
        updated = (
            self.db.query(Notification)
            .filter(
                Notification.id == notification_id,
                Notification.recipient_kind == recipient_kind,
                Notification.recipient_id == recipient_id,
            )
            .update({Notification.is_read: True}, synchronize_session=False)
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def pending(self, limit: int) -> list[Notification]:
        return (
            self.db.query(Notification)
            .filter(
                Notification.dispatched_at.is_(None),
                Notification.dispatch_attempts < settings.notification_max_attempts,
            )
            .order_by(Notification.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )

    def dispatch_pending(
        self,
        publisher: RedisPublisher,
        sms: SmsClient | None = None,
        limit: int | None = None,
    ) -> dict:
        """
        Deliver undelivered rows. A failed row keeps dispatched_at NULL and is
        retried on the next run until notification_max_attempts. Flushes only.
        """
        limit = limit or settings.notification_dispatch_batch_size
        dispatched = failed = 0
        for row in self.pending(limit):
            row.dispatch_attempts = (row.dispatch_attempts or 0) + 1
            try:
                self._deliver(row, publisher, sms)
            except DELIVERY_ERRORS as e:
                row.last_error = str(e)[:500]
                failed += 1
                notifications_total.labels(kind=row.kind, status="failed").inc()
                logger.warning(
                    "notification_dispatch_failed",
                    extra={"notification_id": row.id, "kind": row.kind, "error": str(e)},
                )
                continue
            row.dispatched_at = utcnow()
            row.last_error = None
            dispatched += 1
            notifications_total.labels(kind=row.kind, status="dispatched").inc()
        self.db.flush()
        return {"processed": dispatched + failed, "dispatched": dispatched, "failed": failed}

    def _deliver(self, row: Notification, publisher: RedisPublisher, sms: SmsClient | None) -> None:
        publisher.publish(
            row.channel,
            {
                "id": row.id,
                "kind": row.kind,
                "title": row.title,
                "message": row.message,
                "data": row.data,
                "created_at": row.created_at,
            },
        )
        if sms is None or not sms.enabled:
            return
        event = parse_event(row.data)
        if event.sms:
            sms.send(row.channel, f"{settings.sms_sender_name}: {row.message}")
