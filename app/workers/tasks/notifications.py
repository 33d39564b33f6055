"""
Celery beat task: deliver the notification outbox to Redis channels and SMS.
"""
import logging

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.notifications.publisher import RedisPublisher
from app.services.notifications.service import NotificationService
from app.services.notifications.sms import SmsClient

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.workers.tasks.notifications.dispatch_pending",
    time_limit=120,
    soft_time_limit=110,
)
def dispatch_pending() -> dict:
    """Deliver undelivered notifications; failed rows are retried on the next run."""
    db = SessionLocal()
    sms = SmsClient()
    try:
        summary = NotificationService(db).dispatch_pending(RedisPublisher(), sms)
        db.commit()
        if summary["processed"]:
            logger.info("dispatch_notifications_done", extra=summary)
        return summary
    except Exception:
        db.rollback()
        logger.exception("dispatch_notifications_error")
        return {"processed": 0, "error": "exception"}
    finally:
        sms.close()
        db.close()
