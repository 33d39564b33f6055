"""
Celery beat tasks for call bookings: unanswered calls and calls that lost their heartbeat.
"""
import logging

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.calls.service import CallBookingService
from app.workers.tasks.notifications import dispatch_pending

logger = logging.getLogger(__name__)


def _summarize(results: list[dict], outcome: str) -> dict:
    done = sum(1 for r in results if r["status"] == outcome)
    return {"processed": len(results), outcome: done, "failed": len(results) - done}


@celery_app.task(
    name="app.workers.tasks.calls.process_missed_calls",
    time_limit=60,
    soft_time_limit=55,
)
def process_missed_calls() -> dict:
    """Ringing past the ring timeout -> missed, full refund."""
    db = SessionLocal()
    try:
        results = CallBookingService(db).process_missed_calls()
        summary = _summarize(results, "missed")
        if results:
            logger.info("process_missed_calls_done", extra={"processed": summary["processed"], "failed": summary["failed"]})
            dispatch_pending.delay()
        return summary
    except Exception:
        db.rollback()
        logger.exception("process_missed_calls_error")
        return {"processed": 0, "error": "exception"}
    finally:
        db.close()


@celery_app.task(
    name="app.workers.tasks.calls.process_stale_calls",
    time_limit=120,
    soft_time_limit=110,
)
def process_stale_calls() -> dict:
    """In-call without heartbeat -> ended by system, billed up to the last heartbeat."""
    db = SessionLocal()
    try:
        results = CallBookingService(db).process_stale_calls()
        summary = _summarize(results, "ended")
        if results:
            logger.info("process_stale_calls_done", extra={"processed": summary["processed"], "failed": summary["failed"]})
            dispatch_pending.delay()
        return summary
    except Exception:
        db.rollback()
        logger.exception("process_stale_calls_error")
        return {"processed": 0, "error": "exception"}
    finally:
        db.close()
