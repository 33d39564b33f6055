"""
Celery beat task: release escrow for bookings whose confirmation window expired.
"""
import logging

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.completion.service import CompletionService
from app.workers.tasks.notifications import dispatch_pending

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.workers.tasks.auto_release.process_auto_release",
    time_limit=240,
    soft_time_limit=230,
)
def process_auto_release() -> dict:
    """Release every due booking; each booking commits on its own."""
    db = SessionLocal()
    try:
        results = CompletionService(db).process_auto_release()
        released = sum(1 for r in results if r["status"] == "released")
        summary = {"processed": len(results), "released": released, "failed": len(results) - released}
        logger.info("process_auto_release_done", extra=summary)
        if results:
            dispatch_pending.delay()
        return {**summary, "results": results}
    except Exception:
        db.rollback()
        logger.exception("process_auto_release_error")
        return {"processed": 0, "error": "exception"}
    finally:
        db.close()

