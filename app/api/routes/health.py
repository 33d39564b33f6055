import logging

import redis
from fastapi import APIRouter, Depends, Response
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.models.notification import Notification

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness probe: database and Redis must answer. Reports the undelivered outbox size."""
    try:
        db.execute(text("SELECT 1"))
        backlog = (
            db.query(func.count(Notification.id))
            .filter(Notification.dispatched_at.is_(None))
            .scalar()
        )
        redis.Redis.from_url(settings.redis_url, decode_responses=True).ping()
    except (SQLAlchemyError, redis.RedisError) as e:
        logger.warning("readiness_failed", extra={"error": str(e)})
        response.status_code = 503
        return {"status": "not_ready", "error": str(e)}
    return {"status": "ready", "notification_backlog": backlog}
