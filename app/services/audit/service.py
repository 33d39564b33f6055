from typing import Any

from sqlalchemy.orm import Session

from app.models.audit_log import AuditLog
from app.services.auth.actor import Actor


class AuditService:
    """Append-only trail of booking actions, written inside the caller's transaction."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def log(
        self,
        actor: Actor,
        action: str,
        entity_type: str,
        entity_id: str | None,
        payload: dict[str, Any] | None = None,
    ) -> AuditLog:
        entry = AuditLog(
            actor_type=actor.kind,
            actor_id=actor.id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload or {},
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_for_entity(self, entity_type: str, entity_id: str) -> list[AuditLog]:
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at.asc())
            .all()
        )
