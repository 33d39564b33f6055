"""
Notification outbox. Rows are written in the same transaction as the booking
change and delivered later by app.workers.tasks.notifications.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.db.base import Base, JSONType


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    recipient_kind = Column(String, nullable=False)  # customer / model
    recipient_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONType, nullable=False, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)
    dispatched_at = Column(DateTime(timezone=True), nullable=True, index=True)
    dispatch_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def channel(self) -> str:
        return f"{self.recipient_kind}:{self.recipient_id}"
