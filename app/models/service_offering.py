from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from app.db.base import Base


class ServiceOffering(Base):
    """A service a model offers; carries the rates used at settlement time."""

    __tablename__ = "service_offerings"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    model_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    billing_type = Column(String, nullable=False, default="per_session")  # per_session / per_minute
    base_rate = Column(Integer, nullable=False, default=0)
    minute_rate = Column(Integer, nullable=False, default=0)
    commission_rate = Column(Integer, nullable=False, default=0)  # percent
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
