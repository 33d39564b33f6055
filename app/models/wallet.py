from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, UniqueConstraint

from app.db.base import Base


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        UniqueConstraint("owner_kind", "owner_id", name="uq_wallet_owner"),
        CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    owner_kind = Column(String, nullable=False)  # customer / model
    owner_id = Column(String, nullable=False, index=True)
    balance = Column(Integer, nullable=False, default=0)
    lifetime_recharge = Column(Integer, nullable=False, default=0)  # approved top-ups
    lifetime_deposit = Column(Integer, nullable=False, default=0)  # earnings credited
    status = Column(String, nullable=False, default="active")  # active / frozen / closed
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
