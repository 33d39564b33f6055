"""
Ledger entries. One row per wallet mutation; only a hold's status may change
afterwards (held -> released / held -> refunded).
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, String, Text

from app.db.base import Base

HOLD_KINDS = ("booking_hold", "call_hold")


class TransactionHistory(Base):
    __tablename__ = "transaction_history"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    kind = Column(String, nullable=False, index=True)   # booking_hold / booking_earning / booking_refund / call_* / recharge
    amount = Column(Integer, nullable=False)             # signed: holds are negative
    status = Column(String, nullable=False)              # held / released / refunded / approved
    commission = Column(Integer, nullable=False, default=0)
    fee = Column(Integer, nullable=False, default=0)
    wallet_id = Column(String, nullable=False, index=True)
    owner_kind = Column(String, nullable=False)
    owner_id = Column(String, nullable=False, index=True)
    booking_id = Column(String, nullable=True, index=True)  # weak reference, no FK
    reason = Column(Text, nullable=True)
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

    @property
    def is_hold(self) -> bool:
        return self.kind in HOLD_KINDS

    @property
    def held_amount(self) -> int:
        """Positive amount earmarked by a hold row."""
        return -self.amount if self.amount < 0 else self.amount
