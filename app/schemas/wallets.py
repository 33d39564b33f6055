from datetime import datetime

from pydantic import BaseModel, ConfigDict


class WalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_kind: str
    owner_id: str
    balance: int
    lifetime_recharge: int
    lifetime_deposit: int
    status: str


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    amount: int
    status: str
    commission: int
    booking_id: str | None = None
    reason: str | None = None
    created_at: datetime


class ModelSummaryOut(BaseModel):
    wallet_id: str
    total_available: int
    total_income: int
    pending_balance: int
    lifetime_deposit: int


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    title: str
    message: str
    data: dict
    is_read: bool
    created_at: datetime
