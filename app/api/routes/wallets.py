"""Wallet and notification-inbox routes for the authenticated actor."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.deps import get_current_actor
from app.core.exceptions import Unauthorized
from app.db.session import atomic, get_db
from app.schemas.wallets import ModelSummaryOut, NotificationOut, TransactionOut, WalletOut
from app.services.auth.actor import Actor
from app.services.notifications.service import NotificationService
from app.services.wallet.service import WalletService

router = APIRouter(tags=["wallets"])


@router.post("/wallets/me", response_model=WalletOut, status_code=status.HTTP_201_CREATED)
def open_wallet(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    with atomic(db):
        wallet = WalletService(db).create_wallet(actor.kind, actor.id)
    return wallet


@router.get("/wallets/me", response_model=WalletOut)
def my_wallet(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return WalletService(db).get_active_wallet(actor.kind, actor.id)


@router.get("/wallets/me/transactions", response_model=list[TransactionOut])
def my_transactions(limit: int = 50, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return WalletService(db).list_transactions(actor.kind, actor.id, limit=max(1, min(limit, 200)))


@router.get("/wallets/me/summary", response_model=ModelSummaryOut)
def my_summary(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    if actor.kind != "model":
        raise Unauthorized("Only models have an earnings summary!")
    return WalletService(db).model_summary(actor.id)


@router.get("/notifications", response_model=list[NotificationOut])
def my_notifications(
    unread_only: bool = False,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    return NotificationService(db).list_for(actor.kind, actor.id, unread_only=unread_only)


@router.post("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    with atomic(db):
        updated = NotificationService(db).mark_read(actor.kind, actor.id, notification_id)
    return {"success": updated}
