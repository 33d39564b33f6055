"""
WalletService: the escrow ledger.

Every balance mutation is a conditional UPDATE plus one TransactionHistory row.
Methods flush but never commit: they join the caller's unit of work so the
ledger change and the booking change land in one transaction.
"""
from __future__ import annotations

import logging

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.core.exceptions import (
    AlreadyReleased,
    HoldNotFound,
    InsufficientFunds,
    ValidationError,
    WalletNotFound,
)
from app.models.booking import LIVE_PAYMENT_STATUSES, Booking
from app.models.service_offering import ServiceOffering
from app.models.transaction_history import TransactionHistory
from app.models.wallet import Wallet
from app.utils.currency import format_amount
from app.utils.metrics import ledger_rejected_total, record_ledger

logger = logging.getLogger(__name__)

EARNING_KINDS = ("booking_earning", "call_earning")


def compute_commission(amount: int, commission_rate: int | float) -> tuple[int, int]:
    """Return (commission, net). Commission is floored; the provider keeps the remainder."""
    commission = int(amount * (commission_rate or 0) // 100)
    return commission, amount - commission


class WalletService:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def get_wallet(self, owner_kind: str, owner_id: str, for_update: bool = False) -> Wallet | None:
        q = self.db.query(Wallet).filter(
            Wallet.owner_kind == owner_kind,
            Wallet.owner_id == owner_id,
        )
        if for_update:
            q = q.with_for_update().populate_existing()
        return q.one_or_none()

    def get_active_wallet(self, owner_kind: str, owner_id: str, for_update: bool = False) -> Wallet:
        wallet = self.get_wallet(owner_kind, owner_id, for_update=for_update)
        if wallet is None or wallet.status != "active":
            label = "Customer" if owner_kind == "customer" else "Model"
            raise WalletNotFound(f"{label} wallet not found!")
        return wallet

    def create_wallet(self, owner_kind: str, owner_id: str) -> Wallet:
        """Idempotent: returns the existing wallet for this owner if there is one."""
        if owner_kind not in ("customer", "model"):
            raise ValidationError("Unknown wallet owner kind", field="owner_kind")
        existing = self.get_wallet(owner_kind, owner_id)
        if existing:
            return existing
        wallet = Wallet(owner_kind=owner_kind, owner_id=owner_id, balance=0, status="active")
        self.db.add(wallet)
        self.db.flush()
        logger.info(
            "wallet_created",
            extra={"wallet_id": wallet.id, "actor_kind": owner_kind, "actor_id": owner_id},
        )
        return wallet

    def credit_recharge(
        self, owner_kind: str, owner_id: str, amount: int, reason: str | None = None
    ) -> TransactionHistory:
        """Credit an approved top-up."""
        if amount <= 0:
            raise ValidationError("Recharge amount must be positive", field="amount")
        wallet = self.get_active_wallet(owner_kind, owner_id, for_update=True)
        self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(
                balance=Wallet.balance + amount,
                lifetime_recharge=Wallet.lifetime_recharge + amount,
            )
            .execution_options(synchronize_session=False)
        )
        tx = self._record(
            wallet,
            kind="recharge",
            amount=amount,
            status="approved",
            reason=reason or "Wallet recharge",
        )
        self.db.refresh(wallet)
        record_ledger("recharge", amount)
        logger.info(
            "wallet_recharged",
            extra={"wallet_id": wallet.id, "amount": amount, "balance": wallet.balance},
        )
        return tx

    # ------------------------------------------------------------------
    # Hold
    # ------------------------------------------------------------------

    def hold(
        self, customer_id: str, amount: int, booking_id: str, kind: str = "booking_hold"
    ) -> TransactionHistory:
        """Debit the customer wallet and record a 'held' row for the booking."""
        if amount <= 0:
            raise ValidationError("Hold amount must be positive", field="price")
        wallet = self.get_active_wallet("customer", customer_id, for_update=True)
        if wallet.balance < amount:
            ledger_rejected_total.labels(reason="insufficient_funds").inc()
            raise InsufficientFunds(
                f"Insufficient balance! You need {format_amount(amount)} "
                f"but have {format_amount(wallet.balance)}.",
                required=amount,
                balance=wallet.balance,
            )

        result = self.db.execute(
            update(Wallet)
            .where(
                Wallet.id == wallet.id,
                Wallet.status == "active",
                Wallet.balance >= amount,
            )
            .values(balance=Wallet.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            ledger_rejected_total.labels(reason="insufficient_funds").inc()
            raise InsufficientFunds("Insufficient balance!", required=amount)

        label = "call booking" if kind == "call_hold" else "booking"
        tx = self._record(
            wallet,
            kind=kind,
            amount=-amount,
            status="held",
            booking_id=booking_id,
            reason=f"Payment held for {label} #{booking_id}",
        )
        self.db.refresh(wallet)
        record_ledger("hold", amount)
        logger.info(
            "ledger_hold",
            extra={
                "booking_id": booking_id,
                "transaction_id": tx.id,
                "wallet_id": wallet.id,
                "amount": amount,
                "balance": wallet.balance,
            },
        )
        return tx

    # ------------------------------------------------------------------
    # Release / refund / settle
    # ------------------------------------------------------------------

    def release(
        self,
        hold_tx_id: str,
        model_id: str,
        amount: int,
        booking_id: str,
        commission_rate: int | float,
        kind: str = "booking_earning",
        create_recipient_wallet: bool = False,
    ) -> TransactionHistory:
        """Move a held amount to the model wallet net of commission."""
        hold = self._load_hold(hold_tx_id)
        if amount <= 0 or amount > hold.held_amount:
            raise ValidationError("Release amount exceeds the held amount", field="amount")
        model_wallet = self._recipient_wallet(model_id, create_recipient_wallet)

        self._mark_hold(hold, "released")
        commission, net = compute_commission(amount, commission_rate)
        earning = self._credit(
            model_wallet,
            kind=kind,
            amount=net,
            commission=commission,
            booking_id=booking_id,
            reason=(
                f"Earning from completed booking #{booking_id} "
                f"({commission_rate}% commission: {format_amount(commission)})"
            ),
            deposit=True,
        )
        record_ledger("release", net)
        logger.info(
            "ledger_release",
            extra={
                "booking_id": booking_id,
                "hold_transaction_id": hold.id,
                "transaction_id": earning.id,
                "amount": amount,
                "net": net,
                "commission": commission,
            },
        )
        return earning

    def refund(
        self,
        hold_tx_id: str,
        customer_id: str,
        amount: int,
        booking_id: str,
        reason: str,
        kind: str = "booking_refund",
    ) -> TransactionHistory:
        """Return a held amount to the customer. No commission on refunds."""
        hold = self._load_hold(hold_tx_id)
        if hold.owner_id != customer_id:
            raise ValidationError("Hold does not belong to this customer")
        if amount <= 0 or amount > hold.held_amount:
            raise ValidationError("Refund amount exceeds the held amount", field="amount")
        wallet = self.get_active_wallet("customer", customer_id, for_update=True)

        self._mark_hold(hold, "refunded")
        refund = self._credit(
            wallet,
            kind=kind,
            amount=amount,
            booking_id=booking_id,
            reason=f"Refund for booking #{booking_id}: {reason}",
        )
        record_ledger("refund", amount)
        logger.info(
            "ledger_refund",
            extra={
                "booking_id": booking_id,
                "hold_transaction_id": hold.id,
                "transaction_id": refund.id,
                "amount": amount,
            },
        )
        return refund

    def settle(
        self,
        hold_tx_id: str,
        model_id: str,
        customer_id: str,
        charge: int,
        booking_id: str,
        commission_rate: int | float,
    ) -> tuple[TransactionHistory, TransactionHistory | None]:
        """
        Split one hold: `charge` goes to the model (net of commission), the
        unused remainder goes back to the customer. Both writes share the
        caller's transaction. Returns (earning, refund_or_none).
        """
        hold = self._load_hold(hold_tx_id)
        if hold.owner_id != customer_id:
            raise ValidationError("Hold does not belong to this customer")
        held = hold.held_amount
        if charge <= 0 or charge > held:
            raise ValidationError("Charge must be positive and within the held amount", field="charge")
        model_wallet = self._recipient_wallet(model_id, create=True)
        customer_wallet = self.get_active_wallet("customer", customer_id, for_update=True)

        self._mark_hold(hold, "released")
        commission, net = compute_commission(charge, commission_rate)
        earning = self._credit(
            model_wallet,
            kind="call_earning",
            amount=net,
            commission=commission,
            booking_id=booking_id,
            reason=(
                f"Earning from call booking #{booking_id} "
                f"({commission_rate}% commission: {format_amount(commission)})"
            ),
            deposit=True,
        )
        remainder = held - charge
        refund = None
        if remainder > 0:
            refund = self._credit(
                customer_wallet,
                kind="call_refund_unused",
                amount=remainder,
                booking_id=booking_id,
                reason=f"Unused balance refund for call #{booking_id}",
            )
        record_ledger("settle", charge)
        logger.info(
            "ledger_settle",
            extra={
                "booking_id": booking_id,
                "hold_transaction_id": hold.id,
                "amount": charge,
                "net": net,
                "commission": commission,
                "refund": remainder,
            },
        )
        return earning, refund

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, tx_id: str) -> TransactionHistory | None:
        return self.db.query(TransactionHistory).filter(TransactionHistory.id == tx_id).one_or_none()

    def list_transactions(self, owner_kind: str, owner_id: str, limit: int = 50) -> list[TransactionHistory]:
        return (
            self.db.query(TransactionHistory)
            .filter(
                TransactionHistory.owner_kind == owner_kind,
                TransactionHistory.owner_id == owner_id,
            )
            .order_by(TransactionHistory.created_at.desc())
            .limit(limit)
            .all()
        )

    def model_summary(self, model_id: str) -> dict:
        """Available balance, lifetime earnings, and net amount still in escrow."""
        wallet = self.get_active_wallet("model", model_id)
        total_income = (
            self.db.query(func.coalesce(func.sum(TransactionHistory.amount), 0))
            .filter(
                TransactionHistory.owner_kind == "model",
                TransactionHistory.owner_id == model_id,
                TransactionHistory.kind.in_(EARNING_KINDS),
                TransactionHistory.status == "approved",
            )
            .scalar()
        )
        rows = (
            self.db.query(Booking.price, ServiceOffering.commission_rate)
            .join(ServiceOffering, ServiceOffering.id == Booking.service_offering_id)
            .filter(
                Booking.model_id == model_id,
                Booking.call_type.is_(None),
                Booking.payment_status.in_(LIVE_PAYMENT_STATUSES),
            )
            .all()
        )
        pending = sum(compute_commission(price, rate)[1] for price, rate in rows)
        return {
            "wallet_id": wallet.id,
            "total_available": wallet.balance,
            "total_income": int(total_income or 0),
            "pending_balance": pending,
            "lifetime_deposit": wallet.lifetime_deposit,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_hold(self, hold_tx_id: str | None) -> TransactionHistory:
        if not hold_tx_id:
            ledger_rejected_total.labels(reason="hold_not_found").inc()
            raise HoldNotFound("Hold transaction not found!")
        hold = (
            self.db.query(TransactionHistory)
            .filter(TransactionHistory.id == hold_tx_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if hold is None or not hold.is_hold:
            ledger_rejected_total.labels(reason="hold_not_found").inc()
            raise HoldNotFound("Hold transaction not found!")
        return hold

    def _mark_hold(self, hold: TransactionHistory, to_status: str) -> None:
        """Compare-and-set held -> to_status; losing writers get AlreadyReleased."""
        result = self.db.execute(
            update(TransactionHistory)
            .where(
                TransactionHistory.id == hold.id,
                TransactionHistory.status == "held",
            )
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            ledger_rejected_total.labels(reason="already_released").inc()
            raise AlreadyReleased("This payment has already been settled!")
        self.db.refresh(hold)

    def _recipient_wallet(self, model_id: str, create: bool) -> Wallet:
        if create and self.get_wallet("model", model_id) is None:
            self.create_wallet("model", model_id)
        return self.get_active_wallet("model", model_id, for_update=True)

    def _credit(
        self,
        wallet: Wallet,
        kind: str,
        amount: int,
        booking_id: str,
        reason: str,
        commission: int = 0,
        deposit: bool = False,
    ) -> TransactionHistory:
        values = {"balance": Wallet.balance + amount}
        if deposit:
            values["lifetime_deposit"] = Wallet.lifetime_deposit + amount
        self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        tx = self._record(
            wallet,
            kind=kind,
            amount=amount,
            status="approved",
            commission=commission,
            booking_id=booking_id,
            reason=reason,
        )
        self.db.refresh(wallet)
        return tx

    def _record(
        self,
        wallet: Wallet,
        kind: str,
        amount: int,
        status: str,
        reason: str,
        booking_id: str | None = None,
        commission: int = 0,
    ) -> TransactionHistory:
        tx = TransactionHistory(
            kind=kind,
            amount=amount,
            status=status,
            commission=commission,
            fee=0,
            wallet_id=wallet.id,
            owner_kind=wallet.owner_kind,
            owner_id=wallet.owner_id,
            booking_id=booking_id,
            reason=reason,
        )
        self.db.add(tx)
        self.db.flush()
        return tx
