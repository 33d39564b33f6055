"""Tests for WalletService: hold, release, refund, settle and the double-spend guard."""
import pytest

from app.core.exceptions import (
    AlreadyReleased,
    HoldNotFound,
    InsufficientFunds,
    ValidationError,
    WalletNotFound,
)
from app.models.booking import Booking
from app.models.transaction_history import TransactionHistory
from app.services.wallet.service import WalletService, compute_commission
from tests.factories import NOW, balance, fund, make_offering


class TestCommission:
    def test_commission_is_floored(self):
        assert compute_commission(99_999, 15) == (14_999, 85_000)

    def test_zero_rate(self):
        assert compute_commission(50_000, 0) == (0, 50_000)


class TestWallets:
    def test_create_wallet_is_idempotent(self, db):
        svc = WalletService(db)
        first = svc.create_wallet("customer", "c-1")
        second = svc.create_wallet("customer", "c-1")
        assert first.id == second.id

    def test_unknown_owner_kind_rejected(self, db):
        with pytest.raises(ValidationError):
            WalletService(db).create_wallet("admin", "a-1")

    def test_recharge_credits_balance_and_lifetime(self, db):
        fund(db, "customer", "c-1", 250_000)
        wallet = WalletService(db).get_wallet("customer", "c-1")
        assert wallet.balance == 250_000
        assert wallet.lifetime_recharge == 250_000

    def test_frozen_wallet_is_not_found(self, db):
        wallet = fund(db, "customer", "c-1", 100_000)
        wallet.status = "frozen"
        db.commit()
        with pytest.raises(WalletNotFound):
            WalletService(db).hold("c-1", 10_000, "b-1")


class TestHold:
    def test_hold_debits_customer(self, wallets):
        tx = WalletService(wallets).hold("customer-1", 100_000, "b-1")
        wallets.commit()

        assert tx.amount == -100_000
        assert tx.status == "held"
        assert tx.kind == "booking_hold"
        assert balance(wallets, "customer", "customer-1") == 400_000

    def test_insufficient_funds_leaves_balance(self, wallets):
        with pytest.raises(InsufficientFunds) as exc:
            WalletService(wallets).hold("customer-1", 600_000, "b-1")
        wallets.rollback()

        assert exc.value.details["required"] == 600_000
        assert balance(wallets, "customer", "customer-1") == 500_000

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount(self, wallets, amount):
        with pytest.raises(ValidationError):
            WalletService(wallets).hold("customer-1", amount, "b-1")

    def test_missing_wallet(self, db):
        with pytest.raises(WalletNotFound):
            WalletService(db).hold("nobody", 1_000, "b-1")


class TestRelease:
    def test_release_credits_net_of_commission(self, wallets):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 100_000, "b-1")
        earning = svc.release(hold.id, "model-1", 100_000, "b-1", 20)
        wallets.commit()

        assert earning.amount == 80_000
        assert earning.commission == 20_000
        assert earning.kind == "booking_earning"
        assert earning.amount + earning.commission == -hold.amount
        assert wallets.get(TransactionHistory, hold.id).status == "released"
        assert balance(wallets, "model", "model-1") == 80_000
        model_wallet = svc.get_wallet("model", "model-1")
        assert model_wallet.lifetime_deposit == 80_000

    def test_second_release_is_rejected(self, wallets):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 100_000, "b-1")
        svc.release(hold.id, "model-1", 100_000, "b-1", 20)

        with pytest.raises(AlreadyReleased):
            svc.release(hold.id, "model-1", 100_000, "b-1", 20)

    def test_release_more_than_held(self, wallets):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 100_000, "b-1")
        with pytest.raises(ValidationError):
            svc.release(hold.id, "model-1", 100_001, "b-1", 20)

    def test_unknown_hold(self, wallets):
        with pytest.raises(HoldNotFound):
            WalletService(wallets).release("missing", "model-1", 1_000, "b-1", 20)

    def test_earning_row_is_not_a_hold(self, wallets):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 100_000, "b-1")
        earning = svc.release(hold.id, "model-1", 100_000, "b-1", 20)
        with pytest.raises(HoldNotFound):
            svc.refund(earning.id, "customer-1", 1_000, "b-1", "nope")

    def test_missing_model_wallet_keeps_hold(self, db):
        fund(db, "customer", "customer-1", 200_000)
        svc = WalletService(db)
        hold = svc.hold("customer-1", 100_000, "b-1")
        db.commit()

        with pytest.raises(WalletNotFound):
            svc.release(hold.id, "model-1", 100_000, "b-1", 20)
        db.rollback()

        assert db.get(TransactionHistory, hold.id).status == "held"

    def test_recipient_wallet_created_on_demand(self, db):
        fund(db, "customer", "customer-1", 200_000)
        svc = WalletService(db)
        hold = svc.hold("customer-1", 100_000, "b-1", kind="call_hold")
        svc.release(hold.id, "model-9", 100_000, "b-1", 10, kind="call_earning", create_recipient_wallet=True)
        db.commit()

        assert balance(db, "model", "model-9") == 90_000


class TestRefund:
    def test_refund_restores_customer(self, wallets):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 100_000, "b-1")
        refund = svc.refund(hold.id, "customer-1", 100_000, "b-1", "cancelled")
        wallets.commit()

        assert refund.amount == 100_000
        assert refund.commission == 0
        assert wallets.get(TransactionHistory, hold.id).status == "refunded"
        assert balance(wallets, "customer", "customer-1") == 500_000

    def test_refund_after_release_is_rejected(self, wallets):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 100_000, "b-1")
        svc.release(hold.id, "model-1", 100_000, "b-1", 20)
        with pytest.raises(AlreadyReleased):
            svc.refund(hold.id, "customer-1", 100_000, "b-1", "too late")

    def test_refund_to_other_customer_is_rejected(self, wallets):
        fund(wallets, "customer", "customer-2", 0)
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 100_000, "b-1")
        with pytest.raises(ValidationError):
            svc.refund(hold.id, "customer-2", 100_000, "b-1", "wrong wallet")


class TestDoubleSpend:
    def test_release_and_refund_race_exactly_one_wins(self, session_factory, wallets):
        hold = WalletService(wallets).hold("customer-1", 100_000, "b-1")
        wallets.commit()
        hold_id = hold.id

        first = session_factory()
        second = session_factory()
        try:
            stale = second.get(TransactionHistory, hold_id)
            assert stale.status == "held"

            WalletService(first).release(hold_id, "model-1", 100_000, "b-1", 20)
            first.commit()

            with pytest.raises(AlreadyReleased):
                WalletService(second)._mark_hold(stale, "refunded")
            second.rollback()

            with pytest.raises(AlreadyReleased):
                WalletService(second).refund(hold_id, "customer-1", 100_000, "b-1", "race")
            second.rollback()
        finally:
            first.close()
            second.close()

        assert balance(wallets, "customer", "customer-1") == 400_000
        assert balance(wallets, "model", "model-1") == 80_000


class TestSettle:
    def test_settle_splits_hold(self, wallets):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 120_000, "call-1", kind="call_hold")
        earning, refund = svc.settle(hold.id, "model-1", "customer-1", 5_000, "call-1", 20)
        wallets.commit()

        assert earning.kind == "call_earning"
        assert earning.amount == 4_000
        assert earning.commission == 1_000
        assert refund.kind == "call_refund_unused"
        assert refund.amount == 115_000
        assert earning.amount + earning.commission + refund.amount == 120_000
        assert balance(wallets, "customer", "customer-1") == 495_000
        assert balance(wallets, "model", "model-1") == 4_000

    def test_full_charge_has_no_refund(self, wallets):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 10_000, "call-1", kind="call_hold")
        _, refund = svc.settle(hold.id, "model-1", "customer-1", 10_000, "call-1", 20)
        assert refund is None

    @pytest.mark.parametrize("charge", [0, 10_001])
    def test_charge_outside_hold(self, wallets, charge):
        svc = WalletService(wallets)
        hold = svc.hold("customer-1", 10_000, "call-1", kind="call_hold")
        with pytest.raises(ValidationError):
            svc.settle(hold.id, "model-1", "customer-1", charge, "call-1", 20)


class TestModelSummary:
    def test_summary_counts_income_and_escrow(self, wallets):
        offering = make_offering(wallets, commission_rate=20)
        svc = WalletService(wallets)
        released = svc.hold("customer-1", 100_000, "b-1")
        svc.release(released.id, "model-1", 100_000, "b-1", 20)
        pending = svc.hold("customer-1", 50_000, "b-2")
        wallets.add(
            Booking(
                id="b-2",
                customer_id="customer-1",
                model_id="model-1",
                service_offering_id=offering.id,
                price=50_000,
                start_date=NOW,
                status="awaiting_confirmation",
                payment_status="pending_release",
                hold_transaction_id=pending.id,
            )
        )
        wallets.commit()

        summary = svc.model_summary("model-1")

        assert summary["total_available"] == 80_000
        assert summary["total_income"] == 80_000
        assert summary["pending_balance"] == 40_000
