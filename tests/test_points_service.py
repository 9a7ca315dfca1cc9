"""
Tests for the per-user points wallet
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from app.core.exceptions import (
    InsufficientAvailableBalanceError,
    PointsTransactionNotFoundError,
    ValidationException,
)
from app.db.database import utcnow
from app.db.models.due_item import DueItem, DueItemKind
from app.db.models.points_transaction import PointsTransactionKind, PointsTransactionStatus
from app.domain.services.points_service import PointsService, expiry_payload_ref


def _in_days(days: int):
    return utcnow() + timedelta(days=days)


class TestEarn:

    @pytest.mark.unit
    async def test_unverified_earn_lands_in_pending(self, db_session):
        service = PointsService(db_session)

        transaction = await service.earn("user-1", "5.00", "order-1", True, _in_days(365))

        assert transaction.status == PointsTransactionStatus.PENDING
        assert transaction.kind == PointsTransactionKind.EARN
        assert transaction.processed_at is None

        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("5.00")
        assert wallet.available_balance == Decimal("0.00")
        assert wallet.total_earned == Decimal("0.00")

    @pytest.mark.unit
    async def test_verified_earn_lands_in_available(self, db_session):
        service = PointsService(db_session)

        transaction = await service.earn("user-1", "7.50", "order-1", False, _in_days(365))

        assert transaction.status == PointsTransactionStatus.AVAILABLE
        wallet = await service.get_wallet("user-1")
        assert wallet.available_balance == Decimal("7.50")
        assert wallet.pending_balance == Decimal("0.00")
        assert wallet.total_earned == Decimal("7.50")

    @pytest.mark.unit
    async def test_earn_schedules_expiry_item(self, db_session):
        service = PointsService(db_session)
        expires_at = _in_days(30)

        transaction = await service.earn("user-1", "5.00", "order-1", True, expires_at)

        result = await db_session.execute(
            select(DueItem).where(DueItem.kind == DueItemKind.POINTS_EXPIRY)
        )
        item = result.scalar_one()
        assert item.payload_ref == expiry_payload_ref(transaction.id)
        assert item.payload == {"transaction_id": transaction.id, "user_ref": "user-1"}
        assert item.scheduled_at == expires_at

    @pytest.mark.unit
    async def test_earn_without_expiry_schedules_nothing(self, db_session):
        service = PointsService(db_session)

        await service.earn("user-1", "5.00", None, False, None)

        result = await db_session.execute(select(DueItem))
        assert result.scalars().all() == []

    @pytest.mark.unit
    async def test_expiry_in_the_past_rejected(self, db_session):
        service = PointsService(db_session)

        with pytest.raises(ValidationException):
            await service.earn("user-1", "5.00", "order-1", True, utcnow() - timedelta(seconds=1))

        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.parametrize("amount", ["0", "-1", "0.001"])
    async def test_invalid_amount_rejected(self, db_session, amount):
        service = PointsService(db_session)

        with pytest.raises(ValidationException):
            await service.earn("user-1", amount, "order-1", True, _in_days(1))


class TestRedeem:

    @pytest.mark.unit
    async def test_redeem_reduces_available(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "10.00", "order-1", False, _in_days(365))

        transaction = await service.redeem("user-1", "4.00")

        assert transaction.amount == Decimal("-4.00")
        assert transaction.kind == PointsTransactionKind.REDEEM
        assert transaction.status == PointsTransactionStatus.AVAILABLE
        wallet = await service.get_wallet("user-1")
        assert wallet.available_balance == Decimal("6.00")
        assert wallet.total_redeemed == Decimal("4.00")

    @pytest.mark.unit
    async def test_redeem_exact_available_balance(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "10.00", "order-1", False, _in_days(365))

        await service.redeem("user-1", "10.00")

        wallet = await service.get_wallet("user-1")
        assert wallet.available_balance == Decimal("0.00")

    @pytest.mark.unit
    async def test_pending_points_cannot_be_redeemed(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "10.00", "order-1", True, _in_days(365))

        with pytest.raises(InsufficientAvailableBalanceError):
            await service.redeem("user-1", "0.01")

        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("10.00")
        assert wallet.total_redeemed == Decimal("0.00")

    @pytest.mark.unit
    async def test_redeem_above_maximum_rejected(self, db_session):
        service = PointsService(db_session)

        with pytest.raises(ValidationException):
            await service.redeem("user-1", "50000.01")


class TestVerify:

    @pytest.mark.unit
    async def test_verify_moves_pending_to_available(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "5.00", "order-1", True, _in_days(365))

        updated = await service.verify("order-1")

        assert updated == 1
        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("0.00")
        assert wallet.available_balance == Decimal("5.00")
        assert wallet.total_earned == Decimal("5.00")
        [transaction] = await service.get_by_external_ref("order-1")
        assert transaction.status == PointsTransactionStatus.AVAILABLE
        assert transaction.processed_at is not None

    @pytest.mark.unit
    async def test_verify_twice_is_a_no_op(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "5.00", "order-1", True, _in_days(365))
        await service.verify("order-1")

        assert await service.verify("order-1") == 0

        wallet = await service.get_wallet("user-1")
        assert wallet.available_balance == Decimal("5.00")

    @pytest.mark.unit
    async def test_verify_unknown_reference(self, db_session):
        assert await PointsService(db_session).verify("never-seen") == 0


class TestExpiry:

    @pytest.mark.unit
    async def test_sweep_expires_pending_and_available(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "5.00", "order-1", True, _in_days(1))
        await service.earn("user-1", "3.00", "order-2", False, _in_days(1))
        await service.earn("user-1", "2.00", "order-3", False, _in_days(10))

        expired = await service.sweep_expired(now=_in_days(2))

        assert expired == 2
        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("0.00")
        assert wallet.available_balance == Decimal("2.00")
        assert wallet.total_expired == Decimal("8.00")

        report = await service.check_invariants("user-1")
        assert report["consistent"] is True

    @pytest.mark.unit
    async def test_sweep_twice_expires_once(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "5.00", "order-1", False, _in_days(1))

        assert await service.sweep_expired(now=_in_days(2)) == 1
        assert await service.sweep_expired(now=_in_days(3)) == 0

        wallet = await service.get_wallet("user-1")
        assert wallet.total_expired == Decimal("5.00")

    @pytest.mark.unit
    async def test_expire_single_transaction(self, db_session):
        service = PointsService(db_session)
        transaction = await service.earn("user-1", "5.00", "order-1", True, _in_days(1))

        assert await service.expire_transaction(transaction.id, now=_in_days(2)) is True
        assert await service.expire_transaction(transaction.id, now=_in_days(2)) is False

        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("0.00")
        assert wallet.total_expired == Decimal("5.00")

    @pytest.mark.unit
    async def test_expire_before_due_does_nothing(self, db_session):
        service = PointsService(db_session)
        transaction = await service.earn("user-1", "5.00", "order-1", True, _in_days(10))

        assert await service.expire_transaction(transaction.id) is False

        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("5.00")

    @pytest.mark.unit
    async def test_expire_missing_transaction(self, db_session):
        assert await PointsService(db_session).expire_transaction(12345) is False

    @pytest.mark.unit
    async def test_expiring_soon_lists_live_earns(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "5.00", "order-1", False, _in_days(5))
        await service.earn("user-1", "3.00", "order-2", True, _in_days(2))
        await service.earn("user-1", "1.00", "order-3", False, _in_days(90))

        expiring = await service.get_expiring_soon("user-1", days=7)

        assert [t.external_ref for t in expiring] == ["order-2", "order-1"]


class TestDeletePending:

    @pytest.mark.unit
    async def test_delete_pending_removes_amount_and_expiry_item(self, db_session):
        service = PointsService(db_session)
        transaction = await service.earn("user-1", "5.00", "order-1", True, _in_days(365))

        await service.delete_pending(transaction.id, "user-1")

        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("0.00")
        assert await service.get_by_external_ref("order-1") == []
        result = await db_session.execute(select(DueItem))
        assert result.scalars().all() == []

    @pytest.mark.unit
    async def test_delete_keeps_expiry_item_leased_by_a_dispatcher(self, db_session):
        from app.domain.services.dispatcher_service import ClaimDispatcher
        from app.domain.services.due_item_handlers import build_default_registry

        service = PointsService(db_session)
        transaction = await service.earn("user-1", "5.00", "order-1", True, _in_days(365))
        dispatcher = ClaimDispatcher(db_session, build_default_registry())
        [claimed] = await dispatcher.claim_batch(now=_in_days(366))

        await service.delete_pending(transaction.id, "user-1")

        wallet = await service.get_wallet("user-1")
        assert wallet.pending_balance == Decimal("0.00")
        # The running dispatcher finishes the item; there is nothing left to expire
        assert await dispatcher._process(claimed.id, claimed.claim_token) == "sent"
        wallet = await service.get_wallet("user-1")
        assert wallet.total_expired == Decimal("0.00")

    @pytest.mark.unit
    async def test_delete_available_transaction_refused(self, db_session):
        service = PointsService(db_session)
        transaction = await service.earn("user-1", "5.00", "order-1", False, _in_days(365))

        with pytest.raises(PointsTransactionNotFoundError):
            await service.delete_pending(transaction.id, "user-1")

    @pytest.mark.unit
    async def test_delete_for_other_user_refused(self, db_session):
        service = PointsService(db_session)
        transaction = await service.earn("user-1", "5.00", "order-1", True, _in_days(365))
        await service.get_wallet("user-2")

        with pytest.raises(PointsTransactionNotFoundError):
            await service.delete_pending(transaction.id, "user-2")


class TestHistory:

    @pytest.mark.unit
    async def test_history_filtered_by_status(self, db_session):
        service = PointsService(db_session)
        await service.earn("user-1", "5.00", "order-1", True, _in_days(365))
        await service.earn("user-1", "3.00", "order-2", False, _in_days(365))

        pending = await service.get_history("user-1", status=PointsTransactionStatus.PENDING)
        everything = await service.get_history("user-1")

        assert [t.external_ref for t in pending] == ["order-1"]
        assert [t.external_ref for t in everything] == ["order-2", "order-1"]

    @pytest.mark.unit
    async def test_get_wallet_creates_empty_wallet(self, db_session):
        wallet = await PointsService(db_session).get_wallet("new-user")

        assert wallet.user_ref == "new-user"
        assert wallet.available_balance == Decimal("0.00")
        assert wallet.pending_balance == Decimal("0.00")
