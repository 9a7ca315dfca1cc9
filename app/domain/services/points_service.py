"""
Points Service - Per-user points wallet ledger

Value moves through pending -> available -> expired. Redemptions are
negative entries in the available bucket. The WalletBalance row is the only
aggregate and is written exclusively here, in the same commit as the
PointsTransaction rows it summarizes. Every mutation locks the user's
WalletBalance row before touching that user's transactions.
"""
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    InsufficientAvailableBalanceError,
    PointsTransactionNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import AmountValidator, ReferenceValidator, TextSanitizer
from app.db.database import translate_store_errors, utcnow
from app.db.models.due_item import DueItem, DueItemKind, DueItemStatus
from app.db.models.points_transaction import (
    PointsTransaction,
    PointsTransactionKind,
    PointsTransactionStatus,
)
from app.db.models.wallet_balance import WalletBalance

logger = get_logger(__name__)

ZERO = Decimal("0.00")

_LIVE_STATUSES = (PointsTransactionStatus.PENDING, PointsTransactionStatus.AVAILABLE)


def expiry_payload_ref(transaction_id: int) -> str:
    return f"points_transaction:{transaction_id}"


class PointsService:
    """Earn/redeem/verify/expire operations for user points"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _select_wallet(
        self, user_ref: str, for_update: bool = False
    ) -> WalletBalance | None:
        query = select(WalletBalance).where(WalletBalance.user_ref == user_ref)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _lock_wallet(self, user_ref: str) -> WalletBalance:
        """Lock the user's wallet row, creating it on first use"""
        wallet = await self._select_wallet(user_ref, for_update=True)
        if wallet:
            return wallet

        wallet = WalletBalance(
            user_ref=user_ref,
            available_balance=ZERO,
            pending_balance=ZERO,
            total_earned=ZERO,
            total_redeemed=ZERO,
            total_expired=ZERO,
        )
        self.db.add(wallet)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost the creation race; the winner's row is there now
            await self.db.rollback()
            wallet = await self._select_wallet(user_ref, for_update=True)
            if not wallet:
                raise
        return wallet

    async def get_wallet(self, user_ref: str) -> WalletBalance:
        """Get the user's wallet, creating an empty one if missing"""
        wallet = await self._select_wallet(user_ref)
        if wallet:
            return wallet

        try:
            with translate_store_errors("points.get_wallet"):
                wallet = await self._lock_wallet(user_ref)
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return wallet

    async def earn(
        self,
        user_ref: str,
        amount: Any,
        external_ref: str | None,
        verification_required: bool,
        expires_at: datetime | None,
        *,
        description: str | None = None,
        verification_deadline: datetime | None = None,
    ) -> PointsTransaction:
        """
        Credit points to a user.

        The entry starts ``pending`` when verification is required and
        ``available`` otherwise; the amount lands in the matching bucket.
        An expiry due item is queued in the same commit when ``expires_at``
        is set. The ledger does not deduplicate by external_ref beyond the
        unique (external_ref, kind) constraint, which surfaces as
        IntegrityError; callers own idempotency.
        """
        user_ref = ReferenceValidator.validate(user_ref, "user_ref")
        amount = AmountValidator.validate(amount)
        if external_ref is not None:
            external_ref = ReferenceValidator.validate(external_ref, "external_ref", max_length=200)

        now = utcnow()
        if expires_at is not None and expires_at <= now:
            raise ValidationException("expires_at must be in the future", field="expires_at")

        status = (
            PointsTransactionStatus.PENDING
            if verification_required
            else PointsTransactionStatus.AVAILABLE
        )

        try:
            with translate_store_errors("points.earn"):
                wallet = await self._lock_wallet(user_ref)

                transaction = PointsTransaction(
                    user_ref=user_ref,
                    amount=amount,
                    kind=PointsTransactionKind.EARN,
                    status=status,
                    external_ref=external_ref,
                    description=TextSanitizer.sanitize(description),
                    verification_required=verification_required,
                    verification_deadline=verification_deadline if verification_required else None,
                    expires_at=expires_at,
                    processed_at=None if verification_required else now,
                )
                self.db.add(transaction)
                await self.db.flush()

                if status == PointsTransactionStatus.PENDING:
                    wallet.pending_balance = wallet.pending_balance + amount
                else:
                    wallet.available_balance = wallet.available_balance + amount
                    wallet.total_earned = wallet.total_earned + amount

                if expires_at is not None:
                    self.db.add(
                        DueItem(
                            kind=DueItemKind.POINTS_EXPIRY,
                            payload_ref=expiry_payload_ref(transaction.id),
                            payload={"transaction_id": transaction.id, "user_ref": user_ref},
                            scheduled_at=expires_at,
                            status=DueItemStatus.PENDING,
                            retry_count=0,
                            max_retries=settings.DUE_ITEM_MAX_RETRIES,
                        )
                    )

                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "Points earn rejected",
                extra_data={
                    "user_ref": user_ref,
                    "amount": amount,
                    "external_ref": external_ref,
                    "error_type": type(e).__name__,
                }
            )
            raise

        logger.info(
            "Points earned",
            extra_data={
                "user_ref": user_ref,
                "amount": amount,
                "status": status.value,
                "external_ref": external_ref,
                "transaction_id": transaction.id,
            }
        )
        return transaction

    async def redeem(
        self,
        user_ref: str,
        amount: Any,
        description: str | None = None,
    ) -> PointsTransaction:
        """
        Spend available points. Fails closed: no partial redemption.

        Raises:
            ValidationException: amount outside the redemption bounds
            InsufficientAvailableBalanceError: available < amount
        """
        user_ref = ReferenceValidator.validate(user_ref, "user_ref")
        amount = AmountValidator.validate(
            amount,
            min_value=Decimal(str(settings.POINTS_MIN_REDEMPTION)),
            max_value=Decimal(str(settings.POINTS_MAX_REDEMPTION)),
        )

        try:
            with translate_store_errors("points.redeem"):
                wallet = await self._lock_wallet(user_ref)

                if wallet.available_balance < amount:
                    raise InsufficientAvailableBalanceError(
                        user_ref, wallet.available_balance, amount
                    )

                transaction = PointsTransaction(
                    user_ref=user_ref,
                    amount=-amount,
                    kind=PointsTransactionKind.REDEEM,
                    status=PointsTransactionStatus.AVAILABLE,
                    description=TextSanitizer.sanitize(description) or "Points redemption",
                    verification_required=False,
                    processed_at=utcnow(),
                )
                self.db.add(transaction)

                wallet.available_balance = wallet.available_balance - amount
                wallet.total_redeemed = wallet.total_redeemed + amount

                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "Points redemption rejected",
                extra_data={
                    "user_ref": user_ref,
                    "amount": amount,
                    "error_type": type(e).__name__,
                }
            )
            raise

        logger.info(
            "Points redeemed",
            extra_data={
                "user_ref": user_ref,
                "amount": amount,
                "available_balance": wallet.available_balance,
                "transaction_id": transaction.id,
            }
        )
        return transaction

    async def verify(self, external_ref: str) -> int:
        """
        Move every pending entry for ``external_ref`` into the available bucket.

        Safe to call repeatedly: once verified, nothing is pending and the
        call returns 0. An unknown reference is not an error.
        """
        external_ref = ReferenceValidator.validate(external_ref, "external_ref", max_length=200)

        result = await self.db.execute(
            select(PointsTransaction.user_ref)
            .where(
                PointsTransaction.external_ref == external_ref,
                PointsTransaction.status == PointsTransactionStatus.PENDING,
            )
            .distinct()
        )
        user_refs = sorted(result.scalars().all())
        if not user_refs:
            return 0

        now = utcnow()
        updated = 0
        try:
            with translate_store_errors("points.verify"):
                for user_ref in user_refs:
                    wallet = await self._lock_wallet(user_ref)
                    # Re-read under the wallet lock; a concurrent verify may have won
                    pending = await self.db.execute(
                        select(PointsTransaction)
                        .where(
                            PointsTransaction.external_ref == external_ref,
                            PointsTransaction.user_ref == user_ref,
                            PointsTransaction.status == PointsTransactionStatus.PENDING,
                        )
                        .with_for_update()
                    )
                    for transaction in pending.scalars().all():
                        transaction.status = PointsTransactionStatus.AVAILABLE
                        transaction.processed_at = now
                        wallet.pending_balance = wallet.pending_balance - transaction.amount
                        wallet.available_balance = wallet.available_balance + transaction.amount
                        wallet.total_earned = wallet.total_earned + transaction.amount
                        updated += 1

                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Points verified",
            extra_data={"external_ref": external_ref, "updated_count": updated}
        )
        return updated

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """
        Expire every pending or available earn whose expires_at has passed.

        Commits per user so one contended wallet does not hold back the rest.
        Returns the number of transactions expired.
        """
        now = now or utcnow()

        result = await self.db.execute(
            select(PointsTransaction.id, PointsTransaction.user_ref)
            .where(
                PointsTransaction.kind == PointsTransactionKind.EARN,
                PointsTransaction.status.in_(_LIVE_STATUSES),
                PointsTransaction.expires_at.is_not(None),
                PointsTransaction.expires_at <= now,
            )
        )
        by_user: dict[str, list[int]] = defaultdict(list)
        for transaction_id, user_ref in result.all():
            by_user[user_ref].append(transaction_id)

        expired = 0
        for user_ref in sorted(by_user):
            try:
                with translate_store_errors("points.sweep_expired"):
                    wallet = await self._lock_wallet(user_ref)
                    rows = await self.db.execute(
                        select(PointsTransaction)
                        .where(
                            PointsTransaction.id.in_(by_user[user_ref]),
                            PointsTransaction.status.in_(_LIVE_STATUSES),
                        )
                        .with_for_update()
                    )
                    count = 0
                    for transaction in rows.scalars().all():
                        self._apply_expiry(wallet, transaction, now)
                        count += 1
                    await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
            expired += count

        if expired:
            logger.info(
                "Expired points swept",
                extra_data={"expired_count": expired, "users": len(by_user)}
            )
        return expired

    async def expire_transaction(
        self, transaction_id: int, now: datetime | None = None
    ) -> bool:
        """
        Expire a single earn if it is still live and due.

        Returns False when there is nothing to do (already verified-and-
        expired, deleted, redeemed bucket, or not due yet).
        """
        now = now or utcnow()

        result = await self.db.execute(
            select(PointsTransaction.user_ref).where(PointsTransaction.id == transaction_id)
        )
        user_ref = result.scalar_one_or_none()
        if user_ref is None:
            return False

        try:
            with translate_store_errors("points.expire_transaction"):
                wallet = await self._lock_wallet(user_ref)
                rows = await self.db.execute(
                    select(PointsTransaction)
                    .where(PointsTransaction.id == transaction_id)
                    .with_for_update()
                )
                transaction = rows.scalar_one_or_none()

                if (
                    transaction is None
                    or transaction.kind != PointsTransactionKind.EARN
                    or transaction.status not in _LIVE_STATUSES
                    or transaction.expires_at is None
                    or transaction.expires_at > now
                ):
                    await self.db.rollback()
                    return False

                self._apply_expiry(wallet, transaction, now)
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Points transaction expired",
            extra_data={
                "user_ref": user_ref,
                "transaction_id": transaction_id,
                "amount": transaction.amount,
            }
        )
        return True

    async def delete_pending(self, transaction_id: int, user_ref: str) -> None:
        """
        Remove an unverified pending earn together with its pending amount
        and its queued expiry item.
        """
        try:
            with translate_store_errors("points.delete_pending"):
                wallet = await self._select_wallet(user_ref, for_update=True)
                if not wallet:
                    raise PointsTransactionNotFoundError(transaction_id)

                result = await self.db.execute(
                    select(PointsTransaction)
                    .where(
                        PointsTransaction.id == transaction_id,
                        PointsTransaction.user_ref == user_ref,
                        PointsTransaction.kind == PointsTransactionKind.EARN,
                        PointsTransaction.status == PointsTransactionStatus.PENDING,
                    )
                    .with_for_update()
                )
                transaction = result.scalar_one_or_none()
                if not transaction:
                    raise PointsTransactionNotFoundError(transaction_id)

                amount = transaction.amount
                wallet.pending_balance = wallet.pending_balance - amount
                await self.db.delete(transaction)
                await self.db.execute(
                    delete(DueItem).where(
                        DueItem.kind == DueItemKind.POINTS_EXPIRY,
                        DueItem.payload_ref == expiry_payload_ref(transaction_id),
                        DueItem.status == DueItemStatus.PENDING,
                        # A leased item belongs to a running dispatcher; its
                        # handler finds the transaction gone and does nothing
                        or_(DueItem.claimed_until.is_(None), DueItem.claimed_until < utcnow()),
                    )
                )
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Pending points transaction deleted",
            extra_data={"user_ref": user_ref, "transaction_id": transaction_id, "amount": amount}
        )

    async def get_history(
        self,
        user_ref: str,
        limit: int = 50,
        status: PointsTransactionStatus | None = None,
    ) -> list[PointsTransaction]:
        query = select(PointsTransaction).where(PointsTransaction.user_ref == user_ref)
        if status is not None:
            query = query.where(PointsTransaction.status == status)
        result = await self.db.execute(
            query.order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_external_ref(self, external_ref: str) -> list[PointsTransaction]:
        result = await self.db.execute(
            select(PointsTransaction)
            .where(PointsTransaction.external_ref == external_ref)
            .order_by(PointsTransaction.id)
        )
        return list(result.scalars().all())

    async def get_expiring_soon(
        self, user_ref: str, days: int | None = None
    ) -> list[PointsTransaction]:
        """Live earns expiring within the warning window, soonest first"""
        now = utcnow()
        horizon = now + timedelta(days=days or settings.EXPIRATION_WARNING_DAYS)
        result = await self.db.execute(
            select(PointsTransaction)
            .where(
                PointsTransaction.user_ref == user_ref,
                PointsTransaction.kind == PointsTransactionKind.EARN,
                PointsTransaction.status.in_(_LIVE_STATUSES),
                PointsTransaction.expires_at > now,
                PointsTransaction.expires_at <= horizon,
            )
            .order_by(PointsTransaction.expires_at)
        )
        return list(result.scalars().all())

    async def check_invariants(self, user_ref: str) -> dict[str, Any]:
        """
        Compare the stored buckets with the sums of the user's transactions.

        available_balance must equal the sum of available amounts (redeems
        included, they are negative) and pending_balance the sum of pending
        amounts.
        """
        wallet = await self._select_wallet(user_ref)
        result = await self.db.execute(
            select(
                PointsTransaction.status,
                func.coalesce(func.sum(PointsTransaction.amount), 0),
            )
            .where(PointsTransaction.user_ref == user_ref)
            .group_by(PointsTransaction.status)
        )
        sums = {row[0]: Decimal(str(row[1])) for row in result.all()}
        ledger_available = AmountValidator.quantize(sums.get(PointsTransactionStatus.AVAILABLE, ZERO))
        ledger_pending = AmountValidator.quantize(sums.get(PointsTransactionStatus.PENDING, ZERO))

        available = wallet.available_balance if wallet else ZERO
        pending = wallet.pending_balance if wallet else ZERO
        consistent = available == ledger_available and pending == ledger_pending
        if not consistent:
            logger.error(
                "Points wallet out of balance",
                extra_data={"user_ref": user_ref}
            )

        return {
            "user_ref": user_ref,
            "available_balance": available,
            "pending_balance": pending,
            "ledger_available": ledger_available,
            "ledger_pending": ledger_pending,
            "consistent": consistent,
        }

    @staticmethod
    def _apply_expiry(
        wallet: WalletBalance, transaction: PointsTransaction, now: datetime
    ) -> None:
        if transaction.status == PointsTransactionStatus.PENDING:
            wallet.pending_balance = wallet.pending_balance - transaction.amount
        else:
            wallet.available_balance = wallet.available_balance - transaction.amount
        wallet.total_expired = wallet.total_expired + transaction.amount
        transaction.status = PointsTransactionStatus.EXPIRED
        transaction.processed_at = now
