"""
Budget Service - Merchant-funded cashback budget ledger

Every mutation follows the same atomic pattern:
1. Lock the account row (SELECT ... FOR UPDATE)
2. Compute balance_after from the locked balance_before
3. Reject before touching anything if the result would be invalid
4. Insert the BudgetTransaction and update the account
5. Commit once; roll back on any error

Reads never lock. Concurrent debits against one merchant serialize on the
row lock; different merchants never block each other. Nothing here retries
on its own: the caller decides, since funds movement must not duplicate.
"""
from decimal import Decimal
from typing import Any

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    InsufficientFundsError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import AmountValidator, ReferenceValidator, TextSanitizer
from app.db.database import translate_store_errors
from app.db.models.budget_account import BudgetAccount, BudgetAccountStatus
from app.db.models.budget_transaction import BudgetTransaction, BudgetTransactionType

logger = get_logger(__name__)

ZERO = Decimal("0.00")


class BudgetService:
    """Debit/credit of merchant funds with an audit trail"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _select_account(
        self, merchant_ref: str, for_update: bool = False
    ) -> BudgetAccount | None:
        query = select(BudgetAccount).where(BudgetAccount.merchant_ref == merchant_ref)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_account(self, merchant_ref: str) -> BudgetAccount:
        """Current account state; raises AccountNotFoundError"""
        account = await self._select_account(merchant_ref)
        if not account:
            raise AccountNotFoundError(merchant_ref)
        return account

    async def get_or_create_account(
        self, merchant_ref: str, for_update: bool = False
    ) -> BudgetAccount:
        """
        Get the merchant's account, creating an empty active one if missing.

        A concurrent creator may win the unique merchant_ref race; the loser
        rolls back its insert and re-reads the winner's row.
        """
        account = await self._select_account(merchant_ref, for_update=for_update)
        if account:
            return account

        account = BudgetAccount(
            merchant_ref=merchant_ref,
            current_balance=ZERO,
            total_loaded=ZERO,
            total_spent=ZERO,
            status=BudgetAccountStatus.ACTIVE,
        )
        self.db.add(account)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            account = await self._select_account(merchant_ref, for_update=for_update)
            if not account:
                raise
            return account

        logger.info(
            "Budget account created",
            extra_data={"merchant_ref": merchant_ref}
        )
        return account

    async def debit(
        self,
        merchant_ref: str,
        amount: Any,
        reason: str | None = None,
        *,
        external_ref: str | None = None,
        processed_by: str = "system",
    ) -> BudgetTransaction:
        """
        Pay out of the merchant's budget.

        Raises:
            ValidationException: malformed amount or reference
            AccountNotFoundError: the merchant has never been funded
            AccountInactiveError: the account is suspended
            InsufficientFundsError: the debit would make the balance negative
            LedgerUnavailableError: lock-wait timeout or store unavailable
        """
        merchant_ref = ReferenceValidator.validate(merchant_ref, "merchant_ref")
        amount = AmountValidator.validate(amount)

        try:
            with translate_store_errors("budget.debit"):
                account = await self._select_account(merchant_ref, for_update=True)
                if not account:
                    raise AccountNotFoundError(merchant_ref)

                if account.status != BudgetAccountStatus.ACTIVE:
                    raise AccountInactiveError(merchant_ref, account.status.value)

                balance_before = account.current_balance
                balance_after = balance_before - amount
                if balance_after < 0:
                    raise InsufficientFundsError(merchant_ref, balance_before, amount)

                transaction = self._record(
                    account,
                    BudgetTransactionType.PAYOUT,
                    amount,
                    balance_before,
                    balance_after,
                    reason,
                    processed_by,
                    external_ref,
                )
                account.current_balance = balance_after
                account.total_spent = account.total_spent + amount

                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "Budget debit rejected",
                extra_data={
                    "merchant_ref": merchant_ref,
                    "amount": amount,
                    "external_ref": external_ref,
                    "error_type": type(e).__name__,
                }
            )
            raise

        logger.info(
            "Budget debited",
            extra_data={
                "merchant_ref": merchant_ref,
                "amount": amount,
                "balance_after": balance_after,
                "external_ref": external_ref,
                "transaction_id": transaction.id,
            }
        )
        return transaction

    async def credit(
        self,
        merchant_ref: str,
        amount: Any,
        reason: str | None = None,
        *,
        kind: BudgetTransactionType = BudgetTransactionType.LOAD,
        external_ref: str | None = None,
        processed_by: str = "system",
    ) -> BudgetTransaction:
        """
        Add funds to the merchant's budget.

        ``load`` is merchant funding and creates the account on first use.
        ``refund`` reverses an earlier payout, so it needs an existing
        account and lowers total_spent. Credits are accepted on suspended
        accounts so compensations can always land.
        """
        merchant_ref = ReferenceValidator.validate(merchant_ref, "merchant_ref")
        amount = AmountValidator.validate(amount)
        if kind == BudgetTransactionType.PAYOUT:
            raise ValidationException("payout is a debit, not a credit", field="kind")

        try:
            with translate_store_errors("budget.credit"):
                if kind == BudgetTransactionType.LOAD:
                    account = await self.get_or_create_account(merchant_ref, for_update=True)
                else:
                    account = await self._select_account(merchant_ref, for_update=True)
                    if not account:
                        raise AccountNotFoundError(merchant_ref)
                    if amount > account.total_spent:
                        raise ValidationException(
                            "Refund exceeds the amount paid out of this budget",
                            field="amount",
                            details={"total_spent": str(account.total_spent)},
                        )

                balance_before = account.current_balance
                balance_after = balance_before + amount

                transaction = self._record(
                    account,
                    kind,
                    amount,
                    balance_before,
                    balance_after,
                    reason,
                    processed_by,
                    external_ref,
                )
                account.current_balance = balance_after
                if kind == BudgetTransactionType.LOAD:
                    account.total_loaded = account.total_loaded + amount
                else:
                    account.total_spent = account.total_spent - amount

                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "Budget credit rejected",
                extra_data={
                    "merchant_ref": merchant_ref,
                    "amount": amount,
                    "kind": kind.value,
                    "external_ref": external_ref,
                    "error_type": type(e).__name__,
                }
            )
            raise

        logger.info(
            "Budget credited",
            extra_data={
                "merchant_ref": merchant_ref,
                "amount": amount,
                "kind": kind.value,
                "balance_after": balance_after,
                "external_ref": external_ref,
                "transaction_id": transaction.id,
            }
        )
        return transaction

    async def load_funds(
        self,
        merchant_ref: str,
        amount: Any,
        processed_by: str = "admin",
        description: str | None = None,
    ) -> BudgetTransaction:
        """Merchant funding"""
        return await self.credit(
            merchant_ref,
            amount,
            description or "Budget load",
            kind=BudgetTransactionType.LOAD,
            processed_by=processed_by,
        )

    async def set_status(
        self, merchant_ref: str, status: BudgetAccountStatus
    ) -> BudgetAccount:
        """Suspend or reactivate an account"""
        try:
            with translate_store_errors("budget.set_status"):
                account = await self._select_account(merchant_ref, for_update=True)
                if not account:
                    raise AccountNotFoundError(merchant_ref)
                previous = account.status
                account.status = status
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Budget account status changed",
            extra_data={
                "merchant_ref": merchant_ref,
                "old_status": previous.value,
                "new_status": status.value,
            }
        )
        return account

    async def get_history(
        self, merchant_ref: str, limit: int = 50
    ) -> list[BudgetTransaction]:
        """Newest first"""
        result = await self.db.execute(
            select(BudgetTransaction)
            .where(BudgetTransaction.merchant_ref == merchant_ref)
            .order_by(BudgetTransaction.created_at.desc(), BudgetTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_by_external_ref(self, external_ref: str) -> list[BudgetTransaction]:
        result = await self.db.execute(
            select(BudgetTransaction)
            .where(BudgetTransaction.external_ref == external_ref)
            .order_by(BudgetTransaction.id)
        )
        return list(result.scalars().all())

    async def check_invariants(self, merchant_ref: str) -> dict[str, Any]:
        """
        Reconcile stored totals against the transaction log.

        Returns a report with the stored and derived values and a
        ``consistent`` flag covering both
        current_balance == total_loaded - total_spent >= 0 and the match
        between stored totals and the sums of the audit rows.
        """
        account = await self.get_account(merchant_ref)

        result = await self.db.execute(
            select(BudgetTransaction.type, func.coalesce(func.sum(BudgetTransaction.amount), 0))
            .where(BudgetTransaction.account_id == account.id)
            .group_by(BudgetTransaction.type)
        )
        sums = {row[0]: Decimal(str(row[1])) for row in result.all()}
        loaded = sums.get(BudgetTransactionType.LOAD, ZERO)
        spent = sums.get(BudgetTransactionType.PAYOUT, ZERO) - sums.get(BudgetTransactionType.REFUND, ZERO)

        consistent = (
            account.current_balance == account.total_loaded - account.total_spent
            and account.current_balance >= 0
            and account.total_loaded == loaded
            and account.total_spent == spent
        )
        if not consistent:
            logger.error(
                "Budget account out of balance",
                extra_data={"merchant_ref": merchant_ref}
            )

        return {
            "merchant_ref": merchant_ref,
            "current_balance": account.current_balance,
            "total_loaded": account.total_loaded,
            "total_spent": account.total_spent,
            "ledger_loaded": AmountValidator.quantize(loaded),
            "ledger_spent": AmountValidator.quantize(spent),
            "consistent": consistent,
        }

    def _record(
        self,
        account: BudgetAccount,
        kind: BudgetTransactionType,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        reason: str | None,
        processed_by: str,
        external_ref: str | None,
    ) -> BudgetTransaction:
        transaction = BudgetTransaction(
            account_id=account.id,
            merchant_ref=account.merchant_ref,
            type=kind,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=TextSanitizer.sanitize(reason),
            processed_by=processed_by,
            external_ref=external_ref,
        )
        self.db.add(transaction)
        return transaction
