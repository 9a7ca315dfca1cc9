"""
Settlement Service - Turns a qualifying external event into ledger entries

A settlement pays the user's reward out of the merchant's budget and credits
it to the user's points wallet as a pending (unverified) earn. The two
ledgers may live in separate stores, so the flow is a saga rather than one
transaction:

1. Idempotency gate on external_ref
2. Resolve the merchant's active campaign
3. reward = base_amount * rate / 100, half-up to cents
4. Budget debit (payout)
5. Points earn; a non-transient failure is compensated with a budget refund
6. Best-effort verification reminder

The debit always comes first, so a crash between steps 4 and 5 leaves a
payout without an earn. The gate recognises that state and resumes at
step 5 on the next attempt instead of debiting again.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AppException, DuplicateSettlementError, ValidationException
from app.core.logging import get_logger
from app.core.validation import AmountValidator, ReferenceValidator
from app.db.database import utcnow
from app.db.models.budget_transaction import BudgetTransaction, BudgetTransactionType
from app.db.models.due_item import DueItemKind
from app.db.models.points_transaction import PointsTransaction, PointsTransactionKind
from app.domain.services.budget_service import BudgetService
from app.domain.services.campaign_resolver import CampaignLookup, CampaignResolver
from app.domain.services.dispatcher_service import ClaimDispatcher
from app.domain.services.points_service import PointsService

logger = get_logger(__name__)

VERIFICATION_REMINDER_TEMPLATE = "verification_reminder"


@dataclass
class SettlementRequest:
    external_ref: str
    merchant_ref: str
    user_ref: str
    base_amount: Decimal
    campaign_ref: str | None = None


@dataclass
class SettlementResult:
    budget_transaction: BudgetTransaction
    points_transaction: PointsTransaction
    reward_amount: Decimal
    rate: Decimal | None  # None when resuming: the rate is whatever the original payout used
    resumed: bool = False


def calculate_reward(base_amount: Decimal, rate: Decimal) -> Decimal:
    """base * rate / 100, rounded half-up to the smallest currency unit"""
    return AmountValidator.quantize(Decimal(base_amount) * Decimal(rate) / Decimal("100"))


class SettlementService:
    """
    Exactly-once settlement per external_ref.

    ``budget_db`` and ``wallet_db`` may be the same session. Due items
    (the expiry item and the reminder) live next to the wallet.
    """

    def __init__(
        self,
        budget_db: AsyncSession,
        wallet_db: AsyncSession | None = None,
        campaigns: CampaignLookup | None = None,
    ):
        wallet_db = wallet_db or budget_db
        self.budget = BudgetService(budget_db)
        self.points = PointsService(wallet_db)
        self.dispatcher = ClaimDispatcher(wallet_db)
        self.campaigns = campaigns or CampaignResolver(budget_db)

    async def settle(self, request: SettlementRequest) -> SettlementResult:
        """
        Raises:
            ValidationException: malformed request or zero reward
            DuplicateSettlementError: external_ref already settled or compensated
            NoActiveCampaignError: no campaign applies to the merchant now
            InsufficientFundsError / AccountNotFoundError / AccountInactiveError
            LedgerUnavailableError: transient; retrying the same request is safe
        """
        external_ref = ReferenceValidator.validate(request.external_ref, "external_ref", max_length=200)
        merchant_ref = ReferenceValidator.validate(request.merchant_ref, "merchant_ref")
        user_ref = ReferenceValidator.validate(request.user_ref, "user_ref")
        base_amount = AmountValidator.validate(request.base_amount, field="base_amount")

        # 1. Idempotency gate
        earned = [
            t for t in await self.points.get_by_external_ref(external_ref)
            if t.kind == PointsTransactionKind.EARN
        ]
        if earned:
            raise DuplicateSettlementError(external_ref)

        budget_rows = await self.budget.find_by_external_ref(external_ref)
        if any(t.type == BudgetTransactionType.REFUND for t in budget_rows):
            raise DuplicateSettlementError(external_ref, state="compensated")

        payout = next((t for t in budget_rows if t.type == BudgetTransactionType.PAYOUT), None)
        if payout is not None:
            if payout.merchant_ref != merchant_ref:
                raise DuplicateSettlementError(external_ref)
            logger.warning(
                "Resuming settlement with payout but no points credit",
                extra_data={"external_ref": external_ref, "budget_transaction_id": payout.id}
            )
            points_transaction = await self._credit_points(
                external_ref, merchant_ref, user_ref, payout.amount, resumed=True
            )
            await self._schedule_reminder(user_ref, points_transaction)
            return SettlementResult(
                budget_transaction=payout,
                points_transaction=points_transaction,
                reward_amount=payout.amount,
                rate=None,
                resumed=True,
            )

        # 2. Campaign
        campaign = await self.campaigns.resolve(merchant_ref, request.campaign_ref)

        # 3. Reward
        reward = calculate_reward(base_amount, campaign.rate)
        if reward <= 0:
            raise ValidationException(
                "Reward rounds to zero for this base amount",
                field="base_amount",
                details={"rate": str(campaign.rate)},
            )

        # 4. Budget debit
        try:
            payout = await self.budget.debit(
                merchant_ref,
                reward,
                f"Cashback for {external_ref}",
                external_ref=external_ref,
                processed_by="settlement",
            )
        except IntegrityError as e:
            # A concurrent settle of the same event won the payout
            raise DuplicateSettlementError(external_ref) from e

        # 5. Points credit
        points_transaction = await self._credit_points(
            external_ref, merchant_ref, user_ref, reward, resumed=False
        )

        # 6. Reminder
        await self._schedule_reminder(user_ref, points_transaction)

        logger.info(
            "Settlement completed",
            extra_data={
                "external_ref": external_ref,
                "merchant_ref": merchant_ref,
                "user_ref": user_ref,
                "campaign_ref": campaign.campaign_ref,
                "rate": campaign.rate,
                "reward_amount": reward,
            }
        )
        return SettlementResult(
            budget_transaction=payout,
            points_transaction=points_transaction,
            reward_amount=reward,
            rate=campaign.rate,
        )

    async def _credit_points(
        self,
        external_ref: str,
        merchant_ref: str,
        user_ref: str,
        reward: Decimal,
        *,
        resumed: bool,
    ) -> PointsTransaction:
        now = utcnow()
        try:
            return await self.points.earn(
                user_ref,
                reward,
                external_ref,
                verification_required=True,
                expires_at=now + timedelta(days=settings.POINTS_EXPIRY_DAYS),
                description=f"Cashback for {external_ref}",
                verification_deadline=now + timedelta(hours=settings.VERIFICATION_WINDOW_HOURS),
            )
        except IntegrityError as e:
            if resumed:
                # A concurrent resume already credited this payout
                raise DuplicateSettlementError(external_ref) from e
            await self._compensate(external_ref, merchant_ref, reward, e)
            raise DuplicateSettlementError(external_ref) from e
        except AppException as e:
            if e.retryable:
                # Leave payout-without-credit in place; a retry resumes at the credit
                logger.warning(
                    "Points credit unavailable, settlement left resumable",
                    extra_data={"external_ref": external_ref, "error": e.message}
                )
                raise
            await self._compensate(external_ref, merchant_ref, reward, e)
            raise
        except Exception as e:
            await self._compensate(external_ref, merchant_ref, reward, e)
            raise

    async def _compensate(
        self,
        external_ref: str,
        merchant_ref: str,
        reward: Decimal,
        cause: BaseException,
    ) -> None:
        """Refund the payout; on failure the state stays resumable and is logged"""
        try:
            await self.budget.credit(
                merchant_ref,
                reward,
                f"Compensation for {external_ref}",
                kind=BudgetTransactionType.REFUND,
                external_ref=external_ref,
                processed_by="settlement",
            )
        except Exception:
            logger.error(
                "Settlement compensation failed",
                extra_data={
                    "external_ref": external_ref,
                    "merchant_ref": merchant_ref,
                    "amount": reward,
                    "cause": type(cause).__name__,
                },
                exc_info=True,
            )
            return

        logger.warning(
            "Settlement compensated",
            extra_data={
                "external_ref": external_ref,
                "merchant_ref": merchant_ref,
                "amount": reward,
                "cause": type(cause).__name__,
            }
        )

    async def _schedule_reminder(
        self, user_ref: str, points_transaction: PointsTransaction
    ) -> None:
        deadline = points_transaction.verification_deadline
        try:
            await self.dispatcher.schedule(
                DueItemKind.NOTIFICATION,
                f"verification_reminder:{points_transaction.external_ref}",
                {
                    "user_ref": user_ref,
                    "template": VERIFICATION_REMINDER_TEMPLATE,
                    "data": {
                        "external_ref": points_transaction.external_ref,
                        "amount": str(points_transaction.amount),
                        "verification_deadline": deadline.isoformat() if deadline else None,
                    },
                },
            )
        except Exception as e:
            logger.warning(
                "Verification reminder not scheduled",
                extra_data={
                    "external_ref": points_transaction.external_ref,
                    "error_type": type(e).__name__,
                    "error": str(e),
                }
            )
