"""
Settlement API Routes
"""
from decimal import Decimal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.routes.schemas import BudgetTransactionResponse, PointsTransactionResponse
from app.core.validation import money_validator, optional_reference_validator, reference_validator
from app.db.database import get_db
from app.domain.services.settlement_service import SettlementRequest, SettlementService

router = APIRouter()


class SettlementCreate(BaseModel):
    external_ref: str
    merchant_ref: str
    user_ref: str
    base_amount: Decimal
    campaign_ref: str | None = None

    @field_validator("external_ref")
    @classmethod
    def validate_external_ref(cls, v: str) -> str:
        return reference_validator(v, max_length=200)

    @field_validator("merchant_ref", "user_ref")
    @classmethod
    def validate_refs(cls, v: str) -> str:
        return reference_validator(v)

    @field_validator("campaign_ref")
    @classmethod
    def validate_campaign_ref(cls, v: str | None) -> str | None:
        return optional_reference_validator(v)

    @field_validator("base_amount", mode="before")
    @classmethod
    def validate_base_amount(cls, v) -> Decimal:
        return money_validator(v)


class SettlementResponse(BaseModel):
    budget_transaction: BudgetTransactionResponse
    points_transaction: PointsTransactionResponse
    reward_amount: Decimal
    rate: Decimal | None
    resumed: bool


@router.post(
    "",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Settle a qualifying external event",
    description=(
        "Debits the merchant's cashback budget and credits the user a pending "
        "points earn, exactly once per external_ref."
    ),
    responses={
        201: {"description": "Settlement created (or resumed)"},
        400: {"description": "Malformed request"},
        404: {"description": "Merchant has no budget account"},
        409: {"description": "Duplicate external_ref, insufficient funds or suspended account"},
        422: {"description": "No active campaign for the merchant"},
        503: {"description": "Ledger temporarily unavailable, safe to retry"},
    },
)
async def create_settlement(
    data: SettlementCreate,
    db: AsyncSession = Depends(get_db)
):
    """Settle an external event"""
    service = SettlementService(db)
    result = await service.settle(
        SettlementRequest(
            external_ref=data.external_ref,
            merchant_ref=data.merchant_ref,
            user_ref=data.user_ref,
            base_amount=data.base_amount,
            campaign_ref=data.campaign_ref,
        )
    )
    return SettlementResponse(
        budget_transaction=BudgetTransactionResponse.model_validate(result.budget_transaction),
        points_transaction=PointsTransactionResponse.model_validate(result.points_transaction),
        reward_amount=result.reward_amount,
        rate=result.rate,
        resumed=result.resumed,
    )
