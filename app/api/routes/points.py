"""
Points Wallet API Routes
"""
from datetime import timedelta
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.routes.schemas import PointsTransactionResponse, WalletResponse
from app.core.config import settings
from app.core.exceptions import ConflictException, ErrorCode
from app.core.validation import (
    ReferenceValidator,
    money_validator,
    optional_reference_validator,
    reference_validator,
)
from app.db.database import get_db, utcnow
from app.db.models.points_transaction import PointsTransactionStatus
from app.domain.services.points_service import PointsService

router = APIRouter()


class VerificationRequest(BaseModel):
    external_ref: str

    @field_validator("external_ref")
    @classmethod
    def validate_external_ref(cls, v: str) -> str:
        return reference_validator(v, max_length=200)


class VerificationResponse(BaseModel):
    external_ref: str
    updated_count: int


class RedeemRequest(BaseModel):
    amount: Decimal
    description: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v) -> Decimal:
        return money_validator(v)


class EarnRequest(BaseModel):
    amount: Decimal
    external_ref: str | None = None
    verification_required: bool = False
    description: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v) -> Decimal:
        return money_validator(v)

    @field_validator("external_ref")
    @classmethod
    def validate_external_ref(cls, v: str | None) -> str | None:
        return optional_reference_validator(v, max_length=200)


class InvariantReport(BaseModel):
    user_ref: str
    available_balance: Decimal
    pending_balance: Decimal
    ledger_available: Decimal
    ledger_pending: Decimal
    consistent: bool


@router.post(
    "/verifications",
    response_model=VerificationResponse,
    summary="Verify an external event",
    description=(
        "Moves every pending earn for external_ref to available. Idempotent: "
        "repeated or unknown references return updated_count=0."
    ),
)
async def verify_points(
    data: VerificationRequest,
    db: AsyncSession = Depends(get_db)
):
    """Verification intake"""
    service = PointsService(db)
    updated = await service.verify(data.external_ref)
    return VerificationResponse(external_ref=data.external_ref, updated_count=updated)


@router.get(
    "/{user_ref}",
    response_model=WalletResponse,
    summary="Get a user's points wallet",
    description="Returns the wallet, creating an empty one on first access.",
)
async def get_wallet(
    user_ref: str,
    db: AsyncSession = Depends(get_db)
):
    """Get wallet for user"""
    service = PointsService(db)
    return await service.get_wallet(ReferenceValidator.validate(user_ref, "user_ref"))


@router.get(
    "/{user_ref}/history",
    response_model=List[PointsTransactionResponse],
    summary="Points transaction history",
)
async def get_history(
    user_ref: str,
    limit: int = Query(default=50, ge=1, le=200),
    transaction_status: PointsTransactionStatus | None = Query(default=None, alias="status"),
    db: AsyncSession = Depends(get_db)
):
    """Newest first, optionally filtered by status"""
    service = PointsService(db)
    return await service.get_history(user_ref, limit=limit, status=transaction_status)


@router.get(
    "/{user_ref}/expiring",
    response_model=List[PointsTransactionResponse],
    summary="Points expiring soon",
)
async def get_expiring(
    user_ref: str,
    days: int | None = Query(default=None, ge=1, le=365),
    db: AsyncSession = Depends(get_db)
):
    service = PointsService(db)
    return await service.get_expiring_soon(user_ref, days)


@router.post(
    "/{user_ref}/redeem",
    response_model=PointsTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Redeem available points",
    responses={
        409: {"description": "Insufficient available balance"},
    },
)
async def redeem_points(
    user_ref: str,
    data: RedeemRequest,
    db: AsyncSession = Depends(get_db)
):
    service = PointsService(db)
    return await service.redeem(user_ref, data.amount, data.description)


@router.post(
    "/{user_ref}/earn",
    response_model=PointsTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Credit points directly",
    description=(
        "Operator credit outside the settlement flow (goodwill, corrections). "
        "No budget is debited. Expires after POINTS_EXPIRY_DAYS."
    ),
    responses={
        409: {"description": "Points already credited for this external_ref"},
    },
)
async def earn_points(
    user_ref: str,
    data: EarnRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db)
):
    service = PointsService(db)
    try:
        return await service.earn(
            user_ref,
            data.amount,
            data.external_ref,
            data.verification_required,
            utcnow() + timedelta(days=settings.POINTS_EXPIRY_DAYS),
            description=data.description,
        )
    except IntegrityError as e:
        raise ConflictException(
            f"Points already credited for external reference {data.external_ref}",
            ErrorCode.ALREADY_EXISTS,
            details={"external_ref": data.external_ref},
        ) from e


@router.delete(
    "/{user_ref}/transactions/{transaction_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an unverified pending earn",
    responses={
        404: {"description": "No pending transaction with this id for the user"},
    },
)
async def delete_pending_transaction(
    user_ref: str,
    transaction_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db)
):
    service = PointsService(db)
    await service.delete_pending(transaction_id, user_ref)


@router.get(
    "/{user_ref}/reconcile",
    response_model=InvariantReport,
    summary="Compare wallet buckets with the transaction log",
)
async def reconcile_wallet(
    user_ref: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db)
):
    service = PointsService(db)
    return await service.check_invariants(user_ref)
