"""
Budget API Routes
"""
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.routes.schemas import BudgetAccountResponse, BudgetTransactionResponse
from app.core.validation import money_validator
from app.db.database import get_db
from app.db.models.budget_account import BudgetAccountStatus
from app.domain.services.budget_service import BudgetService

router = APIRouter()


class LoadRequest(BaseModel):
    amount: Decimal
    processed_by: str = "admin"
    description: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v) -> Decimal:
        return money_validator(v)


class StatusUpdate(BaseModel):
    status: BudgetAccountStatus


class ReconcileResponse(BaseModel):
    merchant_ref: str
    current_balance: Decimal
    total_loaded: Decimal
    total_spent: Decimal
    ledger_loaded: Decimal
    ledger_spent: Decimal
    consistent: bool


@router.post(
    "/{merchant_ref}/load",
    response_model=BudgetTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Fund a merchant budget",
    description="Adds funds, creating the account on the first load.",
)
async def load_budget(
    merchant_ref: str,
    data: LoadRequest,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db)
):
    service = BudgetService(db)
    return await service.load_funds(
        merchant_ref,
        data.amount,
        processed_by=data.processed_by,
        description=data.description,
    )


@router.get(
    "/{merchant_ref}",
    response_model=BudgetAccountResponse,
    summary="Get a merchant budget",
    responses={404: {"description": "Merchant has never been funded"}},
)
async def get_budget(
    merchant_ref: str,
    db: AsyncSession = Depends(get_db)
):
    service = BudgetService(db)
    return await service.get_account(merchant_ref)


@router.get(
    "/{merchant_ref}/history",
    response_model=List[BudgetTransactionResponse],
    summary="Budget transaction history",
)
async def get_budget_history(
    merchant_ref: str,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db)
):
    service = BudgetService(db)
    return await service.get_history(merchant_ref, limit)


@router.put(
    "/{merchant_ref}/status",
    response_model=BudgetAccountResponse,
    summary="Suspend or reactivate a budget",
)
async def update_budget_status(
    merchant_ref: str,
    data: StatusUpdate,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db)
):
    service = BudgetService(db)
    return await service.set_status(merchant_ref, data.status)


@router.get(
    "/{merchant_ref}/reconcile",
    response_model=ReconcileResponse,
    summary="Reconcile stored totals with the audit trail",
)
async def reconcile_budget(
    merchant_ref: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db)
):
    service = BudgetService(db)
    return await service.check_invariants(merchant_ref)
