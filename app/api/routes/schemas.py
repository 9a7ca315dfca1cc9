"""
Shared response models for ledger rows
"""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from app.db.models.budget_account import BudgetAccountStatus
from app.db.models.budget_transaction import BudgetTransactionType
from app.db.models.due_item import DueItemStatus
from app.db.models.points_transaction import PointsTransactionKind, PointsTransactionStatus


class BudgetAccountResponse(BaseModel):
    merchant_ref: str
    current_balance: Decimal
    total_loaded: Decimal
    total_spent: Decimal
    status: BudgetAccountStatus
    created_at: datetime | None
    updated_at: datetime | None

    class Config:
        from_attributes = True


class BudgetTransactionResponse(BaseModel):
    id: int
    merchant_ref: str
    type: BudgetTransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str | None
    processed_by: str | None
    external_ref: str | None
    created_at: datetime | None

    class Config:
        from_attributes = True


class WalletResponse(BaseModel):
    user_ref: str
    available_balance: Decimal
    pending_balance: Decimal
    total_earned: Decimal
    total_redeemed: Decimal
    total_expired: Decimal

    class Config:
        from_attributes = True


class PointsTransactionResponse(BaseModel):
    id: int
    user_ref: str
    amount: Decimal
    kind: PointsTransactionKind
    status: PointsTransactionStatus
    external_ref: str | None
    description: str | None
    verification_required: bool
    verification_deadline: datetime | None
    expires_at: datetime | None
    created_at: datetime | None
    processed_at: datetime | None

    class Config:
        from_attributes = True


class DueItemResponse(BaseModel):
    id: int
    kind: str
    payload_ref: str
    status: DueItemStatus
    scheduled_at: datetime
    retry_count: int
    max_retries: int
    last_error: str | None
    created_at: datetime | None
    processed_at: datetime | None

    class Config:
        from_attributes = True
