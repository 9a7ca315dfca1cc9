"""
Budget Account Model - Merchant-funded cashback balance
"""
import enum
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum as SQLEnum, CheckConstraint

from app.db.database import Base, utcnow


class BudgetAccountStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class BudgetAccount(Base):
    """
    One row per merchant.

    current_balance == total_loaded - total_spent at all times; rows are only
    mutated by BudgetService alongside the BudgetTransaction that records the
    change, and are never deleted.
    """

    __tablename__ = "budget_accounts"
    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_budget_accounts_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    merchant_ref = Column(String(100), unique=True, nullable=False)

    current_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_loaded = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_spent = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    status = Column(SQLEnum(BudgetAccountStatus), nullable=False, default=BudgetAccountStatus.ACTIVE)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
