"""
Budget Transaction Model - Immutable audit trail of merchant funds movement
"""
import enum
from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum as SQLEnum, UniqueConstraint

from app.db.database import Base, utcnow


class BudgetTransactionType(str, enum.Enum):
    LOAD = "load"      # merchant funding
    PAYOUT = "payout"  # cashback paid out of the budget
    REFUND = "refund"  # compensation of an earlier payout


class BudgetTransaction(Base):
    """Insert-only record of one budget mutation"""

    __tablename__ = "budget_transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("budget_accounts.id"), nullable=False, index=True)
    merchant_ref = Column(String(100), nullable=False)

    type = Column(SQLEnum(BudgetTransactionType), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)  # always positive; type gives the direction
    balance_before = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)

    description = Column(String(500), nullable=True)
    processed_by = Column(String(100), nullable=True)
    external_ref = Column(String(200), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)

    # One payout and at most one refund per settled external event
    __table_args__ = (
        UniqueConstraint("external_ref", "type", name="uq_budget_tx_external_ref_type"),
    )
