"""
Wallet Balance Model - Per-user points aggregate
"""
from decimal import Decimal
from sqlalchemy import Column, Integer, String, Numeric, DateTime

from app.db.database import Base, utcnow


class WalletBalance(Base):
    """
    Aggregate of a user's points transactions.

    available_balance and pending_balance always equal the sums of the
    user's available and pending transactions. PointsService is the only
    writer and updates this row in the same commit as the transaction.
    """

    __tablename__ = "wallet_balances"

    id = Column(Integer, primary_key=True, index=True)
    user_ref = Column(String(100), unique=True, nullable=False)

    available_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    pending_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_earned = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_redeemed = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_expired = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
