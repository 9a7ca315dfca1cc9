"""
Points Transaction Model - Earn/redeem entries moving through
pending -> available -> expired
"""
import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
)

from app.db.database import Base, utcnow


class PointsTransactionKind(str, enum.Enum):
    EARN = "earn"
    REDEEM = "redeem"


class PointsTransactionStatus(str, enum.Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    EXPIRED = "expired"


class PointsTransaction(Base):
    """Signed points entry; redemptions carry a negative amount"""

    __tablename__ = "points_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_ref = Column(String(100), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    kind = Column(SQLEnum(PointsTransactionKind), nullable=False)
    status = Column(SQLEnum(PointsTransactionStatus), nullable=False)

    external_ref = Column(String(200), nullable=True, index=True)
    description = Column(String(500), nullable=True)

    verification_required = Column(Boolean, nullable=False, default=False)
    verification_deadline = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("external_ref", "kind", name="uq_points_tx_external_ref_kind"),
        Index("ix_points_transactions_status_expires", "status", "expires_at"),
    )
