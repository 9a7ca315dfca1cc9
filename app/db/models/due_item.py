"""
Due Item Model - Time-triggered work claimed by the dispatcher

Covers scheduled notification delivery and points expiry. Each item is
claimed by at most one dispatcher run at a time (skip-locked select plus a
lease stamped with the claim token).
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index, UniqueConstraint

from app.db.database import Base, utcnow


class DueItemStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DueItemKind:
    """Handler keys registered with the dispatcher"""
    NOTIFICATION = "notification"
    POINTS_EXPIRY = "points_expiry"
    POINTS_EXPIRY_SWEEP = "points_expiry_sweep"


class DueItem(Base):
    """Queued unit of work with bounded retries"""

    __tablename__ = "due_items"

    id = Column(Integer, primary_key=True, index=True)

    kind = Column(String(50), nullable=False)  # handler key, e.g. "notification", "points_expiry"
    payload_ref = Column(String(200), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)

    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    status = Column(SQLEnum(DueItemStatus), nullable=False, default=DueItemStatus.PENDING)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_error = Column(String(1000), nullable=True)

    # Claim lease
    claim_token = Column(String(36), nullable=True)
    claimed_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_due_items_status_scheduled", "status", "scheduled_at"),
        UniqueConstraint("kind", "payload_ref", name="uq_due_items_kind_payload_ref"),
    )
