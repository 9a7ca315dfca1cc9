"""
Cashback Campaign Model - Read model of the campaign service

Campaign CRUD lives elsewhere; settlement only needs the merchant's rate and
the window during which it applies.
"""
import enum
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum as SQLEnum, CheckConstraint

from app.db.database import Base, utcnow


class CampaignStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ENDED = "ended"


class CashbackCampaign(Base):
    """Cashback rate (percent of the purchase) offered by a merchant"""

    __tablename__ = "cashback_campaigns"
    __table_args__ = (
        CheckConstraint("rate > 0 AND rate <= 100", name="ck_cashback_campaigns_rate_range"),
    )

    id = Column(Integer, primary_key=True, index=True)
    campaign_ref = Column(String(100), unique=True, nullable=False)
    merchant_ref = Column(String(100), nullable=False, index=True)
    name = Column(String(200), nullable=True)

    rate = Column(Numeric(5, 2), nullable=False)
    status = Column(SQLEnum(CampaignStatus), nullable=False, default=CampaignStatus.ACTIVE)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)

    created_at = Column(DateTime, default=utcnow)
