"""
Campaign Resolver - Active cashback rate lookup for a merchant
"""
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NoActiveCampaignError
from app.db.database import utcnow
from app.db.models.cashback_campaign import CashbackCampaign, CampaignStatus


class CampaignLookup(Protocol):
    """Anything that can answer "which campaign applies to this merchant now" """

    async def resolve(
        self,
        merchant_ref: str,
        campaign_ref: str | None = None,
        at: datetime | None = None,
    ) -> CashbackCampaign: ...


class CampaignResolver:
    """
    Resolves campaigns from the local cashback_campaigns read model.

    An explicit campaign_ref must belong to the merchant and be active at
    ``at``; without one, the most recently started active campaign wins.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(
        self,
        merchant_ref: str,
        campaign_ref: str | None = None,
        at: datetime | None = None,
    ) -> CashbackCampaign:
        at = at or utcnow()

        query = select(CashbackCampaign).where(
            CashbackCampaign.merchant_ref == merchant_ref,
            CashbackCampaign.status == CampaignStatus.ACTIVE,
            CashbackCampaign.start_at <= at,
            CashbackCampaign.end_at >= at,
        )
        if campaign_ref:
            query = query.where(CashbackCampaign.campaign_ref == campaign_ref)

        result = await self.db.execute(
            query.order_by(CashbackCampaign.start_at.desc(), CashbackCampaign.id.desc()).limit(1)
        )
        campaign = result.scalar_one_or_none()
        if not campaign:
            raise NoActiveCampaignError(merchant_ref, campaign_ref)
        return campaign
