"""
Domain Services
"""
from app.domain.services.budget_service import BudgetService
from app.domain.services.points_service import PointsService
from app.domain.services.campaign_resolver import CampaignResolver
from app.domain.services.settlement_service import (
    SettlementService,
    SettlementRequest,
    SettlementResult,
)
from app.domain.services.dispatcher_service import (
    ClaimDispatcher,
    DispatchStats,
    HandlerRegistry,
)
from app.domain.services.notification_client import NotificationClient

__all__ = [
    "BudgetService",
    "PointsService",
    "CampaignResolver",
    "SettlementService",
    "SettlementRequest",
    "SettlementResult",
    "ClaimDispatcher",
    "DispatchStats",
    "HandlerRegistry",
    "NotificationClient",
]
