"""
Due item handlers

One handler per due item kind, registered with the dispatcher's
HandlerRegistry. A handler returns normally on success and signals failure
by raising RetryableError (try again on a later poll) or FatalError (never
going to work). Anything else it lets escape is treated as retryable.
"""
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    CircuitBreakerOpenError,
    FatalError,
    NotificationError,
    RetryableError,
)
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.due_item import DueItem, DueItemKind
from app.domain.services.dispatcher_service import HandlerRegistry
from app.domain.services.notification_client import NotificationClient
from app.domain.services.points_service import PointsService

logger = get_logger(__name__)


class NotificationHandler:
    """Delivers a notification item through the gateway"""

    def __init__(self, client: NotificationClient | None = None):
        self.client = client or NotificationClient()

    async def handle(self, item: DueItem, session: AsyncSession) -> None:
        payload = item.payload or {}
        user_ref = payload.get("user_ref")
        template = payload.get("template")
        if not user_ref or not template:
            raise FatalError("notification payload needs user_ref and template")

        if not self.client.enabled:
            # No gateway configured: the sent item is the in-app notification
            logger.info(
                "In-app notification recorded",
                extra_data={"item_id": item.id, "user_ref": user_ref, "template": template}
            )
            return

        try:
            await self.client.send(
                user_ref,
                template,
                payload.get("data") or {},
                idempotency_key=f"{item.kind}:{item.payload_ref}",
            )
        except CircuitBreakerOpenError as e:
            raise RetryableError(e.message) from e
        except NotificationError as e:
            if e.retryable:
                raise RetryableError(e.message) from e
            raise FatalError(e.message) from e


class PointsExpiryHandler:
    """Expires the single points transaction named in the payload"""

    async def handle(self, item: DueItem, session: AsyncSession) -> None:
        transaction_id = (item.payload or {}).get("transaction_id")
        if transaction_id is None:
            raise FatalError("points_expiry payload needs transaction_id")

        # Claimed only once scheduled_at (the expiry time) has arrived
        now = max(utcnow(), item.scheduled_at)
        try:
            expired = await PointsService(session).expire_transaction(int(transaction_id), now=now)
        except AppException as e:
            if e.retryable:
                raise RetryableError(e.message) from e
            raise FatalError(e.message) from e

        if not expired:
            logger.debug(
                "Points transaction no longer expirable",
                extra_data={"item_id": item.id, "transaction_id": transaction_id}
            )


class ExpirySweepHandler:
    """Runs the full expiry sweep over every wallet"""

    async def handle(self, item: DueItem, session: AsyncSession) -> None:
        now = max(utcnow(), item.scheduled_at)
        try:
            count = await PointsService(session).sweep_expired(now=now)
        except AppException as e:
            if e.retryable:
                raise RetryableError(e.message) from e
            raise FatalError(e.message) from e

        logger.info(
            "Expiry sweep finished",
            extra_data={"item_id": item.id, "expired_count": count}
        )


def build_default_registry(
    notification_client: NotificationClient | None = None,
) -> HandlerRegistry:
    """Registry with every handler the service ships"""
    registry = HandlerRegistry()
    registry.register(DueItemKind.NOTIFICATION, NotificationHandler(notification_client))
    registry.register(DueItemKind.POINTS_EXPIRY, PointsExpiryHandler())
    registry.register(DueItemKind.POINTS_EXPIRY_SWEEP, ExpirySweepHandler())
    return registry
