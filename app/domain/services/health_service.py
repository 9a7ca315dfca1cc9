"""
Readiness checks for the ledger store, the Celery broker that drives the
dispatcher, and the notification gateway.

The checks run concurrently. Error strings are fixed so no connection
details leak into the readiness response.
"""
import asyncio
from typing import Any

import httpx
import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import get_notification_circuit_breaker
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import Database

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"
_CHECK_SKIPPED = "skipped"

_ERROR_DB = "error: db_unavailable"
_ERROR_BROKER = "error: broker_unavailable"
_ERROR_NOTIFICATION = "error: notification_gateway_unavailable"
_ERROR_CIRCUIT_OPEN = "error: notification_circuit_open"


async def _check_db(database: Database) -> str:
    """Run a trivial query through a pooled session"""
    try:
        async with database.session() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_broker() -> str:
    """PING the Celery broker (Redis) the dispatcher beat schedule runs on"""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_BROKER


async def _check_notification_gateway() -> str:
    """GET /health on the gateway; skipped when running in-app only"""
    if not settings.NOTIFICATION_SERVICE_URL:
        return _CHECK_SKIPPED
    # The dispatcher already knows the gateway is down; do not call it
    if get_notification_circuit_breaker().is_open:
        return _ERROR_CIRCUIT_OPEN
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{settings.NOTIFICATION_SERVICE_URL}/health")
        if response.status_code != 200:
            logger.warning(
                "Notification gateway returned unhealthy status",
                extra_data={"status_code": response.status_code},
            )
            return _ERROR_NOTIFICATION
        return _CHECK_OK
    except Exception as e:
        logger.warning(
            "Notification gateway health check failed",
            extra_data={"error": str(e)},
        )
        return _ERROR_NOTIFICATION


async def check_readiness(database: Database) -> dict[str, Any]:
    """
    Full readiness check.

    Returns the overall status ("healthy" or "degraded") and one entry per
    dependency: "ok", "skipped" or "error: ...".
    """
    db, broker, gateway = await asyncio.gather(
        _check_db(database),
        _check_broker(),
        _check_notification_gateway(),
    )
    checks = {"db": db, "broker": broker, "notification_gateway": gateway}

    all_ok = all(v in (_CHECK_OK, _CHECK_SKIPPED) for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
