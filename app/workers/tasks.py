"""
Celery Tasks for the Claim Dispatcher

Beat triggers the dispatcher every poll interval; the dispatcher claims due
items and runs their handlers. Expiry sweeps are not run inline: beat
enqueues one sweep item per window and the dispatcher picks it up like any
other due item, so concurrent beat instances cannot double-sweep.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import correlation_scope, get_logger, log_async_operation
from app.db.database import get_task_session, utcnow
from app.db.models.due_item import DueItem, DueItemKind, DueItemStatus
from app.domain.services.dispatcher_service import ClaimDispatcher
from app.domain.services.due_item_handlers import build_default_registry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """Fresh event loop per task run; leftover tasks are cancelled before close"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Run ``coro`` to completion under its own correlation ID"""
    with correlation_scope(), get_event_loop() as loop:
        return loop.run_until_complete(coro)


def sweep_window_start(now: datetime, window_seconds: int | None = None) -> datetime:
    """Start of the sweep window containing ``now``"""
    window = window_seconds or settings.EXPIRY_SWEEP_SECONDS
    epoch = datetime(1970, 1, 1)
    elapsed = int((now - epoch).total_seconds())
    return epoch + timedelta(seconds=elapsed - elapsed % window)


@log_async_operation("dispatcher_run")
async def run_dispatcher(
    db: "AsyncSession", limit: int | None = None, now: datetime | None = None
) -> dict:
    dispatcher = ClaimDispatcher(db, build_default_registry())
    stats = await dispatcher.run_once(limit=limit, now=now)
    return stats.to_dict()


async def enqueue_expiry_sweep(db: "AsyncSession", now: datetime | None = None) -> DueItem:
    """One points_expiry_sweep item per window; repeats within a window are no-ops"""
    window_start = sweep_window_start(now or utcnow())
    dispatcher = ClaimDispatcher(db)
    return await dispatcher.schedule(
        DueItemKind.POINTS_EXPIRY_SWEEP,
        f"sweep:{window_start.isoformat()}",
        {"window_start": window_start.isoformat()},
        scheduled_at=window_start,
    )


@log_async_operation("due_item_cleanup")
async def delete_sent_due_items(db: "AsyncSession", days: int, now: datetime | None = None) -> int:
    cutoff = (now or utcnow()) - timedelta(days=days)
    result = await db.execute(
        delete(DueItem).where(
            DueItem.status == DueItemStatus.SENT,
            DueItem.processed_at < cutoff,
        )
    )
    await db.commit()
    return result.rowcount


@celery_app.task(name="app.workers.tasks.process_due_items")
def process_due_items(limit: int | None = None):
    """
    Claim and process one batch of due items.
    Runs every DISPATCHER_POLL_SECONDS; safe to run on several workers at once.
    """

    async def _process():
        async with get_task_session() as db:
            return await run_dispatcher(db, limit)

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.schedule_expiry_sweep")
def schedule_expiry_sweep():
    """Queue the points expiry sweep for the current window"""

    async def _schedule():
        async with get_task_session() as db:
            item = await enqueue_expiry_sweep(db)
            return {"item_id": item.id, "payload_ref": item.payload_ref}

    return run_async(_schedule())


@celery_app.task(name="app.workers.tasks.cleanup_sent_due_items")
def cleanup_sent_due_items(days: int = 30):
    """Delete delivered due items older than ``days``; failed ones stay for operators"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await delete_sent_due_items(db, days)
            logger.info(
                "Cleaned up sent due items",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
