"""
Dispatcher Service - Claim-based processing of due items

A run claims up to N due rows with SELECT ... FOR UPDATE SKIP LOCKED and
stamps them with a lease (claim_token + claimed_until) before committing.
Each item's lease is renewed just before its handler runs; an item whose
lease has already run out is skipped, never resumed.
Rows leased by one runner are invisible to every other runner until the
lease is finalised or runs out, so N dispatchers can poll the same table
without processing an item twice. Finalisation only applies while the row
still carries this run's token.

Item lifecycle:
    pending -> sent                      handler succeeded
    pending -> pending (retry_count + 1)  retryable failure, budget left
    pending -> failed                    fatal failure or budget exhausted

The poll interval is the only backoff. Failed items leave the queue until
an operator requeues them.
"""
import asyncio
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import select, update, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import DueItemNotFoundError, FatalError, ValidationException
from app.core.logging import get_logger
from app.db.database import translate_store_errors, utcnow
from app.db.models.due_item import DueItem, DueItemStatus

logger = get_logger(__name__)

_MAX_ERROR_LENGTH = 1000


class DueItemHandler(Protocol):
    """Processes one claimed item; raises RetryableError or FatalError on failure"""

    async def handle(self, item: DueItem, session: AsyncSession) -> None: ...


class HandlerRegistry:
    """Maps a due item kind to the handler that processes it"""

    def __init__(self):
        self._handlers: dict[str, DueItemHandler] = {}

    def register(self, kind: str, handler: DueItemHandler) -> None:
        if kind in self._handlers:
            raise ValueError(f"Handler already registered for kind '{kind}'")
        self._handlers[kind] = handler

    def get(self, kind: str) -> DueItemHandler | None:
        return self._handlers.get(kind)

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, kind: str) -> bool:
        return kind in self._handlers


@dataclass
class DispatchStats:
    """Outcome counts of one dispatcher run"""
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    lost: int = 0  # lease ran out, was taken over, or the row is gone

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"[:_MAX_ERROR_LENGTH]


class ClaimDispatcher:
    """Schedules, claims and finalises due items"""

    def __init__(
        self,
        db: AsyncSession,
        registry: HandlerRegistry | None = None,
        *,
        lease_seconds: int | None = None,
        batch_size: int | None = None,
    ):
        self.db = db
        self.registry = registry or HandlerRegistry()
        self.lease_seconds = lease_seconds or settings.DISPATCHER_LEASE_SECONDS
        self.batch_size = batch_size or settings.DISPATCHER_BATCH_SIZE

    async def schedule(
        self,
        kind: str,
        payload_ref: str,
        payload: dict[str, Any] | None = None,
        scheduled_at: datetime | None = None,
        max_retries: int | None = None,
    ) -> DueItem:
        """
        Queue work for a future run.

        Idempotent on (kind, payload_ref): scheduling the same work twice
        returns the existing item untouched.
        """
        existing = await self._find(kind, payload_ref)
        if existing:
            return existing

        item = DueItem(
            kind=kind,
            payload_ref=payload_ref,
            payload=payload or {},
            scheduled_at=scheduled_at or utcnow(),
            status=DueItemStatus.PENDING,
            retry_count=0,
            max_retries=max_retries or settings.DUE_ITEM_MAX_RETRIES,
        )
        self.db.add(item)
        try:
            with translate_store_errors("dispatcher.schedule"):
                await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._find(kind, payload_ref)
            if not existing:
                raise
            return existing
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Due item scheduled",
            extra_data={
                "item_id": item.id,
                "kind": kind,
                "payload_ref": payload_ref,
                "scheduled_at": item.scheduled_at,
            }
        )
        return item

    async def _find(self, kind: str, payload_ref: str) -> DueItem | None:
        result = await self.db.execute(
            select(DueItem).where(DueItem.kind == kind, DueItem.payload_ref == payload_ref)
        )
        return result.scalar_one_or_none()

    async def claim_batch(
        self, limit: int | None = None, now: datetime | None = None
    ) -> list[DueItem]:
        """
        Atomically lease up to ``limit`` due items to this caller.

        Rows locked by a concurrent claim are skipped rather than waited
        on. The conditional update only stamps rows whose lease is still
        free, so a runner that loses the race for a row simply does not
        get it back from the final read.
        """
        now = now or utcnow()
        limit = limit or self.batch_size
        token = str(uuid.uuid4())
        lease_free = or_(DueItem.claimed_until.is_(None), DueItem.claimed_until < now)

        try:
            with translate_store_errors("dispatcher.claim_batch"):
                result = await self.db.execute(
                    select(DueItem.id)
                    .where(
                        DueItem.status == DueItemStatus.PENDING,
                        DueItem.scheduled_at <= now,
                        DueItem.retry_count < DueItem.max_retries,
                        lease_free,
                    )
                    .order_by(DueItem.scheduled_at, DueItem.id)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
                candidate_ids = list(result.scalars().all())
                if not candidate_ids:
                    await self.db.commit()
                    return []

                await self.db.execute(
                    update(DueItem)
                    .where(
                        DueItem.id.in_(candidate_ids),
                        DueItem.status == DueItemStatus.PENDING,
                        lease_free,
                    )
                    .values(
                        claim_token=token,
                        claimed_until=now + timedelta(seconds=self.lease_seconds),
                    )
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        claimed = await self.db.execute(
            select(DueItem)
            .where(DueItem.claim_token == token)
            .order_by(DueItem.scheduled_at, DueItem.id)
            .execution_options(populate_existing=True)
        )
        items = list(claimed.scalars().all())

        if items:
            logger.debug(
                "Claimed due items",
                extra_data={"claim_token": token, "count": len(items)}
            )
        return items

    async def run_once(
        self, limit: int | None = None, now: datetime | None = None
    ) -> DispatchStats:
        """Claim one batch and drive every claimed item to its next state"""
        items = await self.claim_batch(limit, now)
        stats = DispatchStats(claimed=len(items))
        # Read now; processing an earlier item may expire or delete the rows
        claims = [(item.id, item.claim_token) for item in items]

        for item_id, token in claims:
            outcome = await self._process(item_id, token)
            setattr(stats, outcome, getattr(stats, outcome) + 1)

        if items:
            logger.info("Dispatcher run finished", extra_data=stats.to_dict())
        return stats

    async def _renew_lease(self, item_id: int, token: str) -> DueItem | None:
        """
        Push this run's lease forward before the handler starts.

        Only a row still pending under ``token`` with an unexpired lease is
        renewed. Once a lease has run out another runner may already hold
        the item, so it is never resumed.
        """
        now = utcnow()
        try:
            with translate_store_errors("dispatcher.renew_lease"):
                result = await self.db.execute(
                    update(DueItem)
                    .where(
                        DueItem.id == item_id,
                        DueItem.claim_token == token,
                        DueItem.status == DueItemStatus.PENDING,
                        DueItem.claimed_until > now,
                    )
                    .values(claimed_until=now + timedelta(seconds=self.lease_seconds))
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if result.rowcount != 1:
            return None

        reloaded = await self.db.execute(
            select(DueItem)
            .where(DueItem.id == item_id)
            .execution_options(populate_existing=True)
        )
        return reloaded.scalar_one_or_none()

    async def _process(self, item_id: int, token: str) -> str:
        item = await self._renew_lease(item_id, token)
        if item is None:
            logger.warning(
                "Due item lease lost before processing",
                extra_data={"item_id": item_id, "claim_token": token}
            )
            return "lost"

        handler = self.registry.get(item.kind)

        if handler is None:
            error: BaseException | None = FatalError(
                f"No handler registered for kind '{item.kind}'"
            )
        else:
            try:
                await handler.handle(item, self.db)
                error = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Discard whatever the handler left half-done before finalising
                await self.db.rollback()
                error = e

        return await self._finalise(item_id, token, error)

    async def _finalise(
        self, item_id: int, token: str, error: BaseException | None
    ) -> str:
        try:
            with translate_store_errors("dispatcher.finalise"):
                result = await self.db.execute(
                    select(DueItem)
                    .where(
                        DueItem.id == item_id,
                        DueItem.claim_token == token,
                        DueItem.status == DueItemStatus.PENDING,
                    )
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                item = result.scalar_one_or_none()
                if item is None:
                    await self.db.rollback()
                    logger.warning(
                        "Due item lease lost before finalising",
                        extra_data={"item_id": item_id, "claim_token": token}
                    )
                    return "lost"

                now = utcnow()
                item.claim_token = None
                item.claimed_until = None

                if error is None:
                    item.status = DueItemStatus.SENT
                    item.processed_at = now
                    outcome = "sent"
                elif isinstance(error, FatalError):
                    item.retry_count += 1
                    item.status = DueItemStatus.FAILED
                    item.last_error = _describe(error)
                    item.processed_at = now
                    outcome = "failed"
                else:
                    item.retry_count += 1
                    item.last_error = _describe(error)
                    if item.retry_count >= item.max_retries:
                        item.status = DueItemStatus.FAILED
                        item.processed_at = now
                        outcome = "failed"
                    else:
                        outcome = "retried"

                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if outcome == "failed":
            logger.error(
                "Due item failed permanently",
                extra_data={
                    "item_id": item_id,
                    "kind": item.kind,
                    "payload_ref": item.payload_ref,
                    "retry_count": item.retry_count,
                    "last_error": item.last_error,
                }
            )
        elif outcome == "retried":
            logger.warning(
                "Due item attempt failed, will retry",
                extra_data={
                    "item_id": item_id,
                    "kind": item.kind,
                    "retry_count": item.retry_count,
                    "max_retries": item.max_retries,
                    "last_error": item.last_error,
                }
            )
        return outcome

    # ==================== Operator queue ====================

    async def list_failed(self, limit: int = 50) -> list[DueItem]:
        result = await self.db.execute(
            select(DueItem)
            .where(DueItem.status == DueItemStatus.FAILED)
            .order_by(DueItem.processed_at.desc(), DueItem.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self.db.execute(
            select(DueItem.status, func.count(DueItem.id)).group_by(DueItem.status)
        )
        counts = {s.value: 0 for s in DueItemStatus}
        for row_status, count in result.all():
            counts[row_status.value] = count
        return counts

    async def requeue(self, item_id: int) -> DueItem:
        """Give a failed item a fresh retry budget and put it back in the queue"""
        try:
            with translate_store_errors("dispatcher.requeue"):
                result = await self.db.execute(
                    select(DueItem).where(DueItem.id == item_id).with_for_update()
                )
                item = result.scalar_one_or_none()
                if not item:
                    raise DueItemNotFoundError(item_id)

                if item.status != DueItemStatus.FAILED:
                    raise ValidationException(
                        f"Only failed items can be requeued, current status: {item.status.value}",
                        field="status",
                    )

                previous_retries = item.retry_count
                item.status = DueItemStatus.PENDING
                item.retry_count = 0
                item.scheduled_at = utcnow()
                item.processed_at = None
                item.claim_token = None
                item.claimed_until = None
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Due item requeued",
            extra_data={
                "item_id": item_id,
                "kind": item.kind,
                "previous_retry_count": previous_retries,
            }
        )
        return item
