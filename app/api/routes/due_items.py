"""
Admin endpoints for the due item operator queue.

Three tools:
1. Queue summary and failed items (the operator queue)
2. Manual requeue of a failed item
3. Notification gateway circuit breaker status
"""
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.routes.schemas import DueItemResponse
from app.core.circuit_breaker import get_notification_circuit_breaker
from app.db.database import get_db
from app.domain.services.dispatcher_service import ClaimDispatcher

router = APIRouter()

_ADMIN_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


class DueItemSummaryResponse(BaseModel):
    pending: int = 0
    sent: int = 0
    failed: int = 0
    total: int = 0


class RequeueResponse(BaseModel):
    item: DueItemResponse
    previous_status: str


class CircuitBreakerStatusResponse(BaseModel):
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    retry_after_seconds: float


@router.get(
    "/summary",
    response_model=DueItemSummaryResponse,
    summary="Due item counts by status",
    responses=_ADMIN_RESPONSES,
)
async def get_due_item_summary(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> DueItemSummaryResponse:
    counts = await ClaimDispatcher(db).count_by_status()
    return DueItemSummaryResponse(total=sum(counts.values()), **counts)


@router.get(
    "/failed",
    response_model=List[DueItemResponse],
    summary="Failed due items",
    description="Items that exhausted their retries or failed fatally, newest first.",
    responses=_ADMIN_RESPONSES,
)
async def list_failed_due_items(
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    limit: int = Query(default=50, ge=1, le=200),
):
    return await ClaimDispatcher(db).list_failed(limit)


@router.post(
    "/{item_id}/requeue",
    response_model=RequeueResponse,
    summary="Requeue a failed due item",
    description="Resets the retry budget and returns the item to pending.",
    responses={
        **_ADMIN_RESPONSES,
        400: {"description": "Item is not in failed status"},
        404: {"description": "Item not found"},
    },
)
async def requeue_due_item(
    item_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> RequeueResponse:
    item = await ClaimDispatcher(db).requeue(item_id)
    return RequeueResponse(
        item=DueItemResponse.model_validate(item),
        previous_status="failed",
    )


@router.get(
    "/circuit-breaker",
    response_model=CircuitBreakerStatusResponse,
    summary="Notification gateway circuit breaker",
    responses=_ADMIN_RESPONSES,
)
async def get_circuit_breaker_status(
    _: None = Depends(require_admin_api_key),
) -> CircuitBreakerStatusResponse:
    return CircuitBreakerStatusResponse(**get_notification_circuit_breaker().snapshot())
