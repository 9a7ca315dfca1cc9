"""
Fixtures and helpers for end-to-end scenarios.

Scenarios drive the HTTP surface the way an intake service would and then
look at the ledgers and the due item queue directly.
"""
import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.budget_account import BudgetAccount
from app.db.models.due_item import DueItem
from app.db.models.wallet_balance import WalletBalance
from app.domain.services.dispatcher_service import ClaimDispatcher, DispatchStats
from app.domain.services.due_item_handlers import build_default_registry
from app.domain.services.notification_client import NotificationClient


# ============================================================================
# HTTP helpers
# ============================================================================


async def submit_settlement(
    client: httpx.AsyncClient,
    external_ref: str,
    *,
    merchant_ref: str = "merchant-1",
    user_ref: str = "user-1",
    base_amount: str = "50.00",
    campaign_ref: str | None = None,
) -> httpx.Response:
    body = {
        "external_ref": external_ref,
        "merchant_ref": merchant_ref,
        "user_ref": user_ref,
        "base_amount": base_amount,
    }
    if campaign_ref:
        body["campaign_ref"] = campaign_ref
    return await client.post("/api/settlements", json=body)


async def verify(client: httpx.AsyncClient, external_ref: str) -> int:
    response = await client.post("/api/points/verifications", json={"external_ref": external_ref})
    assert response.status_code == 200
    return response.json()["updated_count"]


# ============================================================================
# DB assertions
# ============================================================================


async def _fresh(session: AsyncSession, model, **filters):
    stmt = select(model).execution_options(populate_existing=True)
    for column, value in filters.items():
        stmt = stmt.where(getattr(model, column) == value)
    return (await session.execute(stmt)).scalar_one_or_none()


async def assert_budget(
    session: AsyncSession,
    merchant_ref: str,
    *,
    balance: str,
    spent: str,
) -> BudgetAccount:
    account = await _fresh(session, BudgetAccount, merchant_ref=merchant_ref)
    assert account is not None, f"no budget account for {merchant_ref}"
    assert account.current_balance == Decimal(balance), (
        f"balance {account.current_balance} != {balance}"
    )
    assert account.total_spent == Decimal(spent)
    assert account.current_balance == account.total_loaded - account.total_spent
    return account


async def assert_wallet(
    session: AsyncSession,
    user_ref: str,
    *,
    available: str,
    pending: str,
) -> WalletBalance:
    wallet = await _fresh(session, WalletBalance, user_ref=user_ref)
    assert wallet is not None, f"no wallet for {user_ref}"
    assert wallet.available_balance == Decimal(available), (
        f"available {wallet.available_balance} != {available}"
    )
    assert wallet.pending_balance == Decimal(pending), (
        f"pending {wallet.pending_balance} != {pending}"
    )
    return wallet


async def due_items(session: AsyncSession, kind: str | None = None) -> list[DueItem]:
    stmt = select(DueItem).order_by(DueItem.id).execution_options(populate_existing=True)
    if kind:
        stmt = stmt.where(DueItem.kind == kind)
    return list((await session.execute(stmt)).scalars().all())


# ============================================================================
# Dispatcher
# ============================================================================


class FakeGateway:
    """Notification gateway stand-in; set ``status_code`` to simulate an outage"""

    def __init__(self):
        self.status_code = 200
        self.calls: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={"status": "queued"})


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def run_dispatcher(db_session: AsyncSession, gateway: FakeGateway):
    """Run one dispatcher pass with every shipped handler and the fake gateway"""
    client = NotificationClient(
        base_url="http://gateway.test",
        timeout=1.0,
        transport=httpx.MockTransport(gateway),
    )

    async def _run(now: datetime | None = None) -> DispatchStats:
        dispatcher = ClaimDispatcher(db_session, build_default_registry(client))
        return await dispatcher.run_once(now=now)

    return _run
