"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- HTTP test client with the database dependency overridden
- Test data factories (budgets, campaigns, wallets, due items)
"""
# Admin endpoints are closed without a key; set one before importing the app
import os
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.circuit_breaker import reset_circuit_breakers as _reset_breakers
from app.core.config import settings
from app.db.database import Base, get_db, utcnow
from app.db.models.budget_account import BudgetAccount
from app.db.models.cashback_campaign import CashbackCampaign, CampaignStatus
from app.db.models.due_item import DueItem, DueItemStatus
from app.db.models.wallet_balance import WalletBalance
from app.domain.services.budget_service import BudgetService
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# No custom event_loop fixture: pytest-asyncio handles it with
# asyncio_mode=auto and asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": settings.ADMIN_API_KEY}


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Breakers are process-wide singletons; start every test closed"""
    _reset_breakers()
    yield
    _reset_breakers()


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def budget_factory(db_session: AsyncSession):
    """Factory for funded merchant budgets"""
    async def _create_budget(
        merchant_ref: str = "merchant-1",
        amount: Any = "100.00",
    ) -> BudgetAccount:
        service = BudgetService(db_session)
        await service.load_funds(merchant_ref, amount, processed_by="test")
        return await service.get_account(merchant_ref)

    return _create_budget


@pytest.fixture
def campaign_factory(db_session: AsyncSession):
    """Factory for cashback campaigns, active now by default"""
    counter = {"n": 0}

    async def _create_campaign(
        merchant_ref: str = "merchant-1",
        rate: Any = "10.00",
        campaign_ref: str | None = None,
        status: CampaignStatus = CampaignStatus.ACTIVE,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
    ) -> CashbackCampaign:
        counter["n"] += 1
        now = utcnow()
        campaign = CashbackCampaign(
            campaign_ref=campaign_ref or f"campaign-{counter['n']}",
            merchant_ref=merchant_ref,
            name="Test campaign",
            rate=Decimal(str(rate)),
            status=status,
            start_at=start_at or now - timedelta(days=1),
            end_at=end_at or now + timedelta(days=30),
        )
        db_session.add(campaign)
        await db_session.commit()
        await db_session.refresh(campaign)
        return campaign

    return _create_campaign


@pytest.fixture
def wallet_factory(db_session: AsyncSession):
    """Factory for wallet rows with explicit buckets"""
    async def _create_wallet(
        user_ref: str = "user-1",
        available_balance: Any = "0.00",
        pending_balance: Any = "0.00",
    ) -> WalletBalance:
        wallet = WalletBalance(
            user_ref=user_ref,
            available_balance=Decimal(str(available_balance)),
            pending_balance=Decimal(str(pending_balance)),
            total_earned=Decimal(str(available_balance)),
            total_redeemed=Decimal("0.00"),
            total_expired=Decimal("0.00"),
        )
        db_session.add(wallet)
        await db_session.commit()
        await db_session.refresh(wallet)
        return wallet

    return _create_wallet


@pytest.fixture
def due_item_factory(db_session: AsyncSession):
    """Factory for due items, due now by default"""
    counter = {"n": 0}

    async def _create_due_item(
        kind: str = "test",
        payload_ref: str | None = None,
        payload: dict | None = None,
        scheduled_at: datetime | None = None,
        status: DueItemStatus = DueItemStatus.PENDING,
        retry_count: int = 0,
        max_retries: int = 3,
    ) -> DueItem:
        counter["n"] += 1
        item = DueItem(
            kind=kind,
            payload_ref=payload_ref or f"ref-{counter['n']}",
            payload=payload or {},
            scheduled_at=scheduled_at or utcnow() - timedelta(seconds=1),
            status=status,
            retry_count=retry_count,
            max_retries=max_retries,
        )
        db_session.add(item)
        await db_session.commit()
        await db_session.refresh(item)
        return item

    return _create_due_item
