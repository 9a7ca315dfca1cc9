"""
Database Connection and Session Management

The engine is an explicitly constructed resource: the API builds one
``Database`` at startup and hangs it on ``app.state``; every Celery task
builds its own and disposes it on exit. Sessions are always acquired through
a context manager so the connection goes back to the pool on every exit
path, including errors.
"""
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import declarative_base

from app.core.config import settings
from app.core.exceptions import LedgerUnavailableError

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_engine(database_url: str | None = None, **engine_kwargs) -> AsyncEngine:
    """Create an async engine; PostgreSQL connections get a lock_timeout"""
    url = database_url or settings.DATABASE_URL
    connect_args = engine_kwargs.pop("connect_args", {})
    if url.startswith("postgresql+asyncpg"):
        server_settings = connect_args.setdefault("server_settings", {})
        server_settings.setdefault("lock_timeout", str(settings.LEDGER_LOCK_TIMEOUT_MS))

    return create_async_engine(
        url,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        connect_args=connect_args,
        **engine_kwargs
    )


class Database:
    """Owns one engine and the session factory bound to it"""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    @classmethod
    def from_url(cls, database_url: str | None = None, **engine_kwargs) -> "Database":
        return cls(build_engine(database_url, **engine_kwargs))

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """
    Create a fresh database session for Celery tasks.

    A new engine per task keeps connections bound to the event loop the task
    runs on, avoiding "attached to a different loop" errors in workers.
    """
    database = Database.from_url(settings.DATABASE_URL, pool_size=5, max_overflow=10)
    try:
        async with database.session() as session:
            yield session
    finally:
        await database.dispose()


# lock_not_available, query_canceled, serialization_failure, deadlock_detected
_TRANSIENT_SQLSTATES = {"55P03", "57014", "40001", "40P01"}


def _sqlstate(error: DBAPIError) -> str | None:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """
    Re-raise lock-wait timeouts and connection loss as LedgerUnavailableError.

    Integrity violations and everything else propagate unchanged.
    """
    try:
        yield
    except OperationalError as e:
        raise LedgerUnavailableError(operation, str(e.orig)) from e
    except DBAPIError as e:
        if e.connection_invalidated or _sqlstate(e) in _TRANSIENT_SQLSTATES:
            raise LedgerUnavailableError(operation, str(e.orig)) from e
        raise
