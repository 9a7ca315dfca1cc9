"""
Reward Ledger - FastAPI application

``create_app`` wires logging, middleware, error envelopes and the API
routers. The database resource is created in the lifespan handler and
disposed when the server stops; Celery workers build their own.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import Database

setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)

_DEV_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]

_OPENAPI_TAGS = [
    {
        "name": "settlements",
        "description": "Exactly-once settlement of external events into the budget and points ledgers.",
    },
    {"name": "points", "description": "User points wallets: verification, history, redemption."},
    {"name": "budgets", "description": "Merchant cashback budgets: funding, history, reconciliation."},
    {"name": "admin", "description": "Operator queue for failed due items."},
    {"name": "Health", "description": "Liveness and readiness checks."},
]


def _parse_allowed_origins(raw: str) -> list[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    database = Database.from_url(settings.DATABASE_URL)
    app.state.database = database
    await database.create_all()
    logger.info(
        "Reward ledger started",
        extra_data={"app_name": settings.APP_NAME, "debug": settings.DEBUG},
    )
    try:
        yield
    finally:
        await database.dispose()
        logger.info("Reward ledger stopped; database connections disposed")


def _configure_cors(app: FastAPI) -> None:
    origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)
    if not origins and settings.DEBUG:
        origins = _DEV_ORIGINS
    if not origins:
        return

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )


async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


async def readiness_check(request: Request) -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness(request.app.state.database)
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description=(
            "Settles reward value across a merchant-funded cashback budget and a "
            "per-user points wallet, and dispatches time-triggered work."
        ),
        openapi_tags=_OPENAPI_TAGS,
        lifespan=lifespan,
    )

    setup_middleware(app)
    setup_exception_handlers(app)
    _configure_cors(app)

    app.include_router(api_router, prefix="/api")

    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        summary="Liveness check",
        description="The process is up. Dependencies are not checked.",
        tags=["Health"],
    )
    app.add_api_route(
        "/health/ready",
        readiness_check,
        methods=["GET"],
        summary="Readiness check",
        description="Checks the database, the Celery broker and the notification gateway.",
        responses={
            200: {
                "description": "All dependencies answer",
                "content": {
                    "application/json": {
                        "example": {
                            "status": "healthy",
                            "db": "ok",
                            "broker": "ok",
                            "notification_gateway": "skipped",
                        }
                    }
                },
            },
            503: {"description": "At least one dependency is unavailable"},
        },
        tags=["Health"],
    )
    return app


app = create_app()
