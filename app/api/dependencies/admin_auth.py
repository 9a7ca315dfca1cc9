"""
Operator access for budget funding, reconciliation and the failed due item queue

Operator routes take ``Depends(require_admin_api_key)``. With no
ADMIN_API_KEY configured they are closed to everyone.
"""
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_KEY_HEADER, auto_error=False)


def _refuse(request: Request, status_code: int, detail: str, reason: str) -> HTTPException:
    logger.warning(
        f"Operator request refused: {reason}",
        extra_data={"path": request.url.path, "method": request.method, "reason": reason},
    )
    return HTTPException(status_code=status_code, detail=detail)


async def require_admin_api_key(
    request: Request,
    api_key: str | None = Depends(_api_key_header),
) -> None:
    """401 when the header is missing, 403 when it does not match"""
    if not settings.ADMIN_API_KEY:
        raise _refuse(
            request, status.HTTP_403_FORBIDDEN,
            "ADMIN_API_KEY is not configured", "not_configured",
        )

    if not api_key:
        raise _refuse(
            request, status.HTTP_401_UNAUTHORIZED,
            f"Missing API key, {ADMIN_KEY_HEADER} header required", "missing_key",
        )

    if not secrets.compare_digest(api_key.encode(), settings.ADMIN_API_KEY.encode()):
        raise _refuse(request, status.HTTP_403_FORBIDDEN, "Invalid API key", "wrong_key")
