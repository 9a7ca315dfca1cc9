"""
Notification Client - HTTP client for the external notification gateway

Content templating lives in the gateway; this side only posts the template
key and its data. Calls run under the notification circuit breaker. Only
server-side failures (5xx, 429, transport errors) count against the
breaker; a 4xx is the request's own fault and leaves the circuit alone.
"""
from typing import Any

import httpx

from app.core.circuit_breaker import get_notification_circuit_breaker
from app.core.config import settings
from app.core.exceptions import NotificationError
from app.core.logging import get_correlation_id, get_logger

logger = get_logger(__name__)


class NotificationClient:
    """Posts notifications to the gateway at NOTIFICATION_SERVICE_URL"""

    SEND_PATH = "/api/notifications"

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.NOTIFICATION_SERVICE_URL).rstrip("/")
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def enabled(self) -> bool:
        """False means in-app delivery only"""
        return bool(self.base_url)

    async def send(
        self,
        user_ref: str,
        template: str,
        data: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Deliver one notification.

        Raises:
            NotificationError: gateway rejected or failed the request;
                ``retryable`` tells 5xx/429/timeouts apart from 4xx
            CircuitBreakerOpenError: the gateway is known to be down
        """
        circuit_breaker = get_notification_circuit_breaker()
        headers = {"X-Correlation-ID": get_correlation_id()}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        body = {"user_ref": user_ref, "template": template, "data": data or {}}

        async def _send() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                try:
                    response = await client.post(
                        f"{self.base_url}{self.SEND_PATH}", json=body, headers=headers
                    )
                except httpx.HTTPError as e:
                    raise NotificationError(f"send failed: {type(e).__name__}: {e}") from e
            if response.status_code >= 400:
                raise NotificationError.from_response("send", response)
            return response

        response = await circuit_breaker.execute(_send)

        logger.info(
            "Notification delivered",
            extra_data={
                "user_ref": user_ref,
                "template": template,
                "status_code": response.status_code,
            }
        )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}
