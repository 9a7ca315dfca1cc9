"""
Tests for the notification gateway client
"""
import json

import httpx
import pytest

from app.core.circuit_breaker import get_notification_circuit_breaker
from app.core.exceptions import CircuitBreakerOpenError, NotificationError
from app.core.logging import set_correlation_id
from app.domain.services.notification_client import NotificationClient


def _client(handler) -> NotificationClient:
    return NotificationClient(
        base_url="http://gateway.test",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


class TestNotificationClient:

    @pytest.mark.unit
    async def test_posts_template_and_headers(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(202, json={"id": "n-1"})

        set_correlation_id("corr-123")
        result = await _client(handler).send(
            "user-1",
            "verification_reminder",
            {"external_ref": "order-1"},
            idempotency_key="notification:verification_reminder:order-1",
        )

        assert result == {"id": "n-1"}
        assert captured["url"] == "http://gateway.test/api/notifications"
        assert captured["headers"]["X-Correlation-ID"] == "corr-123"
        assert captured["headers"]["Idempotency-Key"] == "notification:verification_reminder:order-1"
        assert captured["body"] == {
            "user_ref": "user-1",
            "template": "verification_reminder",
            "data": {"external_ref": "order-1"},
        }

    @pytest.mark.unit
    async def test_empty_body_returns_empty_dict(self):
        result = await _client(lambda request: httpx.Response(204)).send("user-1", "t")

        assert result == {}

    @pytest.mark.unit
    async def test_server_error_is_retryable(self):
        with pytest.raises(NotificationError) as exc_info:
            await _client(lambda request: httpx.Response(503, text="busy")).send("user-1", "t")

        assert exc_info.value.retryable is True
        assert exc_info.value.gateway_status == 503
        assert exc_info.value.details["response_text"] == "busy"

    @pytest.mark.unit
    async def test_rate_limit_is_retryable(self):
        with pytest.raises(NotificationError) as exc_info:
            await _client(lambda request: httpx.Response(429)).send("user-1", "t")

        assert exc_info.value.retryable is True

    @pytest.mark.unit
    async def test_client_error_is_not_retryable(self):
        with pytest.raises(NotificationError) as exc_info:
            await _client(lambda request: httpx.Response(400, text="unknown template")).send("user-1", "t")

        assert exc_info.value.retryable is False

    @pytest.mark.unit
    async def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(NotificationError) as exc_info:
            await _client(handler).send("user-1", "t")

        assert exc_info.value.retryable is True
        assert exc_info.value.gateway_status is None

    @pytest.mark.unit
    async def test_client_errors_do_not_open_the_circuit(self):
        client = _client(lambda request: httpx.Response(404))

        for _ in range(10):
            with pytest.raises(NotificationError):
                await client.send("user-1", "t")

        assert get_notification_circuit_breaker().is_closed

    @pytest.mark.unit
    async def test_server_errors_open_the_circuit(self):
        calls = {"count": 0}

        def handler(request):
            calls["count"] += 1
            return httpx.Response(500)

        client = _client(handler)
        for _ in range(5):
            with pytest.raises(NotificationError):
                await client.send("user-1", "t")

        with pytest.raises(CircuitBreakerOpenError):
            await client.send("user-1", "t")
        assert calls["count"] == 5

    @pytest.mark.unit
    def test_enabled_follows_base_url(self):
        assert NotificationClient(base_url="").enabled is False
        assert NotificationClient(base_url="http://gateway.test").enabled is True
