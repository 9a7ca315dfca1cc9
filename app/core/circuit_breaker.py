"""
Circuit Breaker

Guards calls to the notification gateway so a dispatcher run does not spend
its whole batch waiting on a service that is already known to be down. An
open circuit surfaces as CircuitBreakerOpenError, which the notification
handler turns into a retryable failure; the due item is tried again on a
later poll.

Breakers are process-wide and keyed by service name. A Celery worker runs
each task on its own event loop, so state is guarded by a threading lock
rather than an asyncio one.
"""
import asyncio
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from app.core.config import settings
from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _always(error: BaseException) -> bool:
    return True


@dataclass
class CircuitBreakerConfig:
    """
    Breaker tuning.

    ``counts_as_failure`` decides which exceptions are outages. Anything it
    rejects is re-raised without touching the breaker state.
    """
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3
    counts_as_failure: Callable[[BaseException], bool] = field(default=_always)


class CircuitBreaker:
    """Consecutive-failure breaker with a half-open trial phase"""

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._trial_calls = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state == CircuitState.HALF_OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        """Caller holds the lock"""
        old_state, self._state = self._state, new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.HALF_OPEN:
            self._trial_calls = 0
            self._trial_successes = 0
        else:
            self._failures = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.service_name}' is now {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "failure_count": self._failures,
            }
        )

    def can_execute(self) -> bool:
        """Admit a call, moving an expired open circuit to half-open"""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self.config.timeout_seconds:
                    return False
                self._move_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_calls >= self.config.half_open_max_calls:
                    return False
                self._trial_calls += 1

            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.debug(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error_type": type(error).__name__ if error else None,
                }
            )
            if self._state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    def get_retry_after(self) -> float:
        """Seconds until an open circuit lets a trial call through"""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (self._clock() - self._opened_at))

    def snapshot(self) -> dict[str, Any]:
        """State for the operator endpoint"""
        with self._lock:
            return {
                "service": self.service_name,
                "state": self._state.value,
                "failure_count": self._failures,
                "retry_after_seconds": round(self.get_retry_after(), 1),
            }

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``func`` if the circuit admits it.

        Raises:
            CircuitBreakerOpenError: the circuit is open or out of trial calls
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.config.counts_as_failure(e):
                self.record_failure(e)
            else:
                # The service answered; a rejected request is not an outage
                self.record_success()
            raise

        self.record_success()
        return result


_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_circuit_breaker(
    service_name: str, config: CircuitBreakerConfig | None = None
) -> CircuitBreaker:
    """Process-wide breaker for ``service_name``; ``config`` applies on first use"""
    with _breakers_lock:
        breaker = _breakers.get(service_name)
        if breaker is None:
            breaker = _breakers[service_name] = CircuitBreaker(service_name, config)
        return breaker


def reset_circuit_breakers() -> None:
    """Forget every breaker (tests)"""
    with _breakers_lock:
        _breakers.clear()


def _is_gateway_outage(error: BaseException) -> bool:
    return getattr(error, "retryable", True)


def get_notification_circuit_breaker() -> CircuitBreaker:
    """Breaker for the notification gateway; 4xx answers do not count"""
    return get_circuit_breaker(
        "notification",
        CircuitBreakerConfig(
            failure_threshold=settings.NOTIFICATION_BREAKER_THRESHOLD,
            success_threshold=2,
            timeout_seconds=settings.NOTIFICATION_BREAKER_RESET_SECONDS,
            counts_as_failure=_is_gateway_outage,
        )
    )
