"""
Circuit breaker for outbound collaborator calls (the video-session webhook).
Fails fast while a collaborator is down so booking requests are not held
up by it. Booking transactions never go through a breaker; only calls made
after the outcome is decided do.

- Only network errors and HTTP error statuses count as failures
- HALF_OPEN allows a single trial request at a time
- Registered breakers are reported by get_circuit_stats() on /health

Usage:
    from careslot.utils.circuit_breaker import video_session_breaker

    @video_session_breaker
    async def notify_video_service():
        ...
"""
import asyncio
import logging
import time
from enum import Enum
from functools import wraps
from typing import Callable, Dict, Optional, Tuple, Type

import httpx

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Failing fast
    HALF_OPEN = "half_open" # Testing recovery


NETWORK_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.PoolTimeout,
    httpx.HTTPStatusError,
    ConnectionError,
    TimeoutError,
)

_registry: Dict[str, "CircuitBreaker"] = {}


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open and request is rejected."""
    pass


class CircuitBreaker:
    """
    Decorator for async collaborator calls.

    Usage:
        webhook_breaker = CircuitBreaker("webhook", failure_threshold=5, register=True)

        @webhook_breaker
        async def post_webhook():
            ...
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exceptions: Tuple[Type[Exception], ...] = NETWORK_EXCEPTIONS,
        register: bool = False,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._lock: Optional[asyncio.Lock] = None

        if register:
            _registry[name] = self

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _get_lock(self) -> asyncio.Lock:
        # Module-level breakers are created before any event loop runs
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _recovery_due(self) -> bool:
        if self._last_failure_time is None:
            return False
        return time.monotonic() - self._last_failure_time >= self.recovery_timeout

    async def _acquire(self) -> bool:
        """Whether this call may go through; claims the trial slot in HALF_OPEN."""
        if self._state == CircuitState.CLOSED:
            return True

        async with self._get_lock():
            if self._state == CircuitState.OPEN:
                if not self._recovery_due():
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")

            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    async def _on_success(self):
        async with self._get_lock():
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (recovered)")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    async def _on_failure(self, error: Exception):
        async with self._get_lock():
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            self._trial_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (still failing: {error})")
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.error(
                    f"Circuit {self.name}: CLOSED -> OPEN "
                    f"(threshold {self.failure_threshold} reached, last error: {error})"
                )

    async def _on_unexpected(self):
        # A code error during the trial says nothing about the collaborator
        async with self._get_lock():
            self._trial_in_flight = False

    def __call__(self, func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            if not await self._acquire():
                raise CircuitBreakerOpen(f"Circuit {self.name} is OPEN - failing fast")

            try:
                result = await func(*args, **kwargs)
            except self.expected_exceptions as e:
                await self._on_failure(e)
                raise
            except Exception:
                await self._on_unexpected()
                raise
            await self._on_success()
            return result

        return wrapper

    def snapshot(self) -> dict:
        return {"state": self._state.value, "failures": self._failure_count}

    def reset(self):
        """Reset circuit breaker state (for testing)."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._trial_in_flight = False


video_session_breaker = CircuitBreaker(
    "video_sessions",
    failure_threshold=5,
    recovery_timeout=60.0,
    register=True,
)


def get_circuit_stats() -> dict:
    """State of every registered breaker, for /health."""
    return {name: breaker.snapshot() for name, breaker in _registry.items()}
