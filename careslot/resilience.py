"""
Resilience patterns for transient storage failures
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from careslot.config import BookingSettings
from careslot.exceptions import TransientStorageError
from careslot.observability.metrics import observe_transient_retry

logger = logging.getLogger(__name__)


def _log_retry(operation: str):
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        observe_transient_retry(operation)
        logger.warning(
            f"{operation}: transient failure on attempt {retry_state.attempt_number} "
            f"({type(exc).__name__ if exc else 'unknown'}), retrying"
        )
    return before_sleep


async def with_transient_retry(
    settings: BookingSettings,
    operation: str,
    func: Callable[..., Awaitable[Any]],
    *args,
    attempts: Optional[int] = None,
    **kwargs
) -> Any:
    """
    Run a ledger operation, retrying only on TransientStorageError.

    Business outcomes are return values and are never retried. The last
    TransientStorageError is re-raised once attempts are exhausted.

    Args:
        settings: Source of attempt count and backoff bounds
        operation: Name used in logs and metrics
        func: Coroutine function performing one full ledger transaction
        attempts: Override TRANSIENT_RETRY_ATTEMPTS
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts or settings.TRANSIENT_RETRY_ATTEMPTS),
        wait=wait_exponential(
            multiplier=settings.TRANSIENT_RETRY_BASE_DELAY,
            max=settings.TRANSIENT_RETRY_MAX_DELAY
        ),
        retry=retry_if_exception_type(TransientStorageError),
        before_sleep=_log_retry(operation),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await func(*args, **kwargs)
