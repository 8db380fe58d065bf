"""
Prometheus metrics for the booking core

Tracks:
- Outcome distribution per operation (reserve, commit, release, ...)
- Transient storage retries
- Sweeper throughput
- Match attempts per request
- Ledger operation latency
"""

import logging
import time
from contextlib import contextmanager

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Create registry
registry = CollectorRegistry()

# ==============================================================================
# BOOKING METRICS
# ==============================================================================

BOOKING_OUTCOMES = Counter(
    'booking_outcomes_total',
    'Booking core operation results',
    ['operation', 'outcome'],  # reserve/commit/release/renew/..., reserved/conflict/...
    registry=registry
)

LEDGER_LATENCY = Histogram(
    'ledger_operation_duration_seconds',
    'Duration of a booking operation including retries',
    ['operation'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry
)

TRANSIENT_RETRIES = Counter(
    'ledger_transient_retries_total',
    'Retries after transient storage failures',
    ['operation'],
    registry=registry
)

# ==============================================================================
# SWEEPER METRICS
# ==============================================================================

HOLDS_EXPIRED = Counter(
    'holds_expired_total',
    'Holds transitioned to expired',
    ['path'],  # sweep, inline
    registry=registry
)

HOLDS_PURGED = Counter(
    'holds_purged_total',
    'Terminal holds deleted by retention cleanup',
    registry=registry
)

# ==============================================================================
# MATCH METRICS
# ==============================================================================

MATCH_ATTEMPTS = Histogram(
    'match_attempts',
    'Reserve attempts used per match request',
    ['outcome'],
    buckets=(1, 2, 3, 4, 5, 8),
    registry=registry
)

# ==============================================================================
# HELPER FUNCTIONS
# ==============================================================================

def observe_outcome(operation: str, outcome) -> None:
    """Record an operation result (BookingOutcome or plain string)"""
    BOOKING_OUTCOMES.labels(operation=operation, outcome=getattr(outcome, 'value', outcome)).inc()


def observe_transient_retry(operation: str) -> None:
    TRANSIENT_RETRIES.labels(operation=operation).inc()


def observe_holds_expired(count: int, path: str = "sweep") -> None:
    if count:
        HOLDS_EXPIRED.labels(path=path).inc(count)


def observe_holds_purged(count: int) -> None:
    if count:
        HOLDS_PURGED.inc(count)


def observe_match(outcome, attempts: int) -> None:
    MATCH_ATTEMPTS.labels(outcome=getattr(outcome, 'value', outcome)).observe(attempts)


@contextmanager
def track_ledger_latency(operation: str):
    """Time a block and record it under the operation label"""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        LEDGER_LATENCY.labels(operation=operation).observe(time.perf_counter() - start_time)


# ==============================================================================
# METRICS ENDPOINT
# ==============================================================================

def get_metrics() -> tuple:
    """Generate Prometheus metrics output"""
    return generate_latest(registry), CONTENT_TYPE_LATEST
