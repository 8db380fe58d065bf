"""
Utility modules for the booking core.
"""
from careslot.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpen,
    CircuitState,
    NETWORK_EXCEPTIONS,
    video_session_breaker,
    get_circuit_stats,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitState",
    "NETWORK_EXCEPTIONS",
    "video_session_breaker",
    "get_circuit_stats",
]
