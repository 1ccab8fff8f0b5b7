"""
Midaz Core - Circuit Breaker
============================
Per-endpoint circuit breaker for the request pipeline.

States:

1. CLOSED: Normal operation, requests flow through
2. OPEN: Endpoint is failing, requests are rejected without a network call
3. HALF-OPEN: A limited number of probes test whether it recovered

Usage:
    from midaz_core.circuit_breaker import CircuitBreaker
    from midaz_core.errors import CircuitOpenError

    breaker = CircuitBreaker()
    try:
        response = await breaker.execute("GET:/v1/accounts", call_accounts)
    except CircuitOpenError as exc:
        ...  # exc.retry_after says when the next probe is allowed
"""

from .models import (
    CircuitState,
    CircuitBreakerConfig,
    CircuitStats,
    CircuitSnapshot,
    count_every_error,
)

from .breaker import CircuitBreaker

from .registry import CircuitBreakerManager

__all__ = [
    # Models
    "CircuitState",
    "CircuitBreakerConfig",
    "CircuitStats",
    "CircuitSnapshot",
    "count_every_error",
    # Breaker
    "CircuitBreaker",
    # Registry
    "CircuitBreakerManager",
]
