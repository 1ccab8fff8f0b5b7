"""
Circuit Breaker Registry
========================
Per-endpoint breaker configuration on top of a shared default breaker.
"""

import dataclasses
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog

from .breaker import CircuitBreaker
from .models import CircuitBreakerConfig, CircuitSnapshot, CircuitState

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitBreakerManager:
    """
    Routes endpoint keys to breakers.

    An endpoint configured with :meth:`configure_endpoint` (exact key or key
    prefix) gets its own breaker; every other key shares the default one.

    Usage:
        manager = CircuitBreakerManager()
        manager.configure_endpoint("POST:/v1/transactions", failure_threshold=2)
        await manager.execute("POST:/v1/transactions", send_transaction)
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._default = CircuitBreaker(self.default_config, name="default", clock=clock)
        self._endpoint_breakers: Dict[str, CircuitBreaker] = {}

    def configure_endpoint(self, endpoint: str, **overrides: Any) -> CircuitBreaker:
        """Give ``endpoint`` (key or key prefix) its own breaker configuration."""
        config = dataclasses.replace(self.default_config, **overrides)
        breaker = CircuitBreaker(config, name=endpoint, clock=self._clock)
        self._endpoint_breakers[endpoint] = breaker
        logger.debug("circuit_endpoint_configured", endpoint=endpoint, **overrides)
        return breaker

    def breaker_for(self, key: str) -> CircuitBreaker:
        breaker = self._endpoint_breakers.get(key)
        if breaker is not None:
            return breaker

        # Longest configured prefix wins
        matches = [p for p in self._endpoint_breakers if key.startswith(p)]
        if matches:
            return self._endpoint_breakers[max(matches, key=len)]
        return self._default

    async def execute(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await self.breaker_for(key).execute(key, fn)

    def get_state(self, key: str) -> CircuitState:
        return self.breaker_for(key).get_state(key)

    def get_stats(self, key: str) -> CircuitSnapshot:
        return self.breaker_for(key).get_stats(key)

    def open(self, key: str) -> None:
        self.breaker_for(key).open(key)

    def close(self, key: str) -> None:
        self.breaker_for(key).close(key)

    def reset(self, key: str) -> None:
        self.breaker_for(key).reset(key)

    def reset_all(self) -> None:
        for breaker in self._breakers():
            breaker.reset_all()

    def sweep(self) -> int:
        return sum(breaker.sweep() for breaker in self._breakers())

    def get_all_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Metrics for every tracked endpoint key across all breakers."""
        metrics: Dict[str, Dict[str, Any]] = {}
        for breaker in self._breakers():
            metrics.update(breaker.get_all_metrics())
        return metrics

    def start(self) -> None:
        for breaker in self._breakers():
            breaker.start()

    async def aclose(self) -> None:
        for breaker in self._breakers():
            await breaker.aclose()

    def _breakers(self) -> List[CircuitBreaker]:
        return [self._default, *self._endpoint_breakers.values()]
