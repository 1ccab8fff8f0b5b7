"""
Circuit Breaker Core
====================
Keyed circuit breaker: every endpoint key gets an independent three-state
circuit, created lazily on first use.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from midaz_core.errors import CircuitOpenError
from midaz_core.metrics import record_circuit_event, record_circuit_state

from .models import (
    CircuitBreakerConfig,
    CircuitSnapshot,
    CircuitState,
    CircuitStats,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Circuit breaker holding one circuit per endpoint key.

    Example:
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))

        try:
            account = await breaker.execute("GET:/v1/accounts", fetch_accounts)
        except CircuitOpenError:
            return fallback_value
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._circuits: Dict[str, CircuitStats] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._circuits)

    def __contains__(self, key: str) -> bool:
        return key in self._circuits

    async def execute(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` under the circuit for ``key``.

        Raises:
            CircuitOpenError: If the circuit rejects the call. ``fn`` is not invoked.
        """
        circuit = self._get_or_create(key)
        probe = self._admit(key, circuit)

        try:
            result = await fn()
        except BaseException as exc:
            self._record_failure(key, circuit, exc)
            raise
        else:
            self._record_success(key, circuit)
            return result
        finally:
            if probe:
                circuit.half_open_inflight = max(0, circuit.half_open_inflight - 1)

    def get_state(self, key: str) -> CircuitState:
        circuit = self._circuits.get(key)
        return circuit.state if circuit else CircuitState.CLOSED

    def get_stats(self, key: str) -> CircuitSnapshot:
        circuit = self._circuits.get(key)
        if circuit is None:
            return CircuitSnapshot(state=CircuitState.CLOSED, failures=0, successes=0)

        self._prune(circuit)
        return CircuitSnapshot(
            state=circuit.state,
            failures=len(circuit.failures),
            successes=circuit.successes,
            last_failure_time=circuit.last_failure_time,
        )

    def get_metrics(self, key: str) -> Dict[str, Any]:
        """Counters for one circuit. Unknown keys report zeroes."""
        circuit = self._circuits.get(key)
        if circuit is None:
            return {
                "name": self.name,
                "key": key,
                "state": CircuitState.CLOSED.value,
                "failure_count": 0,
                "success_count": 0,
                "total_calls": 0,
                "total_failures": 0,
                "total_successes": 0,
                "total_rejections": 0,
                "last_failure": None,
            }

        self._prune(circuit)
        return {
            "name": self.name,
            "key": key,
            "state": circuit.state.value,
            "failure_count": len(circuit.failures),
            "success_count": circuit.successes,
            "total_calls": circuit.total_calls,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
            "total_rejections": circuit.total_rejections,
            "last_failure": circuit.last_failure_time,
        }

    def get_all_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {key: self.get_metrics(key) for key in list(self._circuits)}

    def open(self, key: str) -> None:
        """Force the circuit open (operational override)."""
        self._transition(key, self._get_or_create(key), CircuitState.OPEN)

    def close(self, key: str) -> None:
        """Force the circuit closed, clearing its failure history."""
        self._transition(key, self._get_or_create(key), CircuitState.CLOSED)

    def reset(self, key: str) -> None:
        if self._circuits.pop(key, None) is not None:
            record_circuit_state(key, CircuitState.CLOSED.value)
            logger.info("circuit_reset", breaker=self.name, endpoint=key)

    def reset_all(self) -> None:
        for key in list(self._circuits):
            self.reset(key)

    def sweep(self) -> int:
        """
        Drop idle circuits to bound memory.

        A circuit is removed when it is closed, has no failures left in its
        window, and has seen no activity for two windows.
        """
        now = self._clock()
        cutoff = now - self.config.rolling_window * 2
        idle = []

        for key, circuit in self._circuits.items():
            self._prune(circuit, now)
            if (
                circuit.state == CircuitState.CLOSED
                and not circuit.failures
                and (circuit.last_failure_time is None or circuit.last_failure_time < cutoff)
                and circuit.last_activity < cutoff
            ):
                idle.append(key)

        for key in idle:
            del self._circuits[key]

        if idle:
            logger.debug("circuit_sweep", breaker=self.name, removed=len(idle))
        return len(idle)

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever())

    async def aclose(self) -> None:
        """Stop the periodic sweep."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            self.sweep()

    def _get_or_create(self, key: str) -> CircuitStats:
        circuit = self._circuits.get(key)
        if circuit is None:
            now = self._clock()
            circuit = CircuitStats(state_changed_at=now, last_activity=now)
            self._circuits[key] = circuit
        return circuit

    def _admit(self, key: str, circuit: CircuitStats) -> bool:
        """Gate a call. Returns True when the call is a half-open probe."""
        now = self._clock()
        circuit.last_activity = now

        if circuit.state == CircuitState.OPEN:
            if now - circuit.state_changed_at >= self.config.timeout:
                self._transition(key, circuit, CircuitState.HALF_OPEN)
            else:
                self._reject(key, circuit, now)

        probe = False
        if circuit.state == CircuitState.HALF_OPEN:
            if circuit.half_open_inflight >= self.config.half_open_max_calls:
                self._reject(key, circuit, now)
            circuit.half_open_inflight += 1
            probe = True

        circuit.total_calls += 1
        return probe

    def _reject(self, key: str, circuit: CircuitStats, now: float) -> None:
        circuit.total_rejections += 1
        record_circuit_event(key, "rejected")
        retry_after = 0.0
        if circuit.state == CircuitState.OPEN:
            retry_after = max(0.0, self.config.timeout - (now - circuit.state_changed_at))
        raise CircuitOpenError(key, circuit.state.value, retry_after)

    def _record_success(self, key: str, circuit: CircuitStats) -> None:
        circuit.total_successes += 1
        record_circuit_event(key, "success")

        # A closed-state success leaves the failure window untouched
        if circuit.state == CircuitState.HALF_OPEN:
            circuit.successes += 1
            if circuit.successes >= self.config.success_threshold:
                self._transition(key, circuit, CircuitState.CLOSED)

    def _record_failure(self, key: str, circuit: CircuitStats, exc: BaseException) -> None:
        if isinstance(exc, asyncio.CancelledError) or not self.config.is_failure(exc):
            return

        now = self._clock()
        circuit.failures.append(now)
        circuit.last_failure_time = now
        circuit.total_failures += 1
        record_circuit_event(key, "failure")

        if circuit.state == CircuitState.HALF_OPEN:
            self._transition(key, circuit, CircuitState.OPEN, error=str(exc))
        elif circuit.state == CircuitState.CLOSED:
            self._prune(circuit, now)
            if len(circuit.failures) >= self.config.failure_threshold:
                self._transition(key, circuit, CircuitState.OPEN, error=str(exc))

    def _prune(self, circuit: CircuitStats, now: Optional[float] = None) -> None:
        cutoff = (self._clock() if now is None else now) - self.config.rolling_window
        failures = circuit.failures
        while failures and failures[0] <= cutoff:
            failures.popleft()

    def _transition(
        self,
        key: str,
        circuit: CircuitStats,
        state: CircuitState,
        error: Optional[str] = None,
    ) -> None:
        previous = circuit.state
        circuit.state = state
        circuit.state_changed_at = self._clock()
        circuit.successes = 0
        if state == CircuitState.CLOSED:
            circuit.failures.clear()

        record_circuit_state(key, state.value)
        event = "close" if state == CircuitState.CLOSED else state.value
        record_circuit_event(key, event)

        if state == CircuitState.OPEN:
            logger.warning(
                "circuit_opened",
                breaker=self.name,
                endpoint=key,
                previous=previous.value,
                failures=len(circuit.failures),
                error=error,
            )
            callback = self.config.on_open
        elif state == CircuitState.HALF_OPEN:
            logger.info("circuit_half_open", breaker=self.name, endpoint=key)
            callback = self.config.on_half_open
        else:
            logger.info("circuit_closed", breaker=self.name, endpoint=key, previous=previous.value)
            callback = self.config.on_close

        if callback is not None:
            try:
                callback(key)
            except Exception:
                logger.exception("circuit_callback_failed", breaker=self.name, endpoint=key)
