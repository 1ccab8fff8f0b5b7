"""
Circuit Breaker Models
======================
Data models and enums for the per-endpoint circuit breaker.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Optional


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, reject requests
    HALF_OPEN = "half_open"  # Probing recovery


def count_every_error(exc: BaseException) -> bool:
    """Default failure predicate: any ``Exception`` counts."""
    return isinstance(exc, Exception)


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker. Durations are in seconds."""
    failure_threshold: int = 5        # Failures within the window before opening
    success_threshold: int = 2        # Half-open successes needed to close
    timeout: float = 60.0             # Time to stay open before probing
    rolling_window: float = 60.0      # Window for counting failures
    half_open_max_calls: int = 1      # Concurrent probes allowed while half-open
    cleanup_interval: float = 300.0   # Idle-circuit sweep period
    is_failure: Callable[[BaseException], bool] = count_every_error
    on_open: Optional[Callable[[str], None]] = None
    on_close: Optional[Callable[[str], None]] = None
    on_half_open: Optional[Callable[[str], None]] = None

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")
        if self.timeout < 0 or self.rolling_window <= 0:
            raise ValueError("timeout must be >= 0 and rolling_window > 0")


@dataclass
class CircuitStats:
    """Runtime state of one endpoint's circuit."""
    state_changed_at: float
    last_activity: float
    state: CircuitState = CircuitState.CLOSED
    failures: Deque[float] = field(default_factory=deque)
    successes: int = 0
    last_failure_time: Optional[float] = None
    half_open_inflight: int = 0

    # Metrics
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view returned by ``get_stats``."""
    state: CircuitState
    failures: int
    successes: int
    last_failure_time: Optional[float] = None
