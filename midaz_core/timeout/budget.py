"""
Timeout Budget
==============
Tracks a shrinking time allowance across the retry attempts of one logical
operation, so the sum of attempts cannot exceed the caller's deadline.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from midaz_core.cancellation import CancellationToken

Clock = Callable[[], float]


@dataclass
class TimeoutBudgetConfig:
    """
    Budget settings used by the HTTP client.

    When ``total_timeout`` is None the client derives it per call as
    ``attempt timeout * (retries + 1)``.
    """
    enabled: bool = True
    total_timeout: Optional[float] = None
    min_request_timeout: float = 1.0
    buffer_time: float = 0.1


class TimeoutBudget:
    """
    Time allowance for one logical call, in seconds.

    Example:
        budget = TimeoutBudget(total_timeout=10.0)
        attempt_timeout = budget.get_next_timeout(5.0)
        if attempt_timeout == 0:
            ...  # no time left, stop retrying
    """

    def __init__(
        self,
        total_timeout: float,
        min_request_timeout: float = 1.0,
        buffer_time: float = 0.1,
        clock: Clock = time.monotonic,
    ):
        if total_timeout <= 0:
            raise ValueError("total_timeout must be positive")
        self.total_timeout = total_timeout
        self.min_request_timeout = min_request_timeout
        self.buffer_time = buffer_time
        self._clock = clock
        self._start = clock()
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    @property
    def remaining(self) -> float:
        return max(0.0, self.total_timeout - self.elapsed)

    def get_next_timeout(self, requested_timeout: Optional[float] = None) -> float:
        """
        Timeout for the next attempt.

        Returns 0 when the remaining budget is at or below the buffer,
        meaning no further attempt may start.
        """
        self._attempts += 1
        remaining = self.remaining

        if remaining <= self.buffer_time:
            return 0.0

        available = remaining - self.buffer_time
        if requested_timeout and requested_timeout <= available:
            return requested_timeout

        return max(self.min_request_timeout, available)

    def has_remaining_budget(self) -> bool:
        return self.remaining > self.min_request_timeout + self.buffer_time

    def create_cancellation_token(self) -> CancellationToken:
        """Token that fires when the budget runs out. Needs a running loop."""
        return CancellationToken.with_timeout(self.remaining)

    def __repr__(self) -> str:
        return (
            f"TimeoutBudget(total={self.total_timeout}, "
            f"remaining={self.remaining:.3f}, attempts={self._attempts})"
        )


def create_budget(
    total_timeout: float,
    min_request_timeout: float = 1.0,
    buffer_time: float = 0.1,
    clock: Clock = time.monotonic,
) -> TimeoutBudget:
    return TimeoutBudget(
        total_timeout,
        min_request_timeout=min_request_timeout,
        buffer_time=buffer_time,
        clock=clock,
    )


class TimeoutBudgetManager:
    """Keyed budgets sharing one set of defaults."""

    def __init__(
        self,
        total_timeout: float,
        min_request_timeout: float = 1.0,
        buffer_time: float = 0.1,
        clock: Clock = time.monotonic,
    ):
        self._defaults = dict(
            total_timeout=total_timeout,
            min_request_timeout=min_request_timeout,
            buffer_time=buffer_time,
        )
        self._clock = clock
        self._budgets: Dict[str, TimeoutBudget] = {}

    def create_budget(self, key: str, **overrides: float) -> TimeoutBudget:
        options = {**self._defaults, **overrides}
        budget = TimeoutBudget(clock=self._clock, **options)
        self._budgets[key] = budget
        return budget

    def get_budget(self, key: str) -> Optional[TimeoutBudget]:
        return self._budgets.get(key)

    def remove_budget(self, key: str) -> None:
        self._budgets.pop(key, None)

    def cleanup(self) -> int:
        """Drop budgets that can no longer fund an attempt."""
        spent = [k for k, b in self._budgets.items() if not b.has_remaining_budget()]
        for key in spent:
            del self._budgets[key]
        return len(spent)

    def active_budgets(self) -> Dict[str, TimeoutBudget]:
        return dict(self._budgets)

    def clear(self) -> None:
        self._budgets.clear()
