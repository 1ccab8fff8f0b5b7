"""
Retry Policy
============
Exponential backoff with jitter for transient failures, driven by tenacity.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from midaz_core.errors import MidazError, RateLimitError
from midaz_core.metrics import record_retry
from midaz_core.timeout import TimeoutBudget

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
NETWORK_ERROR_MARKERS = ("network", "timeout", "ECONNREFUSED", "ECONNRESET")


@dataclass
class RetryConfig:
    """Retry settings. Delays are in seconds."""
    max_retries: int = 3
    initial_delay: float = 0.1
    max_delay: float = 1.0
    jitter: float = 0.1  # Upper bound of the random extra delay
    retryable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: DEFAULT_RETRYABLE_STATUS_CODES
    )
    retry_condition: Optional[Callable[[BaseException], bool]] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("retry delays must be >= 0")
        self.retryable_status_codes = frozenset(self.retryable_status_codes)


class stop_when_budget_spent(stop_base):
    """Stop once the timeout budget can no longer fund an attempt."""

    def __init__(self, budget: TimeoutBudget):
        self.budget = budget

    def __call__(self, retry_state: RetryCallState) -> bool:
        return not self.budget.has_remaining_budget()


class _BackoffWait(wait_base):
    """Policy backoff, raised to a server ``Retry-After`` hint but still capped."""

    def __init__(self, policy: "RetryPolicy"):
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.policy.compute_delay(retry_state.attempt_number - 1)
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None and outcome.failed else None
        if isinstance(exc, RateLimitError) and exc.retry_after:
            delay = min(max(delay, exc.retry_after), self.policy.config.max_delay)
        return delay


class RetryPolicy:
    """
    Runs an async operation and retries it on retryable failures.

    ``max_retries`` retries means at most ``max_retries + 1`` attempts. When
    attempts run out the last error is re-raised unchanged.

    Usage:
        policy = RetryPolicy(RetryConfig(max_retries=2))
        body = await policy.execute(lambda: client.get("/v1/organizations"))
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep

    def compute_delay(self, attempt: int, jitter: bool = True) -> float:
        """Delay before retrying after 0-based ``attempt``."""
        delay = self.config.initial_delay * (2 ** attempt)
        if jitter and self.config.jitter:
            delay += random.uniform(0, self.config.jitter)
        return min(delay, self.config.max_delay)

    def is_retryable(self, exc: BaseException) -> bool:
        if not isinstance(exc, Exception):
            return False

        if self.config.retry_condition is not None:
            return bool(self.config.retry_condition(exc))

        if isinstance(exc, MidazError):
            if exc.status_code is not None:
                return exc.status_code in self.config.retryable_status_codes
            return exc.retryable

        message = str(exc)
        return any(marker in message for marker in NETWORK_ERROR_MARKERS)

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        budget: Optional[TimeoutBudget] = None,
        max_retries: Optional[int] = None,
    ) -> T:
        """
        Run ``fn`` with retries.

        Args:
            fn: Zero-argument coroutine factory, invoked once per attempt
            budget: Optional timeout budget; retrying stops once it is spent
            max_retries: Per-call override of ``config.max_retries``
        """
        retries = self.config.max_retries if max_retries is None else max_retries
        stop = stop_after_attempt(retries + 1)
        if budget is not None:
            stop = stop | stop_when_budget_spent(budget)

        retrying = AsyncRetrying(
            stop=stop,
            wait=_BackoffWait(self),
            retry=retry_if_exception(self.is_retryable),
            sleep=self._sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        return await retrying(fn)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        kind = exc.kind.value if isinstance(exc, MidazError) else type(exc).__name__
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0

        record_retry(kind)
        logger.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            delay=round(delay, 3),
            error_kind=kind,
            error=str(exc),
        )
