"""
Retry Logic with Exponential Backoff
====================================
Retry policy for transient pipeline failures.
"""

from .policy import (
    DEFAULT_RETRYABLE_STATUS_CODES,
    RetryConfig,
    RetryPolicy,
    stop_when_budget_spent,
)

__all__ = [
    "DEFAULT_RETRYABLE_STATUS_CODES",
    "RetryConfig",
    "RetryPolicy",
    "stop_when_budget_spent",
]
