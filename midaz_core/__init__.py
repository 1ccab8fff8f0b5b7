"""
Midaz Core Library
==================
Resilient HTTP request pipeline for the Midaz ledger client SDK.
"""

__version__ = "0.1.0"

# Errors
from midaz_core.errors import (
    ErrorCategory,
    ErrorCode,
    ErrorKind,
    MidazError,
    NetworkError,
    RequestTimeoutError,
    TimeoutBudgetExhaustedError,
    HttpClientError,
    HttpServerError,
    RateLimitError,
    CircuitOpenError,
    QueueFullError,
    PoolResetError,
    RequestCancelledError,
    ResponseDecodeError,
)

# Cancellation
from midaz_core.cancellation import CancellationToken

# Timeout Budget
from midaz_core.timeout import TimeoutBudget, TimeoutBudgetManager, create_budget

# Circuit Breaker
from midaz_core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitState,
)

# Retry
from midaz_core.retry import RetryConfig, RetryPolicy

# Cache
from midaz_core.cache import ResponseCache, make_cache_key, memoize

# HTTP
from midaz_core.http import (
    ConnectionPool,
    ConnectionPoolConfig,
    HttpClient,
    HttpClientConfig,
    HttpMethod,
    RequestDescriptor,
)

# Configuration
from midaz_core.config import PipelineConfig
from midaz_core.context import PipelineContext

__all__ = [
    "__version__",
    # Errors
    "ErrorCategory",
    "ErrorCode",
    "ErrorKind",
    "MidazError",
    "NetworkError",
    "RequestTimeoutError",
    "TimeoutBudgetExhaustedError",
    "HttpClientError",
    "HttpServerError",
    "RateLimitError",
    "CircuitOpenError",
    "QueueFullError",
    "PoolResetError",
    "RequestCancelledError",
    "ResponseDecodeError",
    # Cancellation
    "CancellationToken",
    # Timeout Budget
    "TimeoutBudget",
    "TimeoutBudgetManager",
    "create_budget",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerManager",
    "CircuitState",
    # Retry
    "RetryConfig",
    "RetryPolicy",
    # Cache
    "ResponseCache",
    "make_cache_key",
    "memoize",
    # HTTP
    "ConnectionPool",
    "ConnectionPoolConfig",
    "HttpClient",
    "HttpClientConfig",
    "HttpMethod",
    "RequestDescriptor",
    # Configuration
    "PipelineConfig",
    "PipelineContext",
]
