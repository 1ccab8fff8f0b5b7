"""
Pipeline Configuration
======================
Aggregate configuration for the request pipeline, loadable from ``MIDAZ_*``
environment variables.

Millisecond values in the environment (``MIDAZ_HTTP_TIMEOUT`` and friends)
are converted to seconds.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from midaz_core.cache import CacheConfig
from midaz_core.circuit_breaker import CircuitBreakerConfig
from midaz_core.errors import is_endpoint_failure
from midaz_core.http import ConnectionPoolConfig, HttpClientConfig
from midaz_core.retry import DEFAULT_RETRYABLE_STATUS_CODES, RetryConfig
from midaz_core.timeout import TimeoutBudgetConfig

ONBOARDING = "onboarding"
TRANSACTION = "transaction"


def _pipeline_breaker_config() -> CircuitBreakerConfig:
    return CircuitBreakerConfig(is_failure=is_endpoint_failure)


@dataclass
class PipelineConfig:
    """Everything needed to build a :class:`~midaz_core.context.PipelineContext`."""
    onboarding_url: str = "http://localhost:3000"
    transaction_url: str = "http://localhost:3001"
    api_version: str = "v1"
    auth_token: Optional[str] = None

    http: HttpClientConfig = field(default_factory=HttpClientConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=_pipeline_breaker_config)
    pool: ConnectionPoolConfig = field(default_factory=ConnectionPoolConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    timeout_budget: TimeoutBudgetConfig = field(default_factory=TimeoutBudgetConfig)

    def service_url(self, service: str) -> str:
        """Versioned base URL of a ledger service (``onboarding`` or ``transaction``)."""
        urls = {ONBOARDING: self.onboarding_url, TRANSACTION: self.transaction_url}
        if service not in urls:
            raise ValueError(f"Unknown service: {service}")
        return f"{urls[service].rstrip('/')}/{self.api_version}"

    def default_headers(self) -> Dict[str, str]:
        headers = dict(self.http.default_headers)
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        """
        Build a config from ``MIDAZ_*`` variables, falling back to defaults.

        Args:
            environ: Variables to read (defaults to ``os.environ``)

        Raises:
            ValueError: A variable holds a value that cannot be parsed
        """
        env = _Env(os.environ if environ is None else environ)

        return cls(
            onboarding_url=env.get_str("MIDAZ_ONBOARDING_URL", "http://localhost:3000"),
            transaction_url=env.get_str("MIDAZ_TRANSACTION_URL", "http://localhost:3001"),
            api_version=env.get_str("MIDAZ_API_VERSION", "v1"),
            auth_token=env.get_str("MIDAZ_AUTH_TOKEN", None),
            http=HttpClientConfig(
                timeout=env.get_millis("MIDAZ_HTTP_TIMEOUT", 30.0),
            ),
            retry=RetryConfig(
                max_retries=env.get_int("MIDAZ_RETRY_MAX_RETRIES", 3),
                initial_delay=env.get_millis("MIDAZ_RETRY_INITIAL_DELAY", 0.1),
                max_delay=env.get_millis("MIDAZ_RETRY_MAX_DELAY", 1.0),
                retryable_status_codes=env.get_int_set(
                    "MIDAZ_RETRY_STATUS_CODES", DEFAULT_RETRYABLE_STATUS_CODES
                ),
            ),
            circuit_breaker=CircuitBreakerConfig(
                failure_threshold=env.get_int("MIDAZ_CIRCUIT_FAILURE_THRESHOLD", 5),
                success_threshold=env.get_int("MIDAZ_CIRCUIT_SUCCESS_THRESHOLD", 2),
                timeout=env.get_millis("MIDAZ_CIRCUIT_TIMEOUT", 60.0),
                rolling_window=env.get_millis("MIDAZ_CIRCUIT_ROLLING_WINDOW", 60.0),
                is_failure=is_endpoint_failure,
            ),
            pool=ConnectionPoolConfig(
                max_connections_per_host=env.get_int("MIDAZ_POOL_MAX_PER_HOST", 6),
                max_total_connections=env.get_int("MIDAZ_POOL_MAX_TOTAL", 20),
                max_queue_size=env.get_int("MIDAZ_POOL_MAX_QUEUE", 100),
                request_timeout=env.get_millis("MIDAZ_HTTP_TIMEOUT", 30.0),
                enable_coalescing=env.get_bool("MIDAZ_POOL_COALESCING", True),
            ),
            cache=CacheConfig(
                enabled=env.get_bool("MIDAZ_CACHE_ENABLED", True),
                ttl=env.get_millis("MIDAZ_CACHE_TTL", 60.0),
                max_entries=env.get_int("MIDAZ_CACHE_MAX_ENTRIES", 100),
            ),
        )


class _Env:
    """Typed accessors over an environment mapping."""

    def __init__(self, environ: Mapping[str, str]):
        self._environ = environ

    def _raw(self, name: str) -> Optional[str]:
        value = self._environ.get(name)
        if value is None or not value.strip():
            return None
        return value.strip()

    def get_str(self, name, default):
        value = self._raw(name)
        return default if value is None else value

    def get_int(self, name, default):
        value = self._raw(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {value!r}") from None

    def get_millis(self, name, default_seconds):
        value = self._raw(name)
        if value is None:
            return default_seconds
        try:
            return float(value) / 1000.0
        except ValueError:
            raise ValueError(f"{name} must be a number of milliseconds, got {value!r}") from None

    def get_bool(self, name, default):
        value = self._raw(name)
        return default if value is None else value.lower() == "true"

    def get_int_set(self, name, default):
        value = self._raw(name)
        if value is None:
            return frozenset(default)
        try:
            return frozenset(int(item.strip()) for item in value.split(",") if item.strip())
        except ValueError:
            raise ValueError(f"{name} must be a comma-separated list of integers") from None
