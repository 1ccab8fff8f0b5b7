"""
HTTP Client
===========
Request executor for the ledger APIs.

Each logical call flows through:
cache lookup -> timeout budget -> retry policy -> circuit breaker (per
attempt) -> connection pool -> response classification -> cache write.
"""

import dataclasses
import hashlib
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Type, TypeVar, Union

import httpx
import structlog
from pydantic import BaseModel
from structlog.contextvars import get_contextvars

from midaz_core.cache import ResponseCache, make_cache_key
from midaz_core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerManager,
    CircuitState,
)
from midaz_core.errors import (
    MidazError,
    RequestCancelledError,
    ResponseDecodeError,
    TimeoutBudgetExhaustedError,
    error_from_response,
    is_endpoint_failure,
)
from midaz_core.metrics import REQUESTS_INFLIGHT, record_error, record_request
from midaz_core.observability import NoopTracer, Tracer
from midaz_core.retry import RetryPolicy
from midaz_core.timeout import TimeoutBudget, TimeoutBudgetConfig

from .models import IDEMPOTENT_KEY_METHODS, HttpMethod, RequestDescriptor
from .pool import ConnectionPool, PoolStats
from .redact import redact_headers, redact_url_credentials

# Generic type for Pydantic models
T = TypeVar("T", bound=BaseModel)

logger = structlog.get_logger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
CORRELATION_HEADER = "X-Request-Id"

_MISS = object()


@dataclass
class HttpClientConfig:
    """Executor settings. ``timeout`` is the per-attempt timeout in seconds."""
    base_url: Optional[str] = None
    timeout: float = 30.0
    default_headers: Dict[str, str] = field(default_factory=dict)
    use_connection_pool: bool = True
    user_agent: str = "midaz-core-python"

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")


def _serialize_body(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, BaseModel):
        return body.model_dump_json()
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    if isinstance(body, str):
        return body
    return json.dumps(body, sort_keys=True, default=str)


def generate_idempotency_key(method: str, url: str, body: Any = None) -> str:
    """sha256 of method, URL, body, a timestamp and a random salt."""
    payload = ":".join(
        [method, url, _serialize_body(body), str(time.time_ns()), secrets.token_hex(4)]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def parse_response_body(response: httpx.Response) -> Any:
    """Decode a successful response by content type: JSON, text, then raw bytes."""
    if response.status_code == 204 or not response.content:
        return None

    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError as exc:
            raise ResponseDecodeError(
                f"Invalid JSON in {response.status_code} response: {exc}",
                status_code=response.status_code,
                request_id=response.headers.get("x-request-id"),
                cause=exc,
            ) from exc
    if content_type.startswith("text/"):
        return response.text
    return response.content


class HttpClient:
    """
    Resilient async HTTP client.

    Features:
    - Retries with exponential backoff on transient failures.
    - Per-endpoint circuit breaking, re-checked on every attempt.
    - Per-host connection caps with request coalescing.
    - Shrinking timeout budget across attempts.
    - Short-lived cache for GET responses.
    - Pydantic model deserialization.

    Usage:
        async with HttpClient(HttpClientConfig(base_url="http://localhost:3000/v1")) as client:
            orgs = await client.get("/organizations", params={"limit": 10})
    """

    def __init__(
        self,
        config: Optional[HttpClientConfig] = None,
        *,
        pool: Optional[ConnectionPool] = None,
        breakers: Optional[CircuitBreakerManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[ResponseCache] = None,
        budget_config: Optional[TimeoutBudgetConfig] = None,
        tracer: Optional[Tracer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=time.monotonic,
    ):
        self.config = config or HttpClientConfig()
        self.pool = pool or ConnectionPool(transport=transport)
        self.breakers = breakers or CircuitBreakerManager(
            CircuitBreakerConfig(is_failure=is_endpoint_failure), clock=clock
        )
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache
        self.budget_config = budget_config or TimeoutBudgetConfig()
        self.tracer = tracer or NoopTracer()
        self._clock = clock

        self._default_headers: Dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": self.config.user_agent,
        }
        self._default_headers.update(self.config.default_headers)

    async def __aenter__(self) -> "HttpClient":
        self.breakers.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop background sweeps and close the connection pool."""
        await self.breakers.aclose()
        await self.pool.aclose()

    def set_default_header(self, name: str, value: str) -> None:
        self._default_headers[name] = value

    def remove_default_header(self, name: str) -> None:
        self._default_headers.pop(name, None)

    def get_pool_stats(self) -> PoolStats:
        return self.pool.get_stats()

    def get_circuit_state(self, endpoint_key: str) -> CircuitState:
        return self.breakers.get_state(endpoint_key)

    def reset_connection_pool(self) -> None:
        self.pool.reset()

    async def get(
        self,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        response_model: Optional[Type[T]] = None,
        **options: Any,
    ) -> Union[T, Any]:
        return await self.request(
            RequestDescriptor(HttpMethod.GET, url, params=params, **options),
            response_model=response_model,
        )

    async def post(
        self,
        url: str,
        body: Any = None,
        *,
        response_model: Optional[Type[T]] = None,
        **options: Any,
    ) -> Union[T, Any]:
        return await self.request(
            RequestDescriptor(HttpMethod.POST, url, body=body, **options),
            response_model=response_model,
        )

    async def put(
        self,
        url: str,
        body: Any = None,
        *,
        response_model: Optional[Type[T]] = None,
        **options: Any,
    ) -> Union[T, Any]:
        return await self.request(
            RequestDescriptor(HttpMethod.PUT, url, body=body, **options),
            response_model=response_model,
        )

    async def patch(
        self,
        url: str,
        body: Any = None,
        *,
        response_model: Optional[Type[T]] = None,
        **options: Any,
    ) -> Union[T, Any]:
        return await self.request(
            RequestDescriptor(HttpMethod.PATCH, url, body=body, **options),
            response_model=response_model,
        )

    async def delete(
        self,
        url: str,
        *,
        response_model: Optional[Type[T]] = None,
        **options: Any,
    ) -> Union[T, Any]:
        return await self.request(
            RequestDescriptor(HttpMethod.DELETE, url, **options),
            response_model=response_model,
        )

    async def request(
        self,
        descriptor: RequestDescriptor,
        response_model: Optional[Type[T]] = None,
    ) -> Union[T, Any]:
        """
        Execute one logical call.

        Returns:
            The parsed body, validated into ``response_model`` when given

        Raises:
            MidazError: Subclass describing the last failure
        """
        descriptor = self._resolve(descriptor)
        if descriptor.signal is not None and descriptor.signal.is_cancelled():
            raise RequestCancelledError(f"Request cancelled: {descriptor.signal.reason}")

        cache_key = self._cache_key(descriptor)
        if cache_key is not None:
            cached = self.cache.get(cache_key, _MISS)
            if cached is not _MISS:
                logger.debug("cache_hit", method=descriptor.method.value, path=descriptor.path)
                return self._to_model(cached, response_model)

        retries = descriptor.max_retries
        if retries is None:
            retries = self.retry_policy.config.max_retries
        budget = self._create_budget(descriptor, retries)
        headers = self._build_headers(descriptor)
        endpoint_key = descriptor.get_endpoint_key()

        logger.debug(
            "http_request",
            method=descriptor.method.value,
            url=redact_url_credentials(descriptor.url),
            headers=redact_headers(headers),
            endpoint=endpoint_key,
        )

        async def attempt() -> Any:
            timeout = self._attempt_timeout(descriptor, budget)
            return await self.breakers.execute(
                endpoint_key, lambda: self._send(descriptor, headers, timeout)
            )

        body = await self.retry_policy.execute(attempt, budget=budget, max_retries=retries)

        if cache_key is not None and body is not None:
            self.cache.set(cache_key, body, descriptor.cache_ttl)
        return self._to_model(body, response_model)

    def _resolve(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        base_url = self.config.base_url
        if not base_url or descriptor.url.startswith(("http://", "https://")):
            return descriptor
        url = f"{base_url.rstrip('/')}/{descriptor.url.lstrip('/')}"
        return dataclasses.replace(descriptor, url=url)

    def _cache_key(self, descriptor: RequestDescriptor) -> Optional[str]:
        if (
            self.cache is None
            or descriptor.method != HttpMethod.GET
            or descriptor.bypass_cache
        ):
            return None
        return descriptor.cache_key or make_cache_key(
            descriptor.method.value, descriptor.url, descriptor.params
        )

    def _create_budget(self, descriptor: RequestDescriptor, retries: int) -> Optional[TimeoutBudget]:
        config = self.budget_config
        if not config.enabled:
            return None
        total = config.total_timeout or (descriptor.timeout or self.config.timeout) * (retries + 1)
        return TimeoutBudget(
            total,
            min_request_timeout=config.min_request_timeout,
            buffer_time=config.buffer_time,
            clock=self._clock,
        )

    def _build_headers(self, descriptor: RequestDescriptor) -> Dict[str, str]:
        headers = {**self._default_headers, **descriptor.headers}
        present = {name.lower() for name in headers}

        correlation_id = descriptor.correlation_id or get_contextvars().get("correlation_id")
        if correlation_id and CORRELATION_HEADER.lower() not in present:
            headers[CORRELATION_HEADER] = correlation_id

        if (
            descriptor.method in IDEMPOTENT_KEY_METHODS
            and not descriptor.disable_idempotency_key
            and IDEMPOTENCY_HEADER.lower() not in present
        ):
            # Generated once per logical call; every retry reuses it
            headers[IDEMPOTENCY_HEADER] = descriptor.idempotency_key or generate_idempotency_key(
                descriptor.method.value, descriptor.url, descriptor.body
            )
        return headers

    def _attempt_timeout(self, descriptor: RequestDescriptor, budget: Optional[TimeoutBudget]) -> float:
        requested = descriptor.timeout or self.config.timeout
        if budget is None:
            return requested

        timeout = budget.get_next_timeout(requested)
        if timeout <= 0:
            raise TimeoutBudgetExhaustedError(
                f"Timeout budget of {budget.total_timeout:.1f}s exhausted "
                f"after {budget.attempts - 1} attempts"
            )
        return timeout

    @staticmethod
    def _body_kwargs(body: Any) -> Dict[str, Any]:
        if body is None:
            return {}
        if isinstance(body, BaseModel):
            return {"json": body.model_dump(mode="json", by_alias=True, exclude_none=True)}
        if isinstance(body, (bytes, str)):
            return {"content": body}
        return {"json": body}

    async def _send(self, descriptor: RequestDescriptor, headers: Dict[str, str], timeout: float) -> Any:
        method = descriptor.method.value
        request = self.pool.build_request(
            method,
            descriptor.url,
            headers=headers,
            params=dict(descriptor.params) if descriptor.params else None,
            timeout=timeout,
            **self._body_kwargs(descriptor.body),
        )

        span = self.tracer.start_span(
            f"HTTP {method}",
            attributes={
                "http.method": method,
                "http.url": redact_url_credentials(descriptor.url),
                "midaz.endpoint": descriptor.get_endpoint_key(),
                "midaz.service": descriptor.service,
            },
        )
        status = "error"
        started = time.perf_counter()
        REQUESTS_INFLIGHT.labels(method=method).inc()

        try:
            if self.config.use_connection_pool:
                response = await self.pool.fetch(request, signal=descriptor.signal, timeout=timeout)
            else:
                response = await self.pool.send(request, signal=descriptor.signal, timeout=timeout)

            status = str(response.status_code)
            span.set_attribute("http.status_code", response.status_code)
            if not response.is_success:
                raise error_from_response(response)

            body = parse_response_body(response)
            span.set_status("ok")
            return body
        except BaseException as exc:
            if isinstance(exc, MidazError):
                if exc.status_code is None:
                    status = exc.kind.value
                record_error(descriptor.path, exc.kind.value)
            span.record_exception(exc)
            span.set_status("error", str(exc))
            raise
        finally:
            REQUESTS_INFLIGHT.labels(method=method).dec()
            record_request(method, descriptor.path, status, time.perf_counter() - started)
            span.end()

    @staticmethod
    def _to_model(body: Any, response_model: Optional[Type[T]]) -> Union[T, Any]:
        if response_model is None or body is None:
            return body
        return response_model.model_validate(body)
