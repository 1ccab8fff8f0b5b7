"""
Pipeline Context
================
Explicitly constructed set of pipeline components shared by the clients of
one SDK instance. Two contexts never share state.

Usage:
    context = PipelineContext.create(PipelineConfig.from_env())
    onboarding = context.client(ONBOARDING)
    ledgers = await onboarding.get(f"/organizations/{org_id}/ledgers")
    await context.aclose()
"""

import asyncio
import dataclasses
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

import httpx
import structlog

from midaz_core.cache import ResponseCache
from midaz_core.circuit_breaker import CircuitBreakerManager
from midaz_core.config import PipelineConfig
from midaz_core.http import ConnectionPool, HttpClient
from midaz_core.observability import NoopTracer, Tracer
from midaz_core.retry import RetryPolicy

logger = structlog.get_logger(__name__)


@dataclass
class PipelineContext:
    config: PipelineConfig
    pool: ConnectionPool
    breakers: CircuitBreakerManager
    retry_policy: RetryPolicy
    cache: Optional[ResponseCache]
    tracer: Tracer
    clock: Callable[[], float] = time.monotonic
    _clients: Dict[str, HttpClient] = field(default_factory=dict, repr=False)

    @classmethod
    def create(
        cls,
        config: Optional[PipelineConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        tracer: Optional[Tracer] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "PipelineContext":
        config = config or PipelineConfig()
        cache = None
        if config.cache.enabled:
            cache = ResponseCache.from_config(config.cache, clock=clock)

        return cls(
            config=config,
            pool=ConnectionPool(config.pool, transport=transport),
            breakers=CircuitBreakerManager(config.circuit_breaker, clock=clock),
            retry_policy=RetryPolicy(config.retry, sleep=sleep),
            cache=cache,
            tracer=tracer or NoopTracer(),
            clock=clock,
        )

    def client(self, service: str) -> HttpClient:
        """HTTP client bound to a ledger service's versioned base URL."""
        client = self._clients.get(service)
        if client is None:
            http_config = dataclasses.replace(
                self.config.http,
                base_url=self.config.service_url(service),
                default_headers=self.config.default_headers(),
            )
            client = HttpClient(
                http_config,
                pool=self.pool,
                breakers=self.breakers,
                retry_policy=self.retry_policy,
                cache=self.cache,
                budget_config=self.config.timeout_budget,
                tracer=self.tracer,
                clock=self.clock,
            )
            self._clients[service] = client
        return client

    def start(self) -> None:
        """Start the circuit breaker sweep on the running loop."""
        self.breakers.start()

    async def aclose(self) -> None:
        await self.breakers.aclose()
        await self.pool.aclose()
        self._clients.clear()
        logger.debug("pipeline_context_closed")

    async def __aenter__(self) -> "PipelineContext":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
