"""
Connection Pool
===============
Per-host and global concurrency caps in front of ``httpx.AsyncClient``.

Requests that cannot be admitted wait in a bounded FIFO queue per host.
Identical in-flight GETs are coalesced onto one network call for a short
window after issue.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

import httpx
import structlog

from midaz_core.cancellation import CancellationToken
from midaz_core.errors import (
    PoolResetError,
    QueueFullError,
    RequestCancelledError,
    RequestTimeoutError,
    map_transport_error,
)
from midaz_core.metrics import record_pool_state

logger = structlog.get_logger(__name__)


@dataclass
class ConnectionPoolConfig:
    """Pool limits. Durations are in seconds."""
    max_connections_per_host: int = 6
    max_total_connections: int = 20
    max_queue_size: int = 100
    request_timeout: float = 30.0
    enable_coalescing: bool = True
    coalescing_window: float = 0.1

    def __post_init__(self):
        if self.max_connections_per_host < 1 or self.max_total_connections < 1:
            raise ValueError("connection limits must be >= 1")
        if self.max_queue_size < 0:
            raise ValueError("max_queue_size must be >= 0")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")


@dataclass
class _Waiter:
    future: asyncio.Future
    signal: Optional[CancellationToken] = None


@dataclass
class HostConnectionState:
    active: int = 0
    queue: Deque[_Waiter] = field(default_factory=deque)


@dataclass(frozen=True)
class PoolStats:
    total_active: int
    total_queued: int
    hosts: Dict[str, Dict[str, int]]
    coalescing: int


def _consume_outcome(task: asyncio.Future) -> None:
    # Mark the outcome retrieved; whoever awaits the task still sees it
    if not task.cancelled():
        task.exception()


class ConnectionPool:
    """
    Admission control for outgoing requests.

    Usage:
        pool = ConnectionPool(ConnectionPoolConfig(max_connections_per_host=2))
        request = pool.build_request("GET", "https://ledger.local/v1/organizations")
        response = await pool.fetch(request)
    """

    def __init__(
        self,
        config: Optional[ConnectionPoolConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or ConnectionPoolConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            transport=transport,
            timeout=self.config.request_timeout,
        )
        self._hosts: Dict[str, HostConnectionState] = {}
        self._total_active = 0
        # Bumped by reset(); leases from an older generation are ignored on release
        self._generation = 0
        self._inflight: Dict[str, asyncio.Future] = {}
        self._coalesce_timers: Dict[str, asyncio.TimerHandle] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    def build_request(self, method: str, url: str, **kwargs: Any) -> httpx.Request:
        return self._client.build_request(method, url, **kwargs)

    async def fetch(
        self,
        request: httpx.Request,
        *,
        signal: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        Send ``request`` once a slot for its host is free.

        Raises:
            QueueFullError: The host queue is at capacity
            RequestCancelledError: ``signal`` fired before or during the call
            RequestTimeoutError: The attempt exceeded its timeout
            PoolResetError: The pool was reset while the request was queued
        """
        if request.method == "GET" and self.config.enable_coalescing:
            return await self._coalesced(request, signal, timeout)
        return await self._acquire_and_send(request, signal, timeout)

    async def send(
        self,
        request: httpx.Request,
        *,
        signal: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Send directly, bypassing admission control and coalescing."""
        return await self._send_with_timeout(request, signal, timeout)

    def get_stats(self) -> PoolStats:
        hosts = {
            host: {"active": state.active, "queued": len(state.queue)}
            for host, state in self._hosts.items()
        }
        return PoolStats(
            total_active=self._total_active,
            total_queued=sum(h["queued"] for h in hosts.values()),
            hosts=hosts,
            coalescing=len(self._inflight),
        )

    def reset(self) -> None:
        """Reject every queued request and clear all pool state."""
        self._generation += 1
        rejected = 0

        for host, state in self._hosts.items():
            while state.queue:
                waiter = state.queue.popleft()
                if not waiter.future.done():
                    waiter.future.set_exception(PoolResetError())
                    rejected += 1
            record_pool_state(host, 0, 0)

        for handle in self._coalesce_timers.values():
            handle.cancel()

        self._hosts.clear()
        self._coalesce_timers.clear()
        self._inflight.clear()
        self._total_active = 0
        logger.info("connection_pool_reset", rejected=rejected)

    async def aclose(self) -> None:
        self.reset()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ConnectionPool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @staticmethod
    def _fingerprint(request: httpx.Request) -> str:
        headers = "&".join(
            f"{name}={value}" for name, value in sorted(request.headers.items())
        )
        return f"{request.method}|{request.url}|{headers}"

    async def _coalesced(
        self,
        request: httpx.Request,
        signal: Optional[CancellationToken],
        timeout: Optional[float],
    ) -> httpx.Response:
        fingerprint = self._fingerprint(request)
        task = self._inflight.get(fingerprint)

        if task is not None:
            logger.debug("request_coalesced", method=request.method, url=str(request.url))
            return await self._join(task, signal)

        task = asyncio.ensure_future(self._acquire_and_send(request, signal, timeout))
        task.add_done_callback(_consume_outcome)
        task.add_done_callback(lambda t: self._drop_failed(fingerprint, t))
        self._inflight[fingerprint] = task
        self._coalesce_timers[fingerprint] = asyncio.get_running_loop().call_later(
            self.config.coalescing_window, self._expire_coalesced, fingerprint, task
        )
        return await asyncio.shield(task)

    async def _join(
        self,
        task: asyncio.Future,
        signal: Optional[CancellationToken],
    ) -> httpx.Response:
        """Wait for a shared call; the joiner's own signal abandons only its wait."""
        if signal is None:
            return await asyncio.shield(task)
        if signal.is_cancelled():
            raise RequestCancelledError(f"Request cancelled: {signal.reason}")

        shared = asyncio.shield(task)
        aborted = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({shared, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            if not shared.done():
                # Cancels the shield wrapper only; the shared call keeps running
                shared.cancel()

        if shared.done() and not shared.cancelled():
            return shared.result()
        raise RequestCancelledError(f"Request cancelled: {signal.reason}")

    def _expire_coalesced(self, fingerprint: str, task: asyncio.Future) -> None:
        if self._inflight.get(fingerprint) is task:
            del self._inflight[fingerprint]
            self._coalesce_timers.pop(fingerprint, None)

    def _drop_failed(self, fingerprint: str, task: asyncio.Future) -> None:
        # Failed outcomes are not handed to later callers; a retry must reach the network
        failed = task.cancelled() or task.exception() is not None or not task.result().is_success
        if failed and self._inflight.get(fingerprint) is task:
            del self._inflight[fingerprint]
            handle = self._coalesce_timers.pop(fingerprint, None)
            if handle is not None:
                handle.cancel()

    async def _acquire_and_send(
        self,
        request: httpx.Request,
        signal: Optional[CancellationToken],
        timeout: Optional[float],
    ) -> httpx.Response:
        host = request.url.netloc.decode("ascii")
        lease = await self._acquire(host, signal)
        try:
            return await self._send_with_timeout(request, signal, timeout)
        finally:
            self._release(host, lease)

    def _can_admit(self, state: HostConnectionState) -> bool:
        return (
            state.active < self.config.max_connections_per_host
            and self._total_active < self.config.max_total_connections
        )

    def _grant(self, host: str, state: HostConnectionState) -> int:
        state.active += 1
        self._total_active += 1
        record_pool_state(host, state.active, len(state.queue))
        return self._generation

    async def _acquire(self, host: str, signal: Optional[CancellationToken]) -> int:
        if signal is not None and signal.is_cancelled():
            raise RequestCancelledError(f"Request cancelled: {signal.reason}")

        state = self._hosts.setdefault(host, HostConnectionState())
        if not state.queue and self._can_admit(state):
            return self._grant(host, state)

        if len(state.queue) >= self.config.max_queue_size:
            logger.warning("connection_queue_full", host=host, queued=len(state.queue))
            raise QueueFullError(host)

        waiter = _Waiter(asyncio.get_running_loop().create_future(), signal)
        state.queue.append(waiter)
        record_pool_state(host, state.active, len(state.queue))
        logger.debug("request_queued", host=host, position=len(state.queue))

        unlisten = None
        if signal is not None:
            unlisten = signal.add_listener(lambda token: self._abandon(host, waiter, token))

        try:
            return await waiter.future
        except asyncio.CancelledError:
            future = waiter.future
            if future.done() and not future.cancelled() and future.exception() is None:
                # Slot was granted just before the task got cancelled
                self._release(host, future.result())
            else:
                self._remove_waiter(host, waiter)
            raise
        finally:
            if unlisten is not None:
                unlisten()

    def _abandon(self, host: str, waiter: _Waiter, token: CancellationToken) -> None:
        if waiter.future.done():
            return
        self._remove_waiter(host, waiter)
        waiter.future.set_exception(
            RequestCancelledError(f"Request cancelled: {token.reason}")
        )

    def _remove_waiter(self, host: str, waiter: _Waiter) -> None:
        state = self._hosts.get(host)
        if state is None:
            return
        try:
            state.queue.remove(waiter)
        except ValueError:
            return
        record_pool_state(host, state.active, len(state.queue))

    def _release(self, host: str, lease: int) -> None:
        if lease != self._generation:
            return

        state = self._hosts.get(host)
        if state is None:
            return
        state.active = max(0, state.active - 1)
        self._total_active = max(0, self._total_active - 1)

        # Releasing host first, then hosts held back by the global cap
        self._drain(host)
        for other in list(self._hosts):
            if self._total_active >= self.config.max_total_connections:
                break
            if other != host:
                self._drain(other)

        record_pool_state(host, state.active, len(state.queue))
        if state.active == 0 and not state.queue:
            del self._hosts[host]

    def _drain(self, host: str) -> None:
        state = self._hosts[host]
        while state.queue and self._can_admit(state):
            waiter = state.queue.popleft()
            if waiter.future.done():
                continue
            if waiter.signal is not None and waiter.signal.is_cancelled():
                waiter.future.set_exception(
                    RequestCancelledError(f"Request cancelled: {waiter.signal.reason}")
                )
                continue
            waiter.future.set_result(self._grant(host, state))

    async def _send_with_timeout(
        self,
        request: httpx.Request,
        signal: Optional[CancellationToken],
        timeout: Optional[float],
    ) -> httpx.Response:
        attempt_timeout = timeout or self.config.request_timeout
        token = CancellationToken.linked(signal)
        token.cancel_after(attempt_timeout, reason="timeout")

        send = asyncio.ensure_future(self._client.send(request))
        send.add_done_callback(_consume_outcome)
        aborted = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({send, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
            token.dispose()
            if not send.done():
                send.cancel()

        if send.done():
            try:
                return send.result()
            except httpx.HTTPError as exc:
                raise map_transport_error(exc) from exc

        if signal is not None and signal.is_cancelled():
            raise RequestCancelledError(f"Request cancelled: {signal.reason}")
        raise RequestTimeoutError(f"Request timed out after {attempt_timeout:.3f}s")
