"""
Connection Pool Tests
=====================
"""

import asyncio

import httpx
import pytest

from helpers import GatedTransport, ScriptedTransport, settle


def _pool(transport, **overrides):
    from midaz_core.http import ConnectionPool, ConnectionPoolConfig

    return ConnectionPool(ConnectionPoolConfig(**overrides), transport=transport)


class TestAdmission:
    """Tests for per-host and global caps."""

    @pytest.mark.asyncio
    async def test_third_request_waits_for_a_slot(self):
        """With two slots per host, the third request runs only after one completes."""
        transport = GatedTransport()
        pool = _pool(transport, max_connections_per_host=2, enable_coalescing=False)

        tasks = [
            asyncio.ensure_future(pool.fetch(pool.build_request("GET", f"http://ledger.test/{i}")))
            for i in range(3)
        ]
        await settle()

        assert transport.paths() == ["/0", "/1"]
        stats = pool.get_stats()
        assert stats.total_active == 2
        assert stats.total_queued == 1

        transport.open(0)
        await settle()

        assert transport.paths() == ["/0", "/1", "/2"]
        assert (await tasks[0]).json() == {"path": "/0"}

        transport.open(1)
        transport.open(2)
        responses = await asyncio.gather(*tasks)
        assert [r.status_code for r in responses] == [200, 200, 200]
        assert pool.get_stats().total_active == 0
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_queue_is_fifo(self):
        transport = GatedTransport()
        pool = _pool(transport, max_connections_per_host=1, enable_coalescing=False)

        tasks = [
            asyncio.ensure_future(pool.fetch(pool.build_request("POST", f"http://ledger.test/{i}")))
            for i in range(4)
        ]
        for index in range(4):
            await settle()
            transport.open(index)

        await asyncio.gather(*tasks)
        assert transport.paths() == ["/0", "/1", "/2", "/3"]
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_queue_full(self):
        from midaz_core.errors import QueueFullError

        transport = GatedTransport()
        pool = _pool(transport, max_connections_per_host=1, max_queue_size=1)

        first = asyncio.ensure_future(pool.fetch(pool.build_request("POST", "http://ledger.test/a")))
        second = asyncio.ensure_future(pool.fetch(pool.build_request("POST", "http://ledger.test/b")))
        await settle()

        with pytest.raises(QueueFullError) as exc_info:
            await pool.fetch(pool.build_request("POST", "http://ledger.test/c"))
        assert exc_info.value.host == "ledger.test"

        transport.open(0)
        await settle()
        transport.open(1)
        await asyncio.gather(first, second)
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_global_cap_spans_hosts(self):
        """A slot freed on one host is handed to a waiter on another."""
        transport = GatedTransport()
        pool = _pool(
            transport,
            max_connections_per_host=5,
            max_total_connections=1,
            enable_coalescing=False,
        )

        first = asyncio.ensure_future(pool.fetch(pool.build_request("GET", "http://a.test/x")))
        second = asyncio.ensure_future(pool.fetch(pool.build_request("GET", "http://b.test/y")))
        await settle()

        assert [r.url.host for r, _ in transport.started] == ["a.test"]
        assert pool.get_stats().hosts["b.test"] == {"active": 0, "queued": 1}

        transport.open(0)
        await settle()

        assert [r.url.host for r, _ in transport.started] == ["a.test", "b.test"]
        transport.open(1)
        await asyncio.gather(first, second)
        await pool.aclose()


class TestCancellationAndReset:
    """Tests for abandoning queued work."""

    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self):
        from midaz_core.cancellation import CancellationToken
        from midaz_core.errors import RequestCancelledError

        transport = GatedTransport()
        pool = _pool(transport, max_connections_per_host=1)
        token = CancellationToken()

        first = asyncio.ensure_future(pool.fetch(pool.build_request("POST", "http://ledger.test/a")))
        queued = asyncio.ensure_future(
            pool.fetch(pool.build_request("POST", "http://ledger.test/b"), signal=token)
        )
        await settle()
        assert pool.get_stats().total_queued == 1

        token.cancel("caller gave up")

        with pytest.raises(RequestCancelledError):
            await queued
        assert pool.get_stats().total_queued == 0

        transport.open(0)
        await first
        assert transport.paths() == ["/a"]
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_already_cancelled_signal(self):
        from midaz_core.cancellation import CancellationToken
        from midaz_core.errors import RequestCancelledError

        pool = _pool(ScriptedTransport(httpx.Response(200)))
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RequestCancelledError):
            await pool.fetch(pool.build_request("GET", "http://ledger.test/a"), signal=token)
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_reset_rejects_queued_requests(self):
        from midaz_core.errors import PoolResetError

        transport = GatedTransport()
        pool = _pool(transport, max_connections_per_host=1)

        active = asyncio.ensure_future(pool.fetch(pool.build_request("POST", "http://ledger.test/a")))
        queued = asyncio.ensure_future(pool.fetch(pool.build_request("POST", "http://ledger.test/b")))
        await settle()

        pool.reset()

        with pytest.raises(PoolResetError):
            await queued
        assert pool.get_stats().total_active == 0

        # The request in flight during the reset completes without corrupting counters
        transport.open(0)
        assert (await active).status_code == 200
        assert pool.get_stats().total_active == 0

        follow_up = asyncio.ensure_future(pool.fetch(pool.build_request("POST", "http://ledger.test/c")))
        await settle()
        assert transport.paths() == ["/a", "/c"]
        transport.open(1)
        await follow_up
        await pool.aclose()


class TestCoalescing:
    """Tests for GET request coalescing."""

    @pytest.mark.asyncio
    async def test_identical_gets_share_one_call(self):
        transport = GatedTransport()
        pool = _pool(transport)

        tasks = [
            asyncio.ensure_future(pool.fetch(pool.build_request("GET", "http://ledger.test/accounts")))
            for _ in range(3)
        ]
        await settle()
        assert len(transport.started) == 1

        transport.open(0)
        responses = await asyncio.gather(*tasks)

        assert all(r.json() == {"path": "/accounts"} for r in responses)
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_joined_caller_can_cancel_its_wait(self):
        """A caller sharing a GET abandons it on its own signal; the shared call continues."""
        from midaz_core.cancellation import CancellationToken
        from midaz_core.errors import RequestCancelledError

        transport = GatedTransport()
        pool = _pool(transport)
        token = CancellationToken()

        owner = asyncio.ensure_future(pool.fetch(pool.build_request("GET", "http://ledger.test/accounts")))
        await settle()
        joiner = asyncio.ensure_future(
            pool.fetch(pool.build_request("GET", "http://ledger.test/accounts"), signal=token)
        )
        await settle()

        token.cancel("caller gave up")
        await settle()

        assert joiner.done()
        with pytest.raises(RequestCancelledError):
            await joiner
        assert not owner.done()

        transport.open(0)
        assert (await owner).status_code == 200
        assert len(transport.started) == 1
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_different_headers_are_not_coalesced(self):
        transport = GatedTransport()
        pool = _pool(transport)

        first = asyncio.ensure_future(pool.fetch(
            pool.build_request("GET", "http://ledger.test/accounts", headers={"X-Org": "1"})
        ))
        second = asyncio.ensure_future(pool.fetch(
            pool.build_request("GET", "http://ledger.test/accounts", headers={"X-Org": "2"})
        ))
        await settle()

        assert len(transport.started) == 2
        transport.open(0)
        transport.open(1)
        await asyncio.gather(first, second)
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_window_is_bound_to_issue_time(self):
        """After the window, a duplicate GET goes out even if the first is still running."""
        transport = GatedTransport()
        pool = _pool(transport, coalescing_window=0.01)

        first = asyncio.ensure_future(pool.fetch(pool.build_request("GET", "http://ledger.test/slow")))
        await settle()
        await asyncio.sleep(0.03)

        second = asyncio.ensure_future(pool.fetch(pool.build_request("GET", "http://ledger.test/slow")))
        await settle()

        assert len(transport.started) == 2
        transport.open(0)
        transport.open(1)
        await asyncio.gather(first, second)
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_post_is_never_coalesced(self):
        transport = GatedTransport()
        pool = _pool(transport)

        tasks = [
            asyncio.ensure_future(pool.fetch(pool.build_request("POST", "http://ledger.test/tx")))
            for _ in range(2)
        ]
        await settle()

        assert len(transport.started) == 2
        transport.open(0)
        transport.open(1)
        await asyncio.gather(*tasks)
        await pool.aclose()


class TestTransportOutcomes:
    """Tests for timeouts and transport error mapping."""

    @pytest.mark.asyncio
    async def test_attempt_timeout(self):
        from midaz_core.errors import RequestTimeoutError

        transport = GatedTransport()
        pool = _pool(transport)

        with pytest.raises(RequestTimeoutError):
            await pool.fetch(pool.build_request("GET", "http://ledger.test/slow"), timeout=0.01)

        assert pool.get_stats().total_active == 0
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_caller_cancellation_in_flight(self):
        from midaz_core.cancellation import CancellationToken
        from midaz_core.errors import RequestCancelledError

        transport = GatedTransport()
        pool = _pool(transport)
        token = CancellationToken()

        task = asyncio.ensure_future(
            pool.fetch(pool.build_request("GET", "http://ledger.test/slow"), signal=token)
        )
        await settle()
        token.cancel("shutdown")

        with pytest.raises(RequestCancelledError):
            await task
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_connect_error_maps_to_network_error(self):
        from midaz_core.errors import NetworkError

        pool = _pool(ScriptedTransport(httpx.ConnectError("connection refused")))

        with pytest.raises(NetworkError) as exc_info:
            await pool.send(pool.build_request("GET", "http://ledger.test/a"))

        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_read_timeout_maps_to_timeout_error(self):
        from midaz_core.errors import RequestTimeoutError

        pool = _pool(ScriptedTransport(httpx.ReadTimeout("read timed out")))

        with pytest.raises(RequestTimeoutError):
            await pool.fetch(pool.build_request("POST", "http://ledger.test/a"))
        await pool.aclose()
