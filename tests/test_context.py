"""
Pipeline Context Tests
======================
"""

import httpx
import pytest

from helpers import ScriptedTransport


class TestPipelineContext:
    """Tests for component wiring."""

    @pytest.mark.asyncio
    async def test_client_targets_service_with_auth(self, clock, sleeper):
        from midaz_core.config import ONBOARDING, TRANSACTION, PipelineConfig
        from midaz_core.context import PipelineContext

        transport = ScriptedTransport(httpx.Response(200, json={"items": []}))
        config = PipelineConfig(
            onboarding_url="http://onboarding.test",
            transaction_url="http://transaction.test",
            auth_token="tok",
        )

        async with PipelineContext.create(
            config, transport=transport, clock=clock, sleep=sleeper
        ) as context:
            await context.client(ONBOARDING).get("/organizations")
            await context.client(TRANSACTION).get("/transactions")

        onboarding, transaction = transport.requests
        assert str(onboarding.url) == "http://onboarding.test/v1/organizations"
        assert str(transaction.url) == "http://transaction.test/v1/transactions"
        assert onboarding.headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_clients_share_components(self, clock):
        from midaz_core.config import ONBOARDING, TRANSACTION
        from midaz_core.context import PipelineContext

        context = PipelineContext.create(clock=clock)
        onboarding = context.client(ONBOARDING)
        transaction = context.client(TRANSACTION)

        assert context.client(ONBOARDING) is onboarding
        assert onboarding.pool is transaction.pool is context.pool
        assert onboarding.breakers is transaction.breakers
        assert onboarding.cache is context.cache
        await context.aclose()

    @pytest.mark.asyncio
    async def test_contexts_are_isolated(self, clock):
        from midaz_core.context import PipelineContext

        first = PipelineContext.create(clock=clock)
        second = PipelineContext.create(clock=clock)
        first.breakers.open("GET:http://localhost:3000/v1/organizations")

        assert second.breakers.get_all_metrics() == {}
        assert first.pool is not second.pool
        await first.aclose()
        await second.aclose()

    @pytest.mark.asyncio
    async def test_cache_disabled(self, clock):
        from midaz_core.cache import CacheConfig
        from midaz_core.config import PipelineConfig
        from midaz_core.context import PipelineContext

        context = PipelineContext.create(
            PipelineConfig(cache=CacheConfig(enabled=False)), clock=clock
        )

        assert context.cache is None
        await context.aclose()

    @pytest.mark.asyncio
    async def test_server_errors_retried_through_context(self, clock, sleeper):
        from midaz_core.config import ONBOARDING, PipelineConfig
        from midaz_core.context import PipelineContext

        transport = ScriptedTransport(httpx.Response(503), httpx.Response(200, json={"id": "1"}))
        context = PipelineContext.create(
            PipelineConfig(), transport=transport, clock=clock, sleep=sleeper
        )

        assert await context.client(ONBOARDING).get("/organizations/1") == {"id": "1"}
        assert len(sleeper.delays) == 1
        await context.aclose()
