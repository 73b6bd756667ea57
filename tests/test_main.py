"""Tests for application wiring and startup."""

import fakeredis
import fakeredis.aioredis
import redis.asyncio as redis

from orchestrator.main import Application, build_adapters, serve

from conftest import make_settings


def build(engine, **kwargs):
    return Application(
        make_settings(),
        redis_client=fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True),
        engine=engine,
        **kwargs,
    )


class TestAdapters:
    def test_every_marketplace_has_an_adapter(self):
        adapters = build_adapters(make_settings(adapter_page_size=20))
        assert set(adapters) == {"shopify", "vtex", "woocommerce"}
        assert adapters["shopify"].page_size == 20
        assert adapters["shopify"].supports_query_filters
        assert not adapters["vtex"].supports_query_filters


class TestApplication:
    async def test_init_is_idempotent_and_starts_background_work(self, engine):
        application = build(engine)
        await application.init()
        await application.init()
        assert application.manager.started
        assert len(application.manager.pools) == 3
        assert application.monitor._task is not None
        await application.shutdown()
        assert application.manager.closed

    async def test_worker_only_process(self, engine):
        application = build(engine, run_monitor=False)
        await application.init()
        assert application.monitor._task is None
        await application.shutdown()

    async def test_unreachable_broker_fails_startup(self, engine):
        application = Application(
            make_settings(broker_init_timeout_seconds=0.5),
            redis_client=redis.Redis(host="127.0.0.1", port=1, socket_connect_timeout=0.2),
            engine=engine,
        )
        assert await serve(application) == 1
