"""Main application entry point."""

import asyncio
import logging
import sys
from typing import Mapping, Optional

import redis.asyncio as redis
from sqlalchemy.engine import Engine
import structlog
import uvicorn

from orchestrator.adapters.shopify import ShopifyAdapter
from orchestrator.adapters.vtex import VtexAdapter
from orchestrator.adapters.woocommerce import WooCommerceAdapter
from orchestrator.api.rest import create_app
from orchestrator.config import Settings, get_settings
from orchestrator.database import build_engine, build_session_factory, create_tables
from orchestrator.errors import InfrastructureError
from orchestrator.manager import QueueManager
from orchestrator.monitoring.health import HealthMonitor
from orchestrator.monitoring.metrics import MetricsCollector
from orchestrator.sync.adapters import MarketplaceAdapter
from orchestrator.sync.catalog import CatalogStore, ConnectionStore
from orchestrator.sync.coordinator import SyncCoordinator

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    """JSON structured logging through the standard library handlers."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_adapters(settings: Settings) -> Mapping[str, MarketplaceAdapter]:
    options = {"timeout": settings.adapter_timeout_seconds, "page_size": settings.adapter_page_size}
    return {
        adapter.marketplace: adapter
        for adapter in (ShopifyAdapter(**options), VtexAdapter(**options), WooCommerceAdapter(**options))
    }


class Application:
    """Builds every component once and owns their startup and shutdown."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        redis_client: Optional[redis.Redis] = None,
        engine: Optional[Engine] = None,
        adapters: Optional[Mapping[str, MarketplaceAdapter]] = None,
        run_workers: bool = True,
        run_monitor: bool = True,
    ):
        self.settings = settings or get_settings()
        self.engine = engine or build_engine(self.settings.database_url)
        self.session_factory = build_session_factory(self.engine)
        self.redis = redis_client or redis.Redis(
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            db=self.settings.redis_db,
            password=self.settings.redis_password,
            decode_responses=True,
        )
        self.metrics = MetricsCollector()
        self.manager = QueueManager(self.settings, self.session_factory, self.redis, self.metrics)
        self.jobs = self.manager.store
        self.catalog = CatalogStore(self.session_factory)
        self.connections = ConnectionStore(self.session_factory)
        self.coordinator = SyncCoordinator(
            self.manager,
            self.jobs,
            self.catalog,
            self.connections,
            adapters if adapters is not None else build_adapters(self.settings),
            self.settings,
        )
        self.monitor = HealthMonitor(self.manager, self.jobs, self.session_factory, self.settings, self.metrics)
        self.run_workers = run_workers
        self.run_monitor = run_monitor
        self._ready = False

    async def init(self) -> None:
        """Create tables, open the queues, register handlers and start background work."""
        if self._ready:
            return
        create_tables(self.engine)
        await self.manager.initialize()
        self.coordinator.register()
        if self.run_workers:
            await self.manager.start_workers()
        if self.run_monitor:
            self.monitor.start()
        self._ready = True
        logger.info("Application initialized successfully", queues=sorted(self.manager.queues))

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.manager.shutdown()


async def serve(application: Application) -> int:
    try:
        await application.init()
    except InfrastructureError as e:
        logger.error("Startup failed", error=str(e))
        await application.manager.shutdown(timeout=0)
        return 1

    settings = application.settings
    config = uvicorn.Config(create_app(application), host=settings.api_host, port=settings.api_port,
                            log_config=None)
    try:
        await uvicorn.Server(config).serve()
    finally:
        await application.shutdown()
    return 0


def main():
    """Main function."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting Marketplace Sync Orchestrator", version="1.0.0")
    application = Application(settings, run_workers=settings.run_workers, run_monitor=settings.run_monitor)
    sys.exit(asyncio.run(serve(application)))


if __name__ == "__main__":
    main()
