"""Shared fixtures: in-memory SQLite, fakeredis and a fake marketplace adapter."""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

import fakeredis
import fakeredis.aioredis
import pytest

from orchestrator.config import Settings
from orchestrator.database import build_engine, build_session_factory, create_tables
from orchestrator.errors import CredentialError, TransientAdapterError
from orchestrator.manager import QueueManager
from orchestrator.models import JobType
from orchestrator.monitoring.metrics import MetricsCollector
from orchestrator.queue import now_ms
from orchestrator.sync.adapters import CatalogEntry, CatalogRecord, IdentifierPage
from orchestrator.workers.worker_pool import Worker

WORKSPACE = "ws-1"
USER = "user-1"


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        poll_interval_seconds=0.01,
        promote_interval_seconds=0.02,
        stall_interval_seconds=0.5,
        consumer_heartbeat_seconds=0.05,
        shutdown_timeout_seconds=1.0,
        broker_init_timeout_seconds=1.0,
        default_backoff_delay_ms=10,
        health_check_interval_seconds=3600,
    )
    values.update(overrides)
    return Settings(**values)


def sync_payload(**overrides) -> Dict:
    payload = {
        "userId": USER,
        "workspaceId": WORKSPACE,
        "connectionId": "conn-1",
        "marketplace": "shopify",
    }
    payload.update(overrides)
    return payload


class FakeAdapter:
    """In-memory marketplace: pages through ``entries`` two at a time."""

    def __init__(
        self,
        entries: Iterable[CatalogEntry] = (),
        marketplace: str = "shopify",
        supports_query_filters: bool = True,
        failing: Iterable[str] = (),
        credential_error: bool = False,
        page_size: int = 2,
    ):
        self.entries: List[CatalogEntry] = list(entries)
        self.marketplace = marketplace
        self.supports_query_filters = supports_query_filters
        self.failing = set(failing)
        self.credential_error = credential_error
        self.page_size = page_size
        self.listing_calls: List[Dict] = []
        self.fetched: List[str] = []

    def fetch_identifiers(self, credentials, filters, page, updated_after) -> IdentifierPage:
        self.listing_calls.append({"filters": filters, "page": page, "updated_after": updated_after})
        offset = int(page or 0)
        items = self.entries[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        return IdentifierPage(items=items, has_more=next_offset < len(self.entries), next_page=next_offset,
                              total_count=len(self.entries))

    def fetch_complete(self, credentials, external_id) -> CatalogRecord:
        if self.credential_error:
            raise CredentialError("shopify authentication failed (401)")
        if external_id in self.failing:
            raise TransientAdapterError(f"shopify API returned 503 for {external_id}")
        self.fetched.append(external_id)
        entry = next((e for e in self.entries if e.external_id == external_id), None)
        return CatalogRecord(
            external_id=external_id,
            title=f"Product {external_id}",
            status="active" if entry is None or entry.active else "archived",
            source_updated_at=entry.updated_at if entry else None,
            data={"id": external_id},
        )


def catalog_entries(count: int, start: Optional[datetime] = None, **fields) -> List[CatalogEntry]:
    start = start or datetime(2024, 1, 1)
    return [
        CatalogEntry(external_id=f"p{i}", updated_at=start + timedelta(hours=i), **fields)
        for i in range(1, count + 1)
    ]


async def drain(manager: QueueManager, rounds: int = 100) -> int:
    """Run every queued and delayed job in-process until nothing is left. Returns jobs run."""
    workers = {
        key: Worker(f"test-{key[0]}-{key[1]}", manager, key[0], key[1], manager.executor)
        for key in manager.pools
    }
    ran = 0
    for _ in range(rounds):
        for queue_name in manager.queues:
            # Retry backoff is irrelevant here; release delayed jobs right away.
            await manager.broker.promote_due(queue_name, until_ms=now_ms() + 10 ** 9)
        progressed = False
        for (queue_name, job_type), worker in workers.items():
            job_id = await manager.broker.dequeue_job(queue_name, job_type, worker.worker_id, 5)
            if job_id:
                await worker._process_job(job_id)
                ran += 1
                progressed = True
        if not progressed:
            break
    return ran


async def run_next(manager: QueueManager, queue_name: str, job_type) -> Optional[str]:
    """Dequeue and run a single job of ``job_type`` in-process."""
    job_type = JobType(job_type).value
    worker = Worker(f"test-{queue_name}-{job_type}", manager, queue_name, job_type, manager.executor)
    job_id = await manager.broker.dequeue_job(queue_name, job_type, worker.worker_id, 5)
    if job_id:
        await worker._process_job(job_id)
    return job_id


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def redis_client():
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
async def manager(settings, session_factory, redis_client, metrics):
    manager = QueueManager(settings, session_factory, redis_client, metrics)
    await manager.initialize()
    yield manager
    await manager.shutdown(timeout=0.5)
