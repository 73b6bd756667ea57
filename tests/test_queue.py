"""Tests for the Redis broker layer."""

import pytest

from orchestrator.models import JobPriority
from orchestrator.queue import RedisQueue, now_ms

QUEUE = "product-processing"
TYPE = "product-batch"


@pytest.fixture
def broker(redis_client):
    return RedisQueue(redis_client, "test")


class TestOrdering:
    async def test_priority_then_fifo(self, broker):
        await broker.enqueue_job(QUEUE, TYPE, "low", JobPriority.LOW)
        await broker.enqueue_job(QUEUE, TYPE, "normal-1", JobPriority.NORMAL)
        await broker.enqueue_job(QUEUE, TYPE, "critical", JobPriority.CRITICAL)
        await broker.enqueue_job(QUEUE, TYPE, "high", JobPriority.HIGH)
        await broker.enqueue_job(QUEUE, TYPE, "normal-2", JobPriority.NORMAL)

        order = []
        while True:
            job_id = await broker.dequeue_job(QUEUE, TYPE, "w1", 5)
            if job_id is None:
                break
            order.append(job_id)
        assert order == ["critical", "high", "normal-1", "normal-2", "low"]

    async def test_job_types_do_not_mix(self, broker):
        await broker.enqueue_job(QUEUE, "product-individual", "single", JobPriority.NORMAL)
        assert await broker.dequeue_job(QUEUE, TYPE, "w1", 5) is None
        assert await broker.dequeue_job(QUEUE, "product-individual", "w1", 5) == "single"


class TestDelayed:
    async def test_promoted_only_when_due(self, broker):
        due_at = now_ms() + 60_000
        await broker.schedule_job(QUEUE, TYPE, "later", JobPriority.HIGH, due_at)
        assert await broker.promote_due(QUEUE) == []
        assert (await broker.get_counts(QUEUE))["delayed"] == 1

        assert await broker.promote_due(QUEUE, until_ms=due_at) == ["later"]
        counts = await broker.get_counts(QUEUE)
        assert counts == {"waiting": 1, "delayed": 0, "active": 0}
        assert await broker.dequeue_job(QUEUE, TYPE, "w1", 5) == "later"

    async def test_remove_from_wait_and_delayed(self, broker):
        await broker.enqueue_job(QUEUE, TYPE, "now", JobPriority.NORMAL)
        await broker.schedule_job(QUEUE, TYPE, "later", JobPriority.NORMAL, now_ms() + 60_000)
        assert await broker.remove_job(QUEUE, TYPE, "now")
        assert await broker.remove_job(QUEUE, TYPE, "later")
        assert not await broker.remove_job(QUEUE, TYPE, "missing")
        assert await broker.get_counts(QUEUE) == {"waiting": 0, "delayed": 0, "active": 0}


class TestActiveJobs:
    async def test_dequeue_locks_job(self, broker):
        await broker.enqueue_job(QUEUE, TYPE, "j1", JobPriority.HIGH)
        assert await broker.dequeue_job(QUEUE, TYPE, "w1", 5) == "j1"
        assert (await broker.get_counts(QUEUE))["active"] == 1
        assert await broker.find_stalled(QUEUE) == []

    async def test_expired_lock_reports_stalled(self, broker, redis_client):
        await broker.enqueue_job(QUEUE, TYPE, "j1", JobPriority.HIGH)
        await broker.dequeue_job(QUEUE, TYPE, "w1", 5)
        await redis_client.delete(broker.lock_key("j1"))
        assert await broker.find_stalled(QUEUE) == [("j1", TYPE, JobPriority.HIGH)]

    async def test_finish_forgets_job(self, broker):
        await broker.enqueue_job(QUEUE, TYPE, "j1", JobPriority.NORMAL)
        await broker.dequeue_job(QUEUE, TYPE, "w1", 5)
        await broker.finish_job(QUEUE, "j1")
        assert (await broker.get_counts(QUEUE))["active"] == 0
        assert await broker.find_stalled(QUEUE) == []


class TestQueueState:
    async def test_pause_and_resume(self, broker):
        assert not await broker.is_paused(QUEUE)
        await broker.pause(QUEUE)
        assert await broker.is_paused(QUEUE)
        await broker.resume(QUEUE)
        assert not await broker.is_paused(QUEUE)

    async def test_stale_consumers_are_not_counted(self, broker, redis_client):
        await broker.heartbeat(QUEUE, "fresh")
        await redis_client.hset(broker.consumers_key(QUEUE), "stale", now_ms() - 120_000)
        assert await broker.count_consumers(QUEUE, stale_after_seconds=60) == 1
        await broker.unregister_consumer(QUEUE, "fresh")
        assert await broker.count_consumers(QUEUE, stale_after_seconds=60) == 0

    async def test_health_check(self, broker):
        assert await broker.health_check()
