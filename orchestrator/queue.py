"""Redis-based broker: priority queues, delayed set, active set and consumer registry."""

import json
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
import structlog

from orchestrator.models import JobPriority

logger = structlog.get_logger()

# Priority rank occupies the high digits of the score, enqueue order the low ones.
SEQUENCE_SPAN = 10 ** 12


def now_ms() -> int:
    return int(time.time() * 1000)


class RedisQueue:
    """Redis-based job queue keyed per (queue, job type).

    Only job ids live in Redis; the job record store holds everything else.
    """

    def __init__(self, client: redis.Redis, prefix: str = "syncq"):
        """Wrap an existing ``redis.asyncio`` client."""
        self.redis_client = client
        self.prefix = prefix

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    def wait_key(self, queue_name: str, job_type: str) -> str:
        return self._key(queue_name, job_type, "wait")

    def delayed_key(self, queue_name: str) -> str:
        return self._key(queue_name, "delayed")

    def active_key(self, queue_name: str) -> str:
        return self._key(queue_name, "active")

    def types_key(self, queue_name: str) -> str:
        return self._key(queue_name, "types")

    def paused_key(self, queue_name: str) -> str:
        return self._key(queue_name, "paused")

    def consumers_key(self, queue_name: str) -> str:
        return self._key(queue_name, "consumers")

    def lock_key(self, job_id: str) -> str:
        return self._key("lock", job_id)

    # ------------------------------------------------------------------
    # Enqueue / dequeue
    # ------------------------------------------------------------------

    async def enqueue_job(self, queue_name: str, job_type: str, job_id: str, priority: JobPriority) -> None:
        """Make a job eligible for dequeue right away."""
        sequence = await self.redis_client.incr(self._key("sequence"))
        score = JobPriority(priority).rank * SEQUENCE_SPAN + sequence
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.sadd(self.types_key(queue_name), job_type)
            pipe.zadd(self.wait_key(queue_name, job_type), {job_id: score})
            await pipe.execute()
        logger.debug("Job enqueued", job_id=job_id, queue=queue_name, priority=JobPriority(priority).value)

    async def schedule_job(
        self,
        queue_name: str,
        job_type: str,
        job_id: str,
        priority: JobPriority,
        available_at_ms: int,
    ) -> None:
        """Park a job in the delayed set until ``available_at_ms``."""
        member = json.dumps({"id": job_id, "type": job_type, "priority": JobPriority(priority).value})
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.sadd(self.types_key(queue_name), job_type)
            pipe.zadd(self.delayed_key(queue_name), {member: available_at_ms})
            await pipe.execute()
        logger.debug("Job delayed", job_id=job_id, queue=queue_name, available_at_ms=available_at_ms)

    async def dequeue_job(
        self,
        queue_name: str,
        job_type: str,
        consumer_id: str,
        lock_ttl_seconds: float,
    ) -> Optional[str]:
        """Pop the best-ranked waiting job id, mark it active and lock it to ``consumer_id``."""
        popped = await self.redis_client.zpopmin(self.wait_key(queue_name, job_type))
        if not popped:
            return None
        job_id, score = popped[0]
        priority = _priority_from_score(score)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(self.lock_key(job_id), consumer_id, px=max(1, int(lock_ttl_seconds * 1000)))
            pipe.hset(
                self.active_key(queue_name),
                job_id,
                json.dumps({"type": job_type, "priority": priority.value}),
            )
            await pipe.execute()
        return job_id

    async def promote_due(self, queue_name: str, until_ms: Optional[int] = None) -> List[str]:
        """Move delayed jobs whose time has come into their wait queues."""
        until_ms = now_ms() if until_ms is None else until_ms
        due = await self.redis_client.zrangebyscore(self.delayed_key(queue_name), 0, until_ms)
        promoted = []
        for member in due:
            # zrem decides the winner when two promoters race on one member.
            if not await self.redis_client.zrem(self.delayed_key(queue_name), member):
                continue
            entry = json.loads(member)
            await self.enqueue_job(queue_name, entry["type"], entry["id"], JobPriority(entry["priority"]))
            promoted.append(entry["id"])
        if promoted:
            logger.info("Promoted delayed jobs", queue=queue_name, count=len(promoted))
        return promoted

    async def remove_job(self, queue_name: str, job_type: str, job_id: str) -> bool:
        """Drop a job id from the wait queue and the delayed set."""
        removed = await self.redis_client.zrem(self.wait_key(queue_name, job_type), job_id)
        delayed = await self.redis_client.zrange(self.delayed_key(queue_name), 0, -1)
        for member in delayed:
            if json.loads(member)["id"] == job_id:
                removed += await self.redis_client.zrem(self.delayed_key(queue_name), member)
        return removed > 0

    # ------------------------------------------------------------------
    # Active jobs and stall locks
    # ------------------------------------------------------------------

    async def hold_lock(self, job_id: str, consumer_id: str, ttl_seconds: float) -> None:
        """Create or extend the lock proving a worker still owns ``job_id``."""
        await self.redis_client.set(self.lock_key(job_id), consumer_id, px=max(1, int(ttl_seconds * 1000)))

    async def finish_job(self, queue_name: str, job_id: str) -> None:
        """Forget an active job once its worker is done with it."""
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.hdel(self.active_key(queue_name), job_id)
            pipe.delete(self.lock_key(job_id))
            await pipe.execute()

    async def find_stalled(self, queue_name: str) -> List[Tuple[str, str, JobPriority]]:
        """Active jobs whose lock expired: ``(job_id, job_type, priority)``."""
        active = await self.redis_client.hgetall(self.active_key(queue_name))
        stalled = []
        for job_id, raw in active.items():
            if await self.redis_client.exists(self.lock_key(job_id)):
                continue
            entry = json.loads(raw)
            stalled.append((job_id, entry["type"], JobPriority(entry["priority"])))
        return stalled

    # ------------------------------------------------------------------
    # Pause flags and consumers
    # ------------------------------------------------------------------

    async def pause(self, queue_name: str) -> None:
        await self.redis_client.set(self.paused_key(queue_name), "1")

    async def resume(self, queue_name: str) -> None:
        await self.redis_client.delete(self.paused_key(queue_name))

    async def is_paused(self, queue_name: str) -> bool:
        return bool(await self.redis_client.exists(self.paused_key(queue_name)))

    async def heartbeat(self, queue_name: str, consumer_id: str) -> None:
        await self.redis_client.hset(self.consumers_key(queue_name), consumer_id, now_ms())

    async def unregister_consumer(self, queue_name: str, consumer_id: str) -> None:
        await self.redis_client.hdel(self.consumers_key(queue_name), consumer_id)

    async def count_consumers(self, queue_name: str, stale_after_seconds: float) -> int:
        """Consumers that sent a heartbeat within ``stale_after_seconds``."""
        cutoff = now_ms() - int(stale_after_seconds * 1000)
        beats = await self.redis_client.hgetall(self.consumers_key(queue_name))
        return sum(1 for value in beats.values() if int(value) >= cutoff)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_counts(self, queue_name: str) -> Dict[str, int]:
        """Waiting, delayed and active counts for every job type in a queue."""
        job_types = await self.redis_client.smembers(self.types_key(queue_name))
        waiting = 0
        for job_type in job_types:
            waiting += await self.redis_client.zcard(self.wait_key(queue_name, job_type))
        return {
            "waiting": waiting,
            "delayed": await self.redis_client.zcard(self.delayed_key(queue_name)),
            "active": await self.redis_client.hlen(self.active_key(queue_name)),
        }

    async def server_info(self) -> Dict[str, Any]:
        """Broker version, uptime, memory and client count."""
        info = await self.redis_client.info()
        return {
            "version": str(info.get("redis_version", "unknown")),
            "uptime": int(info.get("uptime_in_seconds", 0)),
            "memory": int(info.get("used_memory", 0)),
            "connections": int(info.get("connected_clients", 0)),
        }

    async def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            return bool(await self.redis_client.ping())
        except (redis.RedisError, OSError) as e:
            logger.error("Redis health check failed", error=str(e))
            return False

    async def close(self) -> None:
        await self.redis_client.aclose()


def _priority_from_score(score: float) -> JobPriority:
    rank = int(score) // SEQUENCE_SPAN
    for priority in JobPriority:
        if priority.rank == rank:
            return priority
    return JobPriority.NORMAL
