"""Queue manager: the public API for adding, processing and inspecting jobs."""

import asyncio
import inspect
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import redis.asyncio as redis
from sqlalchemy.orm import sessionmaker
import structlog

from orchestrator.config import Settings
from orchestrator.database import probe
from orchestrator.errors import InfrastructureError, ValidationError, is_retryable
from orchestrator.models import Job, JobPriority, JobStatus, JobType, utcnow
from orchestrator.monitoring.metrics import MetricsCollector
from orchestrator.queue import RedisQueue, now_ms
from orchestrator.schemas import AddJobOptions, BaseJobPayload, dump_payload, parse_payload
from orchestrator.store import JobStore
from orchestrator.workers.job_executor import ExecutionResult, Handler, JobExecutor
from orchestrator.workers.worker_pool import WorkerPool, compute_backoff_ms

logger = structlog.get_logger()

EVENTS = ("ready", "error", "failed", "completed", "stalled", "retrying", "released", "removed")

Listener = Callable[..., Any]


@dataclass
class JobHandle:
    """What ``add_job`` hands back."""

    job_id: str
    queue_name: str
    job_type: str
    status: str
    created_at: datetime


class QueueManager:
    """Owns the named queues, their worker pools and the job lifecycle events."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        redis_client: redis.Redis,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.store = JobStore(session_factory)
        self.broker = RedisQueue(redis_client, settings.redis_key_prefix)
        self.metrics = metrics
        self.queues: Set[str] = set()
        self.pools: Dict[Tuple[str, str], WorkerPool] = {}
        self.executor = JobExecutor()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._maintenance: List[asyncio.Task] = []
        self.initialized = False
        self.started = False
        self.closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Check the broker and datastore, then open the named queues."""
        if self.initialized:
            return
        try:
            await asyncio.wait_for(self.broker.redis_client.ping(),
                                   timeout=self.settings.broker_init_timeout_seconds)
        except (asyncio.TimeoutError, redis.RedisError, OSError) as e:
            logger.error("Queue broker unreachable", error=str(e))
            raise InfrastructureError(f"Queue broker unreachable: {e}") from e

        if not probe(self.session_factory)["ok"]:
            raise InfrastructureError("Job record store unreachable")

        for queue_name in self.settings.queue_names:
            self.queues.add(queue_name)
            logger.info("Queue ready", queue=queue_name)
            await self.emit("ready", queue_name)

        self.initialized = True
        logger.info("Queue manager initialized", queues=sorted(self.queues))

    async def start_workers(self) -> None:
        """Start every registered pool plus the promoter and stall checker loops."""
        if self.started:
            return
        self.started = True
        for pool in self.pools.values():
            pool.start()
        self._maintenance = [
            asyncio.create_task(self._promote_loop()),
            asyncio.create_task(self._stall_loop()),
        ]
        logger.info("Workers started", registrations=len(self.pools))

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop dequeuing, drain in-flight handlers up to ``timeout`` and close Redis."""
        if self.closed:
            return
        self.closed = True
        timeout = self.settings.shutdown_timeout_seconds if timeout is None else timeout
        logger.info("Shutting down queue manager", timeout=timeout)

        for task in self._maintenance:
            task.cancel()
        await asyncio.gather(*self._maintenance, return_exceptions=True)

        await asyncio.gather(*(pool.stop(timeout) for pool in self.pools.values()))
        await self.broker.close()
        logger.info("Queue manager stopped")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Listener) -> None:
        """Register a lifecycle listener; it may be a plain function or a coroutine."""
        if event not in EVENTS:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(callback)

    async def emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                outcome = callback(*args)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("Queue event listener failed", event=event, error=str(e))

    # ------------------------------------------------------------------
    # Producing and consuming
    # ------------------------------------------------------------------

    async def add_job(
        self,
        queue_name: str,
        job_type: Union[JobType, str],
        payload: Union[BaseJobPayload, Dict[str, Any]],
        options: Optional[AddJobOptions] = None,
        *,
        parent_job_id: Optional[str] = None,
    ) -> JobHandle:
        """Validate, persist and enqueue a job.

        The record and its ``created`` history row are committed before the id
        reaches Redis, so the job is visible to status queries from the start.
        """
        self._require_queue(queue_name)
        data = dump_payload(payload) if isinstance(payload, BaseJobPayload) else dict(payload)
        parsed = parse_payload(job_type, data)
        job_type = parsed.JOB_TYPE

        options = options or AddJobOptions()
        if "priority" in options.model_fields_set or parsed.priority is None:
            priority = options.priority
        else:
            priority = parsed.priority
        backoff = options.backoff
        now = utcnow()

        data = dump_payload(parsed)
        data["createdAt"] = now.isoformat()
        data["priority"] = priority.value

        job = self.store.create(
            job_type=job_type.value,
            queue_name=queue_name,
            user_id=parsed.user_id,
            workspace_id=parsed.workspace_id,
            data=data,
            priority=priority,
            max_attempts=options.attempts or self.settings.default_attempts,
            backoff_type=backoff.type if backoff else self.settings.default_backoff_type,
            backoff_delay_ms=backoff.delay if backoff else self.settings.default_backoff_delay_ms,
            available_at=now + timedelta(milliseconds=options.delay),
            parent_job_id=parent_job_id or getattr(parsed, "parent_job_id", None),
        )

        if options.delay:
            await self.broker.schedule_job(queue_name, job.job_type, job.id, priority, now_ms() + options.delay)
        else:
            await self.broker.enqueue_job(queue_name, job.job_type, job.id, priority)

        if self.metrics:
            self.metrics.record_job_submitted(queue_name, job.job_type)
        logger.info("Job added", job_id=job.id, queue=queue_name, job_type=job.job_type,
                    priority=priority.value, delay_ms=options.delay)
        return JobHandle(job_id=job.id, queue_name=queue_name, job_type=job.job_type, status=job.status,
                         created_at=job.created_at)

    def process(self, queue_name: str, job_type: Union[JobType, str], concurrency: int, handler: Handler) -> None:
        """Register the handler for one (queue, job type) with a concurrency bound."""
        self._require_queue(queue_name)
        job_type = JobType(job_type)
        key = (queue_name, job_type.value)
        if key in self.pools:
            raise ValueError(f"Handler already registered for {queue_name}/{job_type.value}")
        self.executor.register(queue_name, job_type, handler)
        pool = WorkerPool(self, queue_name, job_type.value, concurrency, self.executor)
        self.pools[key] = pool
        logger.info("Handler registered", queue=queue_name, job_type=job_type.value, concurrency=concurrency)
        if self.started and not self.closed:
            pool.start()

    async def expect_callback(self, job_id: str) -> Optional[Job]:
        """Mark a running job as finished by an external callback instead of its handler."""
        return self.store.set_awaiting(job_id, "callback")

    async def finalize(self, job: Job, execution: ExecutionResult) -> None:
        """Record the outcome of a handler run: complete, release, retry or fail."""
        if not execution.success:
            await self.fail_job(job, execution.error)
            return

        current = self.store.get(job.id)
        if current is None:
            return
        if current.awaiting:
            released = self.store.release(job.id, current.awaiting, execution.result)
            if released is not None:
                logger.info("Job released", job_id=job.id, awaiting=released.awaiting)
                await self.emit("released", released)
            return

        completed = self.store.mark_completed(job.id, execution.result)
        if completed is not None:
            await self.job_completed(completed)

    async def job_completed(self, job: Job) -> None:
        """Metrics, log line and ``completed`` event for a job that just completed."""
        if self.metrics:
            self.metrics.record_job_completed(job.job_type, JobStatus.COMPLETED.value,
                                              (job.processing_time_ms or 0) / 1000)
        logger.info("Job completed", job_id=job.id, job_type=job.job_type,
                    processing_time_ms=job.processing_time_ms)
        await self.emit("completed", job)

    async def fail_job(self, job: Job, error: Union[BaseException, str, None]) -> Optional[Job]:
        """Fail an attempt; retry it with backoff while attempts remain and the error allows."""
        reason = str(error) if error is not None else "Unknown error"
        retryable = is_retryable(error) if isinstance(error, BaseException) else True

        current = self.store.get(job.id)
        if current is None or current.is_terminal:
            return None

        if retryable and current.attempts < current.max_attempts:
            delay_ms = compute_backoff_ms(current.backoff_type, current.backoff_delay_ms,
                                          current.attempts, self.settings.max_backoff_ms)
            return await self._retry(current, delay_ms, reason)

        failed = self.store.mark_failed(job.id, reason)
        if failed is None:
            return None

        if self.metrics:
            self.metrics.record_job_completed(failed.job_type, JobStatus.FAILED.value,
                                              (failed.processing_time_ms or 0) / 1000)
        logger.warning("Job failed", job_id=failed.id, job_type=failed.job_type,
                       attempts=failed.attempts, max_attempts=failed.max_attempts,
                       retryable=retryable, error=reason)
        await self.emit("failed", failed, error)
        return failed

    async def _retry(self, job: Job, delay_ms: int, reason: Optional[str] = None) -> Optional[Job]:
        requeued = self.store.requeue(job.id, utcnow() + timedelta(milliseconds=delay_ms), reason)
        if requeued is None:
            return None
        await self.broker.schedule_job(requeued.queue_name, requeued.job_type, requeued.id,
                                       JobPriority(requeued.priority), now_ms() + delay_ms)
        if self.metrics:
            self.metrics.record_job_retry(requeued.job_type)
        logger.info("Scheduling job retry", job_id=requeued.id, attempts=requeued.attempts,
                    max_attempts=requeued.max_attempts, delay_ms=delay_ms)
        await self.emit("retrying", requeued, delay_ms)
        return requeued

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_job_status(self, queue_name: Optional[str], job_id: str,
                             workspace_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Status document for a job, or None when it is unknown in that scope."""
        job = self.store.get(job_id, workspace_id)
        if job is None or (queue_name and job.queue_name != queue_name):
            return None
        document = job.to_dict()
        return {
            key: document[key]
            for key in ("jobId", "jobType", "status", "progress", "data", "result", "failedReason",
                        "createdAt", "startedAt", "finishedAt", "attempts", "maxAttempts")
        }

    async def get_queue_stats(self, queue_name: str) -> Dict[str, int]:
        """Point-in-time job counts for one queue."""
        self._require_queue(queue_name)
        counts = await self.broker.get_counts(queue_name)
        by_status = self.store.count_by_status(queue_name)
        paused = await self.broker.is_paused(queue_name)
        return {
            "waiting": 0 if paused else counts["waiting"],
            "active": counts["active"],
            "completed": by_status[JobStatus.COMPLETED.value],
            "failed": by_status[JobStatus.FAILED.value],
            "delayed": counts["delayed"],
            "paused": counts["waiting"] if paused else 0,
        }

    async def is_running(self, queue_name: str) -> bool:
        if not self.initialized or self.closed or queue_name not in self.queues:
            return False
        return not await self.broker.is_paused(queue_name)

    async def count_consumers(self, queue_name: str) -> int:
        return await self.broker.count_consumers(queue_name, self.settings.consumer_heartbeat_seconds * 3)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def pause_queue(self, queue_name: str) -> None:
        self._require_queue(queue_name)
        await self.broker.pause(queue_name)
        logger.info("Queue paused", queue=queue_name)

    async def resume_queue(self, queue_name: str) -> None:
        self._require_queue(queue_name)
        await self.broker.resume(queue_name)
        logger.info("Queue resumed", queue=queue_name)

    async def clean_queue(self, queue_name: str, grace_ms: int = 86_400_000) -> Dict[str, int]:
        """Delete completed and failed jobs that finished more than ``grace_ms`` ago."""
        self._require_queue(queue_name)
        removed = self.store.clean_finished(queue_name, utcnow() - timedelta(milliseconds=grace_ms))
        logger.info("Queue cleaned", queue=queue_name, **removed)
        return removed

    async def remove_job(self, queue_name: str, job_id: str, workspace_id: str) -> bool:
        """Remove a job that no worker has picked up yet."""
        job = self.store.get(job_id, workspace_id)
        if job is None or job.queue_name != queue_name:
            return False
        if not self.store.remove_queued(job_id, workspace_id, queue_name):
            return False
        await self.broker.remove_job(queue_name, job.job_type, job_id)
        logger.info("Job removed", job_id=job_id, queue=queue_name)
        await self.emit("removed", job)
        return True

    # ------------------------------------------------------------------
    # Maintenance loops
    # ------------------------------------------------------------------

    async def promote_delayed(self) -> int:
        promoted = 0
        for queue_name in sorted(self.queues):
            promoted += len(await self.broker.promote_due(queue_name))
        return promoted

    async def check_stalled(self) -> int:
        """Recover active jobs whose worker stopped renewing the stall lock."""
        recovered = 0
        for queue_name in sorted(self.queues):
            for job_id, job_type, priority in await self.broker.find_stalled(queue_name):
                stalled = self.store.mark_stalled(job_id)
                await self.broker.finish_job(queue_name, job_id)
                if stalled is None:
                    await self._restore_unstarted(queue_name, job_id, job_type, priority)
                    continue
                recovered += 1
                logger.warning("Job stalled", job_id=job_id, queue=queue_name, attempts=stalled.attempts)
                await self.emit("stalled", stalled)
                if stalled.attempts < stalled.max_attempts:
                    await self._retry(stalled, 0)
                else:
                    await self.fail_job(stalled, "Job stalled more than allowable limit")
        return recovered

    async def _restore_unstarted(self, queue_name: str, job_id: str, job_type: str, priority: JobPriority) -> None:
        """Put back a job whose worker dequeued it but never got to start it."""
        job = self.store.get(job_id)
        if job is None or job.status != JobStatus.QUEUED.value:
            return
        await self.broker.remove_job(queue_name, job_type, job_id)
        available_ms = int((job.available_at or job.created_at).replace(tzinfo=timezone.utc).timestamp() * 1000)
        if available_ms > now_ms():
            await self.broker.schedule_job(queue_name, job_type, job_id, priority, available_ms)
        else:
            await self.broker.enqueue_job(queue_name, job_type, job_id, priority)
        logger.warning("Restored job lost before it started", job_id=job_id, queue=queue_name)

    async def _promote_loop(self):
        while True:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error promoting delayed jobs", error=str(e))
                await self.emit("error", e, None)
            await asyncio.sleep(self.settings.promote_interval_seconds)

    async def _stall_loop(self):
        while True:
            await asyncio.sleep(self.settings.stall_interval_seconds)
            try:
                await self.check_stalled()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error checking stalled jobs", error=str(e))
                await self.emit("error", e, None)

    def _require_queue(self, queue_name: str) -> None:
        if queue_name not in self.queues:
            raise ValidationError(f"Unknown queue: {queue_name}")
