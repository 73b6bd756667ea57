"""Worker pool implementation for bounded-concurrency job execution."""

import asyncio
import time
import uuid
from typing import TYPE_CHECKING, List, Optional

import structlog

from orchestrator.errors import InvalidTransitionError
from orchestrator.models import Job
from orchestrator.workers.job_executor import JobExecutor

if TYPE_CHECKING:
    from orchestrator.manager import QueueManager

logger = structlog.get_logger()


def compute_backoff_ms(backoff_type: str, base_delay_ms: int, attempts: int, max_backoff_ms: int) -> int:
    """Delay before the next attempt of a job that has made ``attempts`` attempts."""
    if backoff_type == "fixed":
        delay = base_delay_ms
    else:
        delay = base_delay_ms * 2 ** max(0, attempts - 1)
    return int(min(delay, max_backoff_ms))


class Worker:
    """Individual worker that processes jobs of one type from one queue."""

    def __init__(self, worker_id: str, manager: "QueueManager", queue_name: str,
                 job_type: str, executor: JobExecutor):
        """Initialize worker."""
        self.worker_id = worker_id
        self.manager = manager
        self.queue = manager.broker
        self.settings = manager.settings
        self.queue_name = queue_name
        self.job_type = job_type
        self.executor = executor
        self.running = False
        self.current_job: Optional[Job] = None
        self._last_heartbeat = 0.0

    async def start(self):
        """Start the worker."""
        self.running = True
        logger.info("Worker started", worker_id=self.worker_id, queue=self.queue_name, job_type=self.job_type)

        while self.running:
            try:
                await self._heartbeat()
                if await self.queue.is_paused(self.queue_name):
                    await asyncio.sleep(self.settings.poll_interval_seconds)
                    continue

                job_id = await self.queue.dequeue_job(
                    self.queue_name, self.job_type, self.worker_id, self.settings.stall_interval_seconds
                )
                if job_id:
                    await self._process_job(job_id)
                else:
                    # No jobs available, continue polling
                    await asyncio.sleep(self.settings.poll_interval_seconds)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Worker error", worker_id=self.worker_id, queue=self.queue_name, error=str(e))
                await self.manager.emit("error", e, self.queue_name)
                await asyncio.sleep(1)  # Brief pause before retrying

        await self.queue.unregister_consumer(self.queue_name, self.worker_id)
        logger.info("Worker stopped", worker_id=self.worker_id)

    async def stop(self):
        """Stop dequeuing; the current job, if any, runs to completion."""
        self.running = False

    async def _heartbeat(self, force: bool = False):
        now = time.monotonic()
        if force or now - self._last_heartbeat >= self.settings.consumer_heartbeat_seconds:
            await self.queue.heartbeat(self.queue_name, self.worker_id)
            self._last_heartbeat = now

    async def _process_job(self, job_id: str):
        """Process a single job."""
        try:
            job = self.manager.store.mark_started(job_id)
        except InvalidTransitionError as e:
            logger.warning("Dequeued job is not runnable", job_id=job_id, error=str(e))
            job = None
        if job is None:
            await self.queue.finish_job(self.queue_name, job_id)
            return

        logger.info("Processing job", worker_id=self.worker_id, job_id=job_id, attempt=job.attempts)
        self.current_job = job
        renew = asyncio.create_task(self._keep_lock(job_id))

        async def report_progress(progress: int) -> Optional[int]:
            return self.manager.store.update_progress(job_id, progress)

        async def expect_callback() -> Optional[Job]:
            return await self.manager.expect_callback(job_id)

        try:
            result = await self.executor.execute_job(job, report_progress, expect_callback)
            await self.manager.finalize(job, result)
        except asyncio.CancelledError:
            # The active entry stays behind; once the lock expires the stall checker takes over.
            logger.warning("Job interrupted", worker_id=self.worker_id, job_id=job_id)
            raise
        finally:
            renew.cancel()
            self.current_job = None
        await self.queue.finish_job(self.queue_name, job_id)

    async def _keep_lock(self, job_id: str):
        """Refresh the stall lock and heartbeat while a handler runs."""
        interval = max(self.settings.stall_interval_seconds / 2, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.queue.hold_lock(job_id, self.worker_id, self.settings.stall_interval_seconds)
                await self._heartbeat(force=True)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Failed to renew job lock", job_id=job_id, error=str(e))


class WorkerPool:
    """Pool of workers sharing one (queue, job type) registration."""

    def __init__(self, manager: "QueueManager", queue_name: str, job_type: str,
                 concurrency: int, executor: JobExecutor):
        """Initialize worker pool."""
        self.manager = manager
        self.queue_name = queue_name
        self.job_type = job_type
        self.pool_size = max(1, concurrency)
        self.executor = executor
        self.workers: List[Worker] = []
        self.tasks: List[asyncio.Task] = []
        self.running = False

    @property
    def active_count(self) -> int:
        return sum(1 for worker in self.workers if worker.current_job is not None)

    def start(self):
        """Start the worker pool."""
        if self.running:
            return
        self.running = True
        logger.info("Starting worker pool", queue=self.queue_name, job_type=self.job_type, pool_size=self.pool_size)

        for _ in range(self.pool_size):
            worker_id = f"{self.queue_name}:{self.job_type}:worker-{uuid.uuid4().hex[:8]}"
            worker = Worker(worker_id, self.manager, self.queue_name, self.job_type, self.executor)
            self.workers.append(worker)
            self.tasks.append(asyncio.create_task(worker.start()))

    async def stop(self, timeout: float):
        """Stop the worker pool, cancelling handlers still running after ``timeout``."""
        if not self.running:
            return
        self.running = False
        logger.info("Stopping worker pool", queue=self.queue_name, job_type=self.job_type)

        for worker in self.workers:
            await worker.stop()

        if self.tasks:
            _, pending = await asyncio.wait(self.tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled workers after shutdown timeout",
                               queue=self.queue_name, count=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Worker pool stopped", queue=self.queue_name, job_type=self.job_type)
