"""Job execution: typed handler dispatch keyed by queue and job type."""

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

from orchestrator.models import Job, JobType
from orchestrator.schemas import BaseJobPayload, parse_payload

logger = structlog.get_logger()


@dataclass
class JobContext:
    """What a handler gets: the record, its validated payload and the worker hooks.

    A handler that hands its work to an external worker awaits
    ``expect_callback()``; the job then stays processing after the handler
    returns until ``POST /internal/jobs/callback`` resolves it.
    """

    job: Job
    payload: BaseJobPayload
    report_progress: Callable[[int], Awaitable[Optional[int]]]
    expect_callback: Callable[[], Awaitable[Optional[Job]]]

    @property
    def job_id(self) -> str:
        return self.job.id


Handler = Callable[[JobContext], Awaitable[Any]]


@dataclass
class ExecutionResult:
    """Outcome of one handler invocation."""

    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    execution_time_ms: int = 0

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


class JobExecutor:
    """Executes jobs by dispatching their parsed payload to the registered handler."""

    def __init__(self):
        """Initialize the job executor."""
        self.job_handlers: Dict[Tuple[str, JobType], Handler] = {}

    def register(self, queue_name: str, job_type: JobType, handler: Handler) -> None:
        self.job_handlers[(queue_name, JobType(job_type))] = handler

    async def execute_job(
        self,
        job: Job,
        report_progress: Callable[[int], Awaitable[Optional[int]]],
        expect_callback: Callable[[], Awaitable[Optional[Job]]],
    ) -> ExecutionResult:
        """Execute a job based on its type."""
        start_time = time.time()
        try:
            handler = self.job_handlers[(job.queue_name, JobType(job.job_type))]
            payload = parse_payload(JobType(job.job_type), job.data)
            ctx = JobContext(job=job, payload=payload, report_progress=report_progress,
                             expect_callback=expect_callback)
            result = await handler(ctx)
            execution_time = (time.time() - start_time) * 1000

            logger.info("Job executed successfully",
                        job_id=job.id,
                        job_type=job.job_type,
                        execution_time_ms=int(execution_time))
            return ExecutionResult(success=True, result=result, execution_time_ms=int(execution_time))

        except Exception as e:
            execution_time = (time.time() - start_time) * 1000
            logger.error("Job execution failed",
                         job_id=job.id,
                         job_type=job.job_type,
                         error=str(e),
                         error_type=type(e).__name__,
                         execution_time_ms=int(execution_time))
            return ExecutionResult(success=False, error=e, execution_time_ms=int(execution_time))
