"""REST API endpoints for marketplace sync jobs, health and metrics."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST
import structlog

from orchestrator.api.internal import get_application, router as internal_router
from orchestrator.errors import ValidationError
from orchestrator.models import Job, JobStatus, JobType
from orchestrator.schemas import (
    JobHistoryEntry,
    JobListResponse,
    JobProgress,
    JobStatusResponse,
    StartSyncData,
    StartSyncRequest,
    StartSyncResponse,
    SystemHealth,
)

if TYPE_CHECKING:
    from orchestrator.main import Application

logger = structlog.get_logger()


@dataclass
class Scope:
    """Caller identity. Authentication sits in front of this service and forwards these headers."""

    user_id: str
    workspace_id: str


def get_scope(
    x_user_id: Optional[str] = Header(default=None),
    x_workspace_id: Optional[str] = Header(default=None),
) -> Scope:
    if not x_user_id or not x_workspace_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="X-User-ID and X-Workspace-ID headers are required")
    return Scope(user_id=x_user_id, workspace_id=x_workspace_id)


def job_status_response(job: Job, children: Optional[List[Job]] = None) -> JobStatusResponse:
    """Build the status document for a job and, for a parent, its children."""
    return JobStatusResponse(
        job_id=job.id,
        job_type=job.job_type,
        status=job.status,
        progress=JobProgress(current=job.progress, total=100, percentage=job.progress),
        data=job.data or {},
        result=job.result,
        failed_reason=job.failed_reason,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        created_at=job.created_at,
        started_at=job.started_at,
        finished_at=job.completed_at,
        child_jobs=[job_status_response(child) for child in children] if children is not None else None,
    )


sync_router = APIRouter(prefix="/sync", tags=["sync"])
health_router = APIRouter(tags=["health"])


@sync_router.post("/start", response_model=StartSyncResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_sync(
    sync_request: StartSyncRequest,
    scope: Scope = Depends(get_scope),
    application=Depends(get_application),
):
    """Submit a marketplace sync for one store connection."""
    try:
        handle, filters = await application.coordinator.start_sync(scope.user_id, scope.workspace_id, sync_request)
        return StartSyncResponse(
            success=True,
            message="Product sync started",
            data=StartSyncData(
                job_id=handle.job_id,
                status=JobStatus(handle.status),
                applied_filters=filters,
                created_at=handle.created_at,
            ),
        )
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error("Failed to start sync", connection_id=sync_request.connection_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@sync_router.get("/status/{job_id}", response_model=JobStatusResponse, response_model_exclude_none=True)
async def get_sync_status(
    job_id: str,
    scope: Scope = Depends(get_scope),
    application=Depends(get_application),
):
    """Get job status by ID, with child batches for a sync parent."""
    try:
        job = application.jobs.get(job_id, scope.workspace_id)
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

        children = None
        if job.job_type == JobType.MARKETPLACE_SYNC.value:
            if job.status == JobStatus.PROCESSING.value and job.awaiting == "children":
                job = await application.coordinator.refresh_parent(job_id) or job
            children = application.jobs.children(job_id, scope.workspace_id)
        return job_status_response(job, children)

    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to get job status", job_id=job_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@sync_router.get("/jobs", response_model=JobListResponse, response_model_exclude_none=True)
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    job_type: Optional[JobType] = Query(default=None, alias="jobType"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    sort_by: str = Query(default="created_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    scope: Scope = Depends(get_scope),
    application=Depends(get_application),
):
    """List the caller's jobs, newest first unless asked otherwise."""
    try:
        jobs, total = application.jobs.list_jobs(
            scope.user_id,
            scope.workspace_id,
            status=status_filter.value if status_filter else None,
            job_type=job_type.value if job_type else None,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return JobListResponse(
            jobs=[job_status_response(job) for job in jobs],
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(jobs) < total,
        )
    except Exception as e:
        logger.error("Failed to list jobs", error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@sync_router.get("/jobs/{job_id}/history", response_model=List[JobHistoryEntry])
async def get_job_history(
    job_id: str,
    scope: Scope = Depends(get_scope),
    application=Depends(get_application),
):
    """Ordered lifecycle events of one job."""
    if application.jobs.get(job_id, scope.workspace_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return [
        JobHistoryEntry(
            event=entry.event,
            timestamp=entry.timestamp,
            previous_status=entry.previous_status,
            new_status=entry.new_status,
            attempt=entry.attempt,
            progress=entry.progress,
            error_message=entry.error_message,
        )
        for entry in application.jobs.timeline(job_id, scope.workspace_id)
    ]


@sync_router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_job(
    job_id: str,
    scope: Scope = Depends(get_scope),
    application=Depends(get_application),
):
    """Remove a job that has not started yet."""
    job = application.jobs.get(job_id, scope.workspace_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if not await application.manager.remove_job(job.queue_name, job_id, scope.workspace_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Job is {job.status}, not queued")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@health_router.get("/health", response_model=SystemHealth, response_model_exclude_none=True)
async def health_check(response: Response, application=Depends(get_application)):
    """Health check endpoint."""
    health = await application.monitor.get_system_health()
    if health.overall == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return health


@health_router.get("/health/queues/{queue_name}")
async def queue_health(
    queue_name: str,
    limit: int = Query(default=10, ge=1, le=100),
    application=Depends(get_application),
):
    """Current counts and the latest stored snapshots of one queue."""
    if queue_name not in application.manager.queues:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Queue not found")
    return {
        "queueName": queue_name,
        "stats": await application.manager.get_queue_stats(queue_name),
        "snapshots": [s.to_dict() for s in application.jobs.latest_snapshots(queue_name, limit)],
    }


@health_router.get("/metrics")
async def get_metrics(application=Depends(get_application)):
    """Prometheus metrics endpoint."""
    return Response(application.metrics.get_metrics(), media_type=CONTENT_TYPE_LATEST)


def create_app(application: "Application") -> FastAPI:
    """FastAPI app bound to one ``Application``; its lifespan drives init and shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await application.init()
        logger.info("REST API started", port=application.settings.api_port)
        try:
            yield
        finally:
            await application.shutdown()

    app = FastAPI(
        title="Marketplace Sync Orchestrator",
        description="Job orchestration and health monitoring for marketplace catalog sync",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.application = application
    app.include_router(sync_router)
    app.include_router(health_router)
    app.include_router(internal_router)
    return app
