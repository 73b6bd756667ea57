"""Internal endpoints called by other services, not by end users."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
import structlog

from orchestrator.models import JobStatus
from orchestrator.schemas import JobCallbackRequest

logger = structlog.get_logger()

router = APIRouter(prefix="/internal", tags=["internal"])


def get_application(request: Request):
    """The Application this FastAPI app was created for."""
    return request.app.state.application


@router.post("/jobs/callback")
async def job_callback(callback: JobCallbackRequest, application=Depends(get_application)):
    """An external worker reports the outcome of a job handed off to it."""
    try:
        job_id = str(uuid.UUID(callback.job_id or ""))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="jobId must be a valid UUID")

    job = application.jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.status != JobStatus.PROCESSING.value or job.awaiting != "callback":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT,
                            detail=f"Job is {job.status} and not awaiting a callback")

    manager = application.manager
    if callback.success:
        completed = application.jobs.mark_completed(job_id, callback.result)
        if completed is not None:
            await manager.job_completed(completed)
    else:
        await manager.fail_job(job, callback.error or "External worker reported failure")

    logger.info("Job callback processed", job_id=job_id, success=callback.success)
    return {"success": True, "data": await manager.get_job_status(None, job_id)}
