"""Pydantic schemas for job payloads and API request/response models."""

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from orchestrator.errors import ValidationError
from orchestrator.models import JobPriority, JobStatus, JobType


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys, also accepts snake_case on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Sync filters
# ---------------------------------------------------------------------------

class ProductSyncFilters(CamelModel):
    """Which marketplace products a sync should bring in.

    ``None`` for an id list means "all"; an empty list means "none".
    """
    include_active: bool = True
    include_inactive: bool = False
    category_ids: Optional[List[str]] = None
    brand_ids: Optional[List[str]] = None


# ---------------------------------------------------------------------------
# Job payloads, one variant per job type
# ---------------------------------------------------------------------------

class BaseJobPayload(CamelModel):
    """Fields every job payload carries."""

    JOB_TYPE: ClassVar[JobType]

    user_id: str = Field(min_length=1)
    workspace_id: str = Field(min_length=1)
    created_at: Optional[datetime] = None
    priority: Optional[JobPriority] = None
    metadata: Optional[Dict[str, Any]] = None


class MarketplaceSyncPayload(BaseJobPayload):
    JOB_TYPE: ClassVar[JobType] = JobType.MARKETPLACE_SYNC

    connection_id: str = Field(min_length=1)
    marketplace: str = Field(min_length=1)
    filters: ProductSyncFilters = Field(default_factory=ProductSyncFilters)
    force_full_sync: bool = False
    batch_size: Optional[int] = Field(default=None, ge=1, le=200)
    estimated_products: Optional[int] = Field(default=None, ge=0)


class ProductBatchPayload(BaseJobPayload):
    JOB_TYPE: ClassVar[JobType] = JobType.PRODUCT_BATCH

    connection_id: str
    marketplace: str
    product_ids: List[str] = Field(min_length=1)
    parent_job_id: str
    batch_number: int = Field(ge=1)
    total_batches: int = Field(ge=1)


class ProductIndividualPayload(BaseJobPayload):
    JOB_TYPE: ClassVar[JobType] = JobType.PRODUCT_INDIVIDUAL

    connection_id: str
    marketplace: str
    product_id: str
    parent_job_id: Optional[str] = None


class AiScanPayload(BaseJobPayload):
    JOB_TYPE: ClassVar[JobType] = JobType.AI_SCAN

    connection_id: Optional[str] = None
    marketplace: Optional[str] = None
    product_ids: Optional[List[str]] = None
    filters: Optional[Dict[str, Any]] = None


class AiBatchPayload(BaseJobPayload):
    JOB_TYPE: ClassVar[JobType] = JobType.AI_BATCH

    product_ids: List[str] = Field(min_length=1)
    marketplace: Optional[str] = None
    parent_job_id: str
    batch_number: int = Field(ge=1)
    total_batches: int = Field(ge=1)


class MarketplaceUpdatePayload(BaseJobPayload):
    JOB_TYPE: ClassVar[JobType] = JobType.MARKETPLACE_UPDATE

    connection_id: str
    marketplace: str
    product_ids: List[str] = Field(min_length=1)
    update_type: Literal["inventory", "price", "description", "images"]
    description: Optional[str] = None
    parent_job_id: Optional[str] = None


PAYLOAD_MODELS: Dict[JobType, Type[BaseJobPayload]] = {
    model.JOB_TYPE: model
    for model in (
        MarketplaceSyncPayload,
        ProductBatchPayload,
        ProductIndividualPayload,
        AiScanPayload,
        AiBatchPayload,
        MarketplaceUpdatePayload,
    )
}


def parse_payload(job_type: JobType, data: Dict[str, Any]) -> BaseJobPayload:
    """Validate ``data`` as the payload variant tagged by ``job_type``."""
    try:
        model = PAYLOAD_MODELS[JobType(job_type)]
    except (KeyError, ValueError):
        raise ValidationError(f"Unknown job type: {job_type}")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {model.JOB_TYPE.value} payload: {e.errors()[0]['msg']}") from e


def dump_payload(payload: BaseJobPayload) -> Dict[str, Any]:
    """Serialize a payload the way it is stored in ``Job.data``."""
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Queue options
# ---------------------------------------------------------------------------

class BackoffOptions(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay: int = Field(default=2000, ge=0, description="Base delay in milliseconds")


class AddJobOptions(BaseModel):
    """Per-job overrides for priority, delay and retry policy."""
    priority: JobPriority = JobPriority.NORMAL
    delay: int = Field(default=0, ge=0, description="Milliseconds before the job is eligible")
    attempts: Optional[int] = Field(default=None, ge=1)
    backoff: Optional[BackoffOptions] = None


# ---------------------------------------------------------------------------
# API models
# ---------------------------------------------------------------------------

class StartSyncRequest(CamelModel):
    """Request schema for starting a marketplace sync."""
    connection_id: str = Field(..., min_length=1)
    marketplace: str = Field(..., min_length=1)
    filters: Optional[ProductSyncFilters] = None
    force_full_sync: bool = False
    batch_size: Optional[int] = Field(default=None, ge=10, le=200)
    priority: JobPriority = JobPriority.NORMAL


class StartSyncData(CamelModel):
    job_id: str
    status: JobStatus
    applied_filters: ProductSyncFilters
    created_at: datetime


class StartSyncResponse(CamelModel):
    """Response schema for sync submission."""
    success: bool
    message: str
    data: StartSyncData


class JobProgress(CamelModel):
    current: int
    total: int = 100
    percentage: int


class JobStatusResponse(CamelModel):
    """Response schema for job status."""
    job_id: str
    job_type: Optional[str] = None
    status: str
    progress: JobProgress
    data: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    failed_reason: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    child_jobs: Optional[List["JobStatusResponse"]] = None


class JobListResponse(CamelModel):
    """Response schema for job listing."""
    jobs: List[JobStatusResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class JobHistoryEntry(CamelModel):
    event: str
    timestamp: datetime
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    attempt: Optional[int] = None
    progress: Optional[int] = None
    error_message: Optional[str] = None


class JobCallbackRequest(CamelModel):
    """Body posted by an external worker when delegated work finishes."""
    job_id: Optional[str] = None
    success: bool = True
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class HealthAlert(CamelModel):
    """One anomaly detected during a health check."""
    type: Literal["info", "warning", "error"]
    service: Literal["queue", "jobs", "system"]
    message: str
    timestamp: datetime
    threshold: Optional[float] = None
    current_value: Optional[float] = None
    queue: Optional[str] = None
    job_type: Optional[str] = None
    action: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class BrokerHealth(CamelModel):
    status: Literal["healthy", "unhealthy"]
    version: str = "unknown"
    uptime: int = 0
    memory: int = 0
    disk_free: int = 0
    connections: int = 0


class DatastoreHealth(CamelModel):
    status: Literal["healthy", "unhealthy"]
    connections: int = 0
    response_time: Optional[float] = None


class QueueServiceHealth(CamelModel):
    messages: int
    consumers: int
    message_rate: float
    consume_rate: float
    status: Literal["running", "stopped"]


class ServicesHealth(CamelModel):
    broker: BrokerHealth
    datastore: DatastoreHealth
    queues: Dict[str, QueueServiceHealth] = Field(default_factory=dict)


class PerformanceHealth(CamelModel):
    stats: List[Dict[str, Any]] = Field(default_factory=list)
    alerts: List[HealthAlert] = Field(default_factory=list)


class SystemHealth(CamelModel):
    """Response schema for the health endpoint."""
    overall: Literal["healthy", "degraded", "unhealthy"]
    timestamp: datetime
    services: ServicesHealth
    performance: PerformanceHealth
