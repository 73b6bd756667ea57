"""Database models for job tracking, queue health and sync bookkeeping."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Naive UTC timestamp, the only kind stored in this schema."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobStatus(str, Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class JobType(str, Enum):
    """Kinds of work the orchestrator knows how to route."""
    MARKETPLACE_SYNC = "marketplace-sync"
    PRODUCT_BATCH = "product-batch"
    PRODUCT_INDIVIDUAL = "product-individual"
    AI_SCAN = "ai-scan"
    AI_BATCH = "ai-batch"
    MARKETPLACE_UPDATE = "marketplace-update"


class JobPriority(str, Enum):
    """Priority classes, dequeued critical first."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.CRITICAL: 0,
    JobPriority.HIGH: 1,
    JobPriority.NORMAL: 2,
    JobPriority.LOW: 3,
}


class HistoryEvent(str, Enum):
    """Events recorded in the job history trail."""
    CREATED = "created"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    STALLED = "stalled"
    REMOVED = "removed"
    BATCH_INITIATED = "batch_initiated"
    RELEASED = "released"


class Job(Base):
    """Job model for tracking job execution."""

    __tablename__ = "jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    job_type = Column(String, nullable=False)
    queue_name = Column(String, nullable=False, index=True)
    routing_key = Column(String, nullable=False)
    priority = Column(String, nullable=False, default=JobPriority.NORMAL.value)

    # Ownership
    user_id = Column(String, nullable=False, index=True)
    workspace_id = Column(String, nullable=False, index=True)
    parent_job_id = Column(String, nullable=True, index=True)

    # State
    status = Column(String, nullable=False, default=JobStatus.QUEUED.value, index=True)
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_type = Column(String, nullable=False, default="exponential")
    backoff_delay_ms = Column(Integer, nullable=False, default=2000)
    awaiting = Column(String, nullable=True)
    expected_children = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    available_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    queue_wait_time_ms = Column(Integer, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    # Payload and results
    data = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)
    failed_reason = Column(Text, nullable=True)
    meta = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("ix_jobs_workspace_status", "workspace_id", "status"),
        Index("ix_jobs_workspace_created", "workspace_id", "created_at"),
        Index("ix_jobs_type_status", "job_type", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        # A retried attempt goes straight back to queued in one write, so a resting failed job is final.
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary."""
        return {
            "jobId": self.id,
            "jobType": self.job_type,
            "queueName": self.queue_name,
            "routingKey": self.routing_key,
            "priority": self.priority,
            "userId": self.user_id,
            "workspaceId": self.workspace_id,
            "parentJobId": self.parent_job_id,
            "status": self.status,
            "progress": self.progress,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.completed_at),
            "queueWaitTime": self.queue_wait_time_ms,
            "processingTime": self.processing_time_ms,
            "data": self.data,
            "result": self.result,
            "failedReason": self.failed_reason,
            "metadata": self.meta,
        }


class JobHistory(Base):
    """Append-only trail of job status transitions."""

    __tablename__ = "job_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False, index=True)
    workspace_id = Column(String, nullable=False, index=True)
    event = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    previous_status = Column(String, nullable=True)
    new_status = Column(String, nullable=True)
    attempt = Column(Integer, nullable=True)
    progress = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    queue_wait_time_ms = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "event": self.event,
            "timestamp": _iso(self.timestamp),
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "attempt": self.attempt,
            "progress": self.progress,
            "errorMessage": self.error_message,
            "processingTime": self.processing_time_ms,
            "queueWaitTime": self.queue_wait_time_ms,
            "details": self.details,
        }


class QueueHealth(Base):
    """Point-in-time observation of one named queue."""

    __tablename__ = "queue_health"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    waiting = Column(Integer, nullable=False, default=0)
    processing = Column(Integer, nullable=False, default=0)
    completed = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    delayed = Column(Integer, nullable=False, default=0)

    average_processing_time_ms = Column(Float, nullable=False, default=0)
    average_wait_time_ms = Column(Float, nullable=False, default=0)
    throughput = Column(Float, nullable=False, default=0)
    consumers = Column(Integer, nullable=True)
    message_rate = Column(Float, nullable=True)

    is_healthy = Column(Boolean, nullable=False, default=True)
    issues = Column(JSON, nullable=False, default=list)

    @classmethod
    def from_observation(cls, queue_name: str, issues: List[str], **fields: Any) -> "QueueHealth":
        """Build a snapshot whose health flag is derived from its issue list."""
        return cls(
            queue_name=queue_name,
            timestamp=fields.pop("timestamp", None) or utcnow(),
            issues=list(issues),
            is_healthy=not issues,
            **fields,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queueName": self.queue_name,
            "timestamp": _iso(self.timestamp),
            "stats": {
                "waiting": self.waiting,
                "processing": self.processing,
                "completed": self.completed,
                "failed": self.failed,
                "delayed": self.delayed,
            },
            "averageProcessingTime": self.average_processing_time_ms,
            "averageWaitTime": self.average_wait_time_ms,
            "throughput": self.throughput,
            "consumers": self.consumers,
            "messageRate": self.message_rate,
            "isHealthy": self.is_healthy,
            "issues": self.issues or [],
        }


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class StoreConnection(Base):
    """A workspace's credentials for one marketplace store."""

    __tablename__ = "store_connections"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False)
    marketplace = Column(String, nullable=False)
    credentials = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime, nullable=True)
    sync_status = Column(String, nullable=False, default=SyncStatus.IDLE.value)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CatalogItem(Base):
    """Local copy of one synced marketplace record."""

    __tablename__ = "catalog_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False)
    connection_id = Column(String, nullable=False, index=True)
    marketplace = Column(String, nullable=False)
    external_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    status = Column(String, nullable=True)
    data = Column(JSON, nullable=False, default=dict)
    source_updated_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "marketplace", "external_id", name="uq_catalog_item_identity"),
    )
