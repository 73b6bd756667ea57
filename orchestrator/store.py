"""Job record store: durable jobs, their transitions and the history trail."""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, aliased, sessionmaker
import structlog

from orchestrator.models import (
    HistoryEvent,
    Job,
    JobHistory,
    JobPriority,
    JobStatus,
    QueueHealth,
    utcnow,
)
from orchestrator.states import ensure_transition

logger = structlog.get_logger()

TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

SORTABLE_FIELDS = {
    "created_at": Job.created_at,
    "updated_at": Job.updated_at,
    "status": Job.status,
    "progress": Job.progress,
    "priority": Job.priority,
}


def _elapsed_ms(start: Optional[datetime], end: datetime) -> Optional[int]:
    if start is None:
        return None
    return max(0, int((end - start).total_seconds() * 1000))


class JobStore:
    """All reads and writes of Job and JobHistory rows go through here.

    Status changes are conditional updates on the status the caller last saw,
    so two writers racing to finish the same job cannot both succeed.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        job_type: str,
        queue_name: str,
        user_id: str,
        workspace_id: str,
        data: Dict[str, Any],
        priority: JobPriority = JobPriority.NORMAL,
        max_attempts: int = 3,
        backoff_type: str = "exponential",
        backoff_delay_ms: int = 2000,
        available_at: Optional[datetime] = None,
        parent_job_id: Optional[str] = None,
    ) -> Job:
        """Persist a new queued job and its ``created`` history row."""
        now = utcnow()
        job = Job(
            job_type=job_type,
            queue_name=queue_name,
            routing_key=f"{queue_name}.{JobPriority(priority).value}",
            priority=JobPriority(priority).value,
            user_id=user_id,
            workspace_id=workspace_id,
            parent_job_id=parent_job_id,
            status=JobStatus.QUEUED.value,
            progress=0,
            attempts=0,
            max_attempts=max_attempts,
            backoff_type=backoff_type,
            backoff_delay_ms=backoff_delay_ms,
            created_at=now,
            updated_at=now,
            available_at=available_at or now,
            data=data,
        )
        with self.session() as db:
            db.add(job)
            db.flush()
            self._history(db, job, HistoryEvent.CREATED, None, details={"queue": queue_name})
            db.commit()
            db.refresh(job)
        return job

    def get(self, job_id: str, workspace_id: Optional[str] = None) -> Optional[Job]:
        """Fetch a job; with ``workspace_id`` a foreign job reads as missing."""
        with self.session() as db:
            query = db.query(Job).filter(Job.id == job_id)
            if workspace_id is not None:
                query = query.filter(Job.workspace_id == workspace_id)
            return query.first()

    def children(self, parent_job_id: str, workspace_id: Optional[str] = None) -> List[Job]:
        with self.session() as db:
            query = db.query(Job).filter(Job.parent_job_id == parent_job_id)
            if workspace_id is not None:
                query = query.filter(Job.workspace_id == workspace_id)
            return query.order_by(Job.created_at.asc()).all()

    def list_jobs(
        self,
        user_id: str,
        workspace_id: str,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: Optional[str] = None,
        sort_order: str = "desc",
    ) -> Tuple[List[Job], int]:
        """Page through one user's jobs inside one workspace."""
        column = SORTABLE_FIELDS.get(sort_by or "created_at", Job.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        with self.session() as db:
            query = db.query(Job).filter(Job.workspace_id == workspace_id, Job.user_id == user_id)
            if status:
                query = query.filter(Job.status == status)
            if job_type:
                query = query.filter(Job.job_type == job_type)
            total = query.count()
            # Tie-break on id so equal sort keys page deterministically.
            jobs = query.order_by(ordering, Job.id.desc()).offset(offset).limit(limit).all()
            return jobs, total

    def timeline(self, job_id: str, workspace_id: str) -> List[JobHistory]:
        with self.session() as db:
            return (
                db.query(JobHistory)
                .filter(JobHistory.job_id == job_id, JobHistory.workspace_id == workspace_id)
                .order_by(JobHistory.timestamp.asc(), JobHistory.id.asc())
                .all()
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_started(self, job_id: str) -> Optional[Job]:
        """queued -> processing; counts the attempt and the time spent waiting."""
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None:
                return None
            ensure_transition(job.status, JobStatus.PROCESSING)
            now = utcnow()
            changed = self._conditional_update(db, job, {
                "status": JobStatus.PROCESSING.value,
                "attempts": job.attempts + 1,
                "started_at": now,
                "completed_at": None,
                "queue_wait_time_ms": _elapsed_ms(job.available_at or job.created_at, now),
            })
            if not changed:
                return None
            self._history(db, job, HistoryEvent.STARTED, JobStatus.QUEUED,
                          queue_wait_time_ms=job.queue_wait_time_ms)
            db.commit()
            db.refresh(job)
            return job

    def update_progress(self, job_id: str, progress: int, record: bool = False) -> Optional[int]:
        """Store clamped progress; never lowers it while the job is processing.

        With ``record`` a ``progress`` history row is written when the value moves.
        """
        progress = max(0, min(100, int(progress)))
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None or job.status != JobStatus.PROCESSING.value:
                return None
            if progress > job.progress:
                job.progress = progress
                job.updated_at = utcnow()
                if record:
                    self._history(db, job, HistoryEvent.PROGRESS, JobStatus.PROCESSING)
                db.commit()
            return job.progress

    def mark_completed(self, job_id: str, result: Any = None) -> Optional[Job]:
        """processing -> completed. Returns None if someone else already finished it."""
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None or job.status != JobStatus.PROCESSING.value:
                return None
            now = utcnow()
            changed = self._conditional_update(db, job, {
                "status": JobStatus.COMPLETED.value,
                "progress": 100,
                "completed_at": now,
                "processing_time_ms": _elapsed_ms(job.started_at, now),
                "result": result if result is not None else job.result,
                "awaiting": None,
            })
            if not changed:
                return None
            self._history(db, job, HistoryEvent.COMPLETED, JobStatus.PROCESSING,
                          processing_time_ms=job.processing_time_ms)
            db.commit()
            db.refresh(job)
            return job

    def mark_failed(self, job_id: str, reason: str, result: Any = None) -> Optional[Job]:
        """processing/stalled -> failed, recording the reason."""
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None or job.is_terminal:
                return None
            previous = JobStatus(job.status)
            ensure_transition(previous, JobStatus.FAILED)
            now = utcnow()
            changed = self._conditional_update(db, job, {
                "status": JobStatus.FAILED.value,
                "completed_at": now,
                "processing_time_ms": _elapsed_ms(job.started_at, now),
                "failed_reason": reason,
                "result": result if result is not None else job.result,
                "awaiting": None,
            })
            if not changed:
                return None
            self._history(db, job, HistoryEvent.FAILED, previous, error_message=reason,
                          processing_time_ms=job.processing_time_ms)
            db.commit()
            db.refresh(job)
            return job

    def mark_stalled(self, job_id: str) -> Optional[Job]:
        """processing -> stalled, when the owning worker stopped proving it is alive."""
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None or job.status != JobStatus.PROCESSING.value:
                return None
            changed = self._conditional_update(db, job, {"status": JobStatus.STALLED.value})
            if not changed:
                return None
            self._history(db, job, HistoryEvent.STALLED, JobStatus.PROCESSING)
            db.commit()
            db.refresh(job)
            return job

    def requeue(self, job_id: str, available_at: datetime, reason: Optional[str] = None) -> Optional[Job]:
        """failed/stalled -> queued for another attempt.

        With ``reason`` a running job fails and is requeued in one write, so
        no reader ever sees a failed job that still has attempts left.
        """
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None:
                return None
            previous = JobStatus(job.status)
            values: Dict[str, Any] = {
                "status": JobStatus.QUEUED.value,
                "available_at": available_at,
                "started_at": None,
                "completed_at": None,
            }
            if reason is not None:
                ensure_transition(previous, JobStatus.FAILED)
                ensure_transition(JobStatus.FAILED, JobStatus.QUEUED, job.attempts, job.max_attempts)
                values.update(failed_reason=reason, awaiting=None,
                              processing_time_ms=_elapsed_ms(job.started_at, utcnow()))
            else:
                ensure_transition(previous, JobStatus.QUEUED, job.attempts, job.max_attempts)
            changed = self._conditional_update(db, job, values)
            if not changed:
                return None
            if reason is not None:
                self._history(db, job, HistoryEvent.FAILED, previous, error_message=reason,
                              processing_time_ms=job.processing_time_ms, new_status=JobStatus.FAILED)
                previous = JobStatus.FAILED
            self._history(db, job, HistoryEvent.RETRY, previous, error_message=job.failed_reason,
                          details={"availableAt": available_at.isoformat()})
            db.commit()
            db.refresh(job)
            return job

    def release(self, job_id: str, awaiting: str, result: Any = None) -> Optional[Job]:
        """Keep a processing job open after its handler returned.

        The job stays ``processing`` until its children finish or an external
        callback arrives; whoever does that becomes its only writer.
        """
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None or job.status != JobStatus.PROCESSING.value:
                return None
            job.awaiting = awaiting
            if result is not None:
                job.result = result
            self._history(db, job, HistoryEvent.RELEASED, JobStatus.PROCESSING, details={"awaiting": awaiting})
            db.commit()
            db.refresh(job)
            return job

    def set_awaiting(self, job_id: str, awaiting: Optional[str]) -> Optional[Job]:
        """Flag a running job as finishing elsewhere once its handler returns."""
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None or job.status != JobStatus.PROCESSING.value:
                return None
            job.awaiting = awaiting
            db.commit()
            db.refresh(job)
            return job

    def expect_children(self, job_id: str, count: int, details: Optional[Dict[str, Any]] = None) -> Optional[Job]:
        """Record how many child jobs a parent is about to spawn."""
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None:
                return None
            job.expected_children = count
            job.awaiting = "children"
            self._history(db, job, HistoryEvent.BATCH_INITIATED, None, details={"expectedChildren": count, **(details or {})})
            db.commit()
            db.refresh(job)
            return job

    def update_metadata(self, job_id: str, **values: Any) -> None:
        with self.session() as db:
            job = db.get(Job, job_id)
            if job is None:
                return
            job.meta = {**(job.meta or {}), **values}
            db.commit()

    def remove_queued(self, job_id: str, workspace_id: str, queue_name: Optional[str] = None) -> bool:
        """Delete a job that has not been picked up yet.

        A removed child no longer counts towards its parent's expected
        children, so the parent can still settle without it.
        """
        with self.session() as db:
            query = db.query(Job).filter(
                Job.id == job_id,
                Job.workspace_id == workspace_id,
                Job.status == JobStatus.QUEUED.value,
            )
            if queue_name is not None:
                query = query.filter(Job.queue_name == queue_name)
            job = query.first()
            if job is None:
                return False
            self._history(db, job, HistoryEvent.REMOVED, JobStatus.QUEUED)
            parent = db.get(Job, job.parent_job_id) if job.parent_job_id else None
            if parent is not None and not parent.is_terminal and parent.expected_children > 0:
                removed = (parent.meta or {}).get("removedChildren", 0) + 1
                parent.expected_children -= 1
                parent.meta = {**(parent.meta or {}), "removedChildren": removed}
                parent.updated_at = utcnow()
            db.delete(job)
            db.commit()
            return True

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def count_by_status(self, queue_name: str) -> Dict[str, int]:
        with self.session() as db:
            rows = (
                db.query(Job.status, func.count(Job.id))
                .filter(Job.queue_name == queue_name)
                .group_by(Job.status)
                .all()
            )
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def queue_window_stats(self, queue_name: str, since: datetime) -> Dict[str, float]:
        """Completed/failed counts and average timings for one queue since ``since``."""
        with self.session() as db:
            finished = (
                db.query(Job.status, func.count(Job.id))
                .filter(Job.queue_name == queue_name, Job.completed_at >= since)
                .group_by(Job.status)
                .all()
            )
            avg_processing = (
                db.query(func.avg(Job.processing_time_ms))
                .filter(Job.queue_name == queue_name, Job.completed_at >= since,
                        Job.processing_time_ms.isnot(None))
                .scalar()
            )
            avg_wait = (
                db.query(func.avg(Job.queue_wait_time_ms))
                .filter(Job.queue_name == queue_name, Job.started_at >= since,
                        Job.queue_wait_time_ms.isnot(None))
                .scalar()
            )
            created = (
                db.query(func.count(Job.id))
                .filter(Job.queue_name == queue_name, Job.created_at >= since)
                .scalar()
            )
        by_status = dict(finished)
        completed = by_status.get(JobStatus.COMPLETED.value, 0)
        failed = by_status.get(JobStatus.FAILED.value, 0)
        return {
            "completed": completed,
            "failed": failed,
            "finished": completed + failed,
            "created": created or 0,
            "avg_processing_time_ms": float(avg_processing or 0),
            "avg_wait_time_ms": float(avg_wait or 0),
        }

    def performance_stats(self, since: datetime) -> List[Dict[str, Any]]:
        """Per job type outcome counts and timings for jobs created since ``since``."""
        with self.session() as db:
            jobs = db.query(
                Job.job_type, Job.status, Job.processing_time_ms, Job.queue_wait_time_ms
            ).filter(Job.created_at >= since).all()

        grouped: Dict[str, Dict[str, Any]] = {}
        for job_type, status, processing_ms, wait_ms in jobs:
            entry = grouped.setdefault(job_type, {
                "jobType": job_type,
                "totalJobs": 0,
                "completedJobs": 0,
                "failedJobs": 0,
                "processingJobs": 0,
                "queuedJobs": 0,
                "_processing": [],
                "_wait": [],
            })
            entry["totalJobs"] += 1
            key = {
                JobStatus.COMPLETED.value: "completedJobs",
                JobStatus.FAILED.value: "failedJobs",
                JobStatus.PROCESSING.value: "processingJobs",
                JobStatus.QUEUED.value: "queuedJobs",
            }.get(status)
            if key:
                entry[key] += 1
            if processing_ms is not None:
                entry["_processing"].append(processing_ms)
            if wait_ms is not None:
                entry["_wait"].append(wait_ms)

        stats = []
        for entry in grouped.values():
            processing = entry.pop("_processing")
            wait = entry.pop("_wait")
            total = entry["totalJobs"]
            entry["avgProcessingTime"] = sum(processing) / len(processing) if processing else None
            entry["avgWaitTime"] = sum(wait) / len(wait) if wait else None
            entry["maxProcessingTime"] = max(processing) if processing else None
            entry["minProcessingTime"] = min(processing) if processing else None
            entry["successRate"] = entry["completedJobs"] / total * 100 if total else 0
            entry["failureRate"] = entry["failedJobs"] / total * 100 if total else 0
            stats.append(entry)
        return sorted(stats, key=lambda s: s["totalJobs"], reverse=True)

    def count_failures_since(self, since: datetime) -> int:
        with self.session() as db:
            return (
                db.query(func.count(Job.id))
                .filter(Job.status == JobStatus.FAILED.value, Job.completed_at >= since)
                .scalar()
            ) or 0

    # ------------------------------------------------------------------
    # Snapshots and retention
    # ------------------------------------------------------------------

    def save_snapshot(self, snapshot: QueueHealth) -> QueueHealth:
        with self.session() as db:
            db.add(snapshot)
            db.commit()
            db.refresh(snapshot)
            return snapshot

    def latest_snapshots(self, queue_name: str, limit: int = 10) -> List[QueueHealth]:
        with self.session() as db:
            return (
                db.query(QueueHealth)
                .filter(QueueHealth.queue_name == queue_name)
                .order_by(QueueHealth.timestamp.desc(), QueueHealth.id.desc())
                .limit(limit)
                .all()
            )

    def clean_finished(self, queue_name: str, older_than: datetime) -> Dict[str, int]:
        """Delete completed and failed jobs that finished before ``older_than``.

        Children of a parent that is still open are kept until it settles.
        """
        parent = aliased(Job)
        open_parents = select(parent.id).where(parent.status.notin_(TERMINAL_STATUSES))
        removed = {}
        with self.session() as db:
            for status in (JobStatus.COMPLETED, JobStatus.FAILED):
                removed[status.value] = (
                    db.query(Job)
                    .filter(
                        Job.queue_name == queue_name,
                        Job.status == status.value,
                        Job.completed_at < older_than,
                        or_(Job.parent_job_id.is_(None), Job.parent_job_id.notin_(open_parents)),
                    )
                    .delete(synchronize_session=False)
                )
            db.commit()
        return removed

    def purge_history(self, older_than: datetime) -> int:
        with self.session() as db:
            count = db.query(JobHistory).filter(JobHistory.timestamp < older_than).delete(synchronize_session=False)
            db.commit()
            return count

    def purge_snapshots(self, older_than: datetime) -> int:
        with self.session() as db:
            count = db.query(QueueHealth).filter(QueueHealth.timestamp < older_than).delete(synchronize_session=False)
            db.commit()
            return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _conditional_update(self, db: Session, job: Job, values: Dict[str, Any]) -> bool:
        values = {**values, "updated_at": utcnow()}
        changed = (
            db.query(Job)
            .filter(Job.id == job.id, Job.status == job.status)
            .update(values, synchronize_session=False)
        )
        if not changed:
            db.rollback()
            logger.warning("Concurrent job update detected", job_id=job.id, status=job.status)
            return False
        for key, value in values.items():
            setattr(job, key, value)
        return True

    def _history(
        self,
        db: Session,
        job: Job,
        event: HistoryEvent,
        previous: Optional[JobStatus],
        new_status: Optional[JobStatus] = None,
        **fields: Any,
    ) -> None:
        db.add(JobHistory(
            job_id=job.id,
            workspace_id=job.workspace_id,
            event=event.value,
            timestamp=utcnow(),
            previous_status=previous.value if previous else None,
            new_status=new_status.value if new_status else job.status,
            attempt=job.attempts,
            progress=job.progress,
            **fields,
        ))
