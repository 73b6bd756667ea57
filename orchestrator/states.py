"""Job lifecycle state machine."""

from typing import Dict, FrozenSet

from orchestrator.errors import InvalidTransitionError
from orchestrator.models import JobStatus

TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STALLED}),
    JobStatus.STALLED: frozenset({JobStatus.QUEUED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus, attempts: int = 0, max_attempts: int = 0) -> bool:
    """Whether ``current -> target`` is allowed for a job with the given attempt counts."""
    current, target = JobStatus(current), JobStatus(target)
    if target not in TRANSITIONS[current]:
        return False
    # The retry loop is the only way out of failed, and only while attempts remain.
    if current == JobStatus.FAILED:
        return attempts < max_attempts
    return True


def ensure_transition(current: JobStatus, target: JobStatus, attempts: int = 0, max_attempts: int = 0) -> None:
    """Raise InvalidTransitionError unless the transition is allowed."""
    if not can_transition(current, target, attempts, max_attempts):
        raise InvalidTransitionError(JobStatus(current).value, JobStatus(target).value)


def is_absorbing(status: JobStatus, attempts: int, max_attempts: int) -> bool:
    """Completed jobs and failed jobs without attempts left never move again."""
    status = JobStatus(status)
    if status == JobStatus.COMPLETED:
        return True
    return status == JobStatus.FAILED and attempts >= max_attempts
