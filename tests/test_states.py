"""Tests for the job lifecycle state machine."""

import pytest

from orchestrator.errors import InvalidTransitionError
from orchestrator.models import JobStatus
from orchestrator.states import can_transition, ensure_transition, is_absorbing


class TestTransitions:
    def test_queued_only_moves_to_processing(self):
        assert can_transition(JobStatus.QUEUED, JobStatus.PROCESSING)
        assert not can_transition(JobStatus.QUEUED, JobStatus.COMPLETED)
        assert not can_transition(JobStatus.QUEUED, JobStatus.FAILED)

    def test_processing_outcomes(self):
        for target in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STALLED):
            assert can_transition(JobStatus.PROCESSING, target)
        assert not can_transition(JobStatus.PROCESSING, JobStatus.QUEUED)

    def test_failed_requeues_only_while_attempts_remain(self):
        assert can_transition(JobStatus.FAILED, JobStatus.QUEUED, attempts=1, max_attempts=3)
        assert not can_transition(JobStatus.FAILED, JobStatus.QUEUED, attempts=3, max_attempts=3)

    def test_completed_has_no_exits(self):
        for target in JobStatus:
            assert not can_transition(JobStatus.COMPLETED, target, attempts=0, max_attempts=5)

    def test_accepts_plain_strings(self):
        assert can_transition("stalled", "queued")

    def test_ensure_transition_raises_with_both_ends(self):
        with pytest.raises(InvalidTransitionError) as exc:
            ensure_transition(JobStatus.COMPLETED, JobStatus.PROCESSING)
        assert exc.value.current == "completed"
        assert exc.value.target == "processing"


class TestAbsorbing:
    def test_completed_is_absorbing(self):
        assert is_absorbing(JobStatus.COMPLETED, 1, 3)

    def test_failed_is_absorbing_only_when_exhausted(self):
        assert is_absorbing(JobStatus.FAILED, 3, 3)
        assert not is_absorbing(JobStatus.FAILED, 1, 3)

    def test_active_states_are_not_absorbing(self):
        assert not is_absorbing(JobStatus.QUEUED, 0, 3)
        assert not is_absorbing(JobStatus.PROCESSING, 1, 3)
