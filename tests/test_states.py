import pytest

from nebularnews.states import (
    InvalidTransitionError,
    JobStatus,
    PullRunStatus,
    can_transition,
    check_transition,
    sources_for,
)


def test_job_transitions():
    assert can_transition(JobStatus.PENDING, JobStatus.RUNNING)
    assert can_transition(JobStatus.RUNNING, JobStatus.PENDING)
    assert can_transition(JobStatus.FAILED, JobStatus.PENDING)
    assert not can_transition(JobStatus.DONE, JobStatus.RUNNING)
    assert not can_transition(JobStatus.CANCELLED, JobStatus.DONE)
    with pytest.raises(InvalidTransitionError):
        check_transition(JobStatus.FAILED, JobStatus.RUNNING)


def test_pull_run_terminal_states():
    assert can_transition(PullRunStatus.QUEUED, PullRunStatus.RUNNING)
    assert can_transition(PullRunStatus.QUEUED, PullRunStatus.FAILED)
    assert not can_transition(PullRunStatus.QUEUED, PullRunStatus.SUCCESS)
    assert not can_transition(PullRunStatus.SUCCESS, PullRunStatus.RUNNING)
    assert not can_transition(PullRunStatus.FAILED, PullRunStatus.QUEUED)


def test_sources_for_guards():
    assert sources_for(JobStatus.RUNNING) == ("pending",)
    assert sources_for(PullRunStatus.RUNNING) == ("queued", "running")
    assert sources_for(PullRunStatus.SUCCESS) == ("running",)
    assert sources_for(JobStatus.PENDING) == ("cancelled", "done", "failed", "pending", "running")
