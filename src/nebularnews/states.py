from __future__ import annotations

from enum import Enum


class InvalidTransitionError(ValueError):
    pass


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PullRunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TickKind(str, Enum):
    JOBS = "jobs"
    POLL = "poll"
    RETENTION = "retention"


# done and cancelled only leave via an explicit re-enqueue or delete.
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.PENDING}),
    JobStatus.RUNNING: frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.PENDING}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.DONE: frozenset({JobStatus.PENDING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
}

PULL_RUN_TRANSITIONS: dict[PullRunStatus, frozenset[PullRunStatus]] = {
    PullRunStatus.QUEUED: frozenset({PullRunStatus.RUNNING, PullRunStatus.FAILED}),
    PullRunStatus.RUNNING: frozenset(
        {PullRunStatus.RUNNING, PullRunStatus.SUCCESS, PullRunStatus.FAILED}
    ),
    PullRunStatus.SUCCESS: frozenset(),
    PullRunStatus.FAILED: frozenset(),
}

ACTIVE_PULL_STATUSES = (PullRunStatus.QUEUED, PullRunStatus.RUNNING)
FINISHED_JOB_STATUSES = (JobStatus.DONE, JobStatus.CANCELLED)


def can_transition(current: Enum, target: Enum) -> bool:
    table = _table_for(target)
    return target in table.get(current, frozenset())


def check_transition(current: Enum, target: Enum) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"{current.value} -> {target.value} not allowed")


def sources_for(target: Enum) -> tuple[str, ...]:
    """Statuses a row may be in for an UPDATE to `target` to apply."""
    table = _table_for(target)
    return tuple(sorted(state.value for state, targets in table.items() if target in targets))


def sql_in(values: tuple[str, ...]) -> str:
    return "(" + ", ".join("?" for _ in values) + ")"


def _table_for(target: Enum) -> dict:
    if isinstance(target, JobStatus):
        return JOB_TRANSITIONS
    if isinstance(target, PullRunStatus):
        return PULL_RUN_TRANSITIONS
    raise TypeError(f"no transition table for {type(target).__name__}")
