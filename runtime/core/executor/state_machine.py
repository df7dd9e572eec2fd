"""Lifecycle state machines for scheduler tasks and server jobs.

Task lifecycle:
pending -> running -> completed | errored

Job lifecycle:
starting -> running -> completed | errored
starting -> errored            (worker could not be spawned)

Notes:
- Terminal states have no outgoing transitions.
- A worker exiting non-zero still completes its job; only spawn failures,
  transport failures and cancellation produce `errored`.
"""

from __future__ import annotations

from enum import Enum

from errors import ConflictError


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"


class JobState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"


_TASK_ALLOWED: dict[TaskState, set[TaskState]] = {
    TaskState.PENDING: {TaskState.RUNNING},
    TaskState.RUNNING: {TaskState.COMPLETED, TaskState.ERRORED},
    TaskState.COMPLETED: set(),
    TaskState.ERRORED: set(),
}

_JOB_ALLOWED: dict[JobState, set[JobState]] = {
    JobState.STARTING: {JobState.RUNNING, JobState.ERRORED},
    JobState.RUNNING: {JobState.COMPLETED, JobState.ERRORED},
    JobState.COMPLETED: set(),
    JobState.ERRORED: set(),
}


def is_terminal(state: TaskState | JobState) -> bool:
    if isinstance(state, TaskState):
        return not _TASK_ALLOWED[state]
    return not _JOB_ALLOWED[state]


def next_task_state(current: TaskState, new: TaskState) -> TaskState:
    if new not in _TASK_ALLOWED[current]:
        raise ConflictError(f"Invalid task state transition: {current.value} -> {new.value}")
    return new


def next_job_state(current: JobState, new: JobState) -> JobState:
    if is_terminal(current):
        raise ConflictError(f"Job is terminal; cannot transition from {current.value} to {new.value}")
    if new not in _JOB_ALLOWED[current]:
        raise ConflictError(f"Invalid job state transition: {current.value} -> {new.value}")
    return new
