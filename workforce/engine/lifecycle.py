"""Process and task state machines.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidStateError rather than silently proceeding.

Process records:

    STARTING ──> RUNNING ──> STOPPING ──> STOPPED
        │           │            │
        └──> ERROR <┘            └──> ERROR (stop failed)
               │
               └──> STARTING  (scheduled restart)

Tasks:

    PENDING ──> ASSIGNED ──> IN_PROGRESS ──┬──> COMPLETED ──> RESOLVED ──> REOPENED ──> ASSIGNED
       ^           │                       │
       │           └───────────────────────┴──> FAILED ──> PENDING  (retry)

    PENDING / ASSIGNED / IN_PROGRESS / REOPENED ──> CANCELLED
"""
from __future__ import annotations

from .errors import InvalidStateError
from .models import ProcessStatus, TaskStatus

PROCESS_TRANSITIONS: dict[ProcessStatus, set[ProcessStatus]] = {
    ProcessStatus.STARTING: {
        ProcessStatus.RUNNING,
        ProcessStatus.STOPPING,
        ProcessStatus.ERROR,
    },
    ProcessStatus.RUNNING: {
        ProcessStatus.STOPPING,
        ProcessStatus.ERROR,
    },
    ProcessStatus.STOPPING: {
        ProcessStatus.STOPPED,
        ProcessStatus.ERROR,
    },
    ProcessStatus.ERROR: {
        ProcessStatus.STARTING,  # restart after backoff
        ProcessStatus.STOPPED,   # explicit stop while waiting to restart
    },
    ProcessStatus.STOPPED: set(),
}

TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {
        TaskStatus.ASSIGNED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.ASSIGNED: {
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.IN_PROGRESS: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.FAILED: {
        TaskStatus.PENDING,  # retry while budget remains
    },
    TaskStatus.COMPLETED: {
        TaskStatus.RESOLVED,
    },
    TaskStatus.RESOLVED: {
        TaskStatus.REOPENED,
    },
    TaskStatus.REOPENED: {
        TaskStatus.ASSIGNED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.CANCELLED: set(),
}

# States from which assign() may pick an agent.
ASSIGNABLE_TASK_STATES = frozenset({TaskStatus.PENDING, TaskStatus.REOPENED})

# States in which a task is bound to an agent and holds workload.
ACTIVE_TASK_STATES = frozenset({TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS})


def validate_process_transition(
    process_id: str, current: ProcessStatus, target: ProcessStatus,
) -> None:
    """Raise InvalidStateError if current -> target is not allowed."""
    if target not in PROCESS_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            "Process", process_id, current.value, f"move to {target.value}",
        )


def validate_task_transition(
    task_id: str, current: TaskStatus, target: TaskStatus,
) -> None:
    """Raise InvalidStateError if current -> target is not allowed."""
    if target not in TASK_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            "Task", task_id, current.value, f"move to {target.value}",
        )
