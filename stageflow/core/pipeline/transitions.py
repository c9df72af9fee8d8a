"""
State Transitions
=================

Allowed status changes for StageExecution and Task. Every status write
in the orchestrator goes through these tables.
"""

from stageflow.core.errors import InvalidTransitionError
from stageflow.core.models import ExecutionStatus, TaskStatus


EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.FAILED}),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.AWAITING_USER,
        ExecutionStatus.APPROVED,
        ExecutionStatus.FAILED,
    }),
    ExecutionStatus.AWAITING_USER: frozenset({ExecutionStatus.APPROVED, ExecutionStatus.FAILED}),
    ExecutionStatus.APPROVED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SPLIT, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.SPLIT,
    }),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS}),  # retry
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.SPLIT: frozenset(),
}

# Every enum member must have a row
assert set(EXECUTION_TRANSITIONS) == set(ExecutionStatus)
assert set(TASK_TRANSITIONS) == set(TaskStatus)


def ensure_execution_transition(current: ExecutionStatus, target: ExecutionStatus) -> None:
    if target not in EXECUTION_TRANSITIONS[current]:
        raise InvalidTransitionError("stage execution", current.value, target.value)


def ensure_task_transition(current: TaskStatus, target: TaskStatus) -> None:
    if current == target:
        return
    if target not in TASK_TRANSITIONS[current]:
        raise InvalidTransitionError("task", current.value, target.value)
