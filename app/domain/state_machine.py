from __future__ import annotations

from enum import StrEnum


class TaskStatus(StrEnum):
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REVISION = "revision"
    DONE = "done"
    REJECTED = "rejected"
    BLOCKED = "blocked"


class ActorRole(StrEnum):
    ADMIN = "admin"
    EMPLOYEE = "employee"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# (source, target) -> the only role allowed to perform it.
TASK_TRANSITIONS: dict[tuple[TaskStatus, TaskStatus], ActorRole] = {
    (TaskStatus.BACKLOG, TaskStatus.IN_PROGRESS): ActorRole.EMPLOYEE,
    (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED): ActorRole.EMPLOYEE,
    (TaskStatus.COMPLETED, TaskStatus.DONE): ActorRole.ADMIN,
    (TaskStatus.COMPLETED, TaskStatus.REVISION): ActorRole.ADMIN,
    (TaskStatus.REVISION, TaskStatus.IN_PROGRESS): ActorRole.EMPLOYEE,
    (TaskStatus.REJECTED, TaskStatus.IN_PROGRESS): ActorRole.EMPLOYEE,
}

COMMENT_REQUIRED_TARGETS: frozenset[TaskStatus] = frozenset({TaskStatus.REVISION})

BOARD_COLUMNS: tuple[TaskStatus, ...] = (
    TaskStatus.BACKLOG,
    TaskStatus.IN_PROGRESS,
    TaskStatus.COMPLETED,
    TaskStatus.REVISION,
    TaskStatus.DONE,
    TaskStatus.REJECTED,
)

_APPROVAL_PROJECTION: dict[TaskStatus, ApprovalStatus] = {
    TaskStatus.COMPLETED: ApprovalStatus.PENDING,
    TaskStatus.DONE: ApprovalStatus.APPROVED,
    TaskStatus.REVISION: ApprovalStatus.REJECTED,
    TaskStatus.REJECTED: ApprovalStatus.REJECTED,
}


def transition_role(source: TaskStatus, target: TaskStatus) -> ActorRole | None:
    return TASK_TRANSITIONS.get((source, target))


def is_known_transition(source: TaskStatus, target: TaskStatus) -> bool:
    return (source, target) in TASK_TRANSITIONS


def can_transition(source: TaskStatus, target: TaskStatus, role: ActorRole) -> bool:
    return transition_role(source, target) == role


def available_transitions(source: TaskStatus, role: ActorRole) -> list[TaskStatus]:
    return [
        target
        for (from_status, target), allowed_role in TASK_TRANSITIONS.items()
        if from_status == source and allowed_role == role
    ]


def requires_comment(target: TaskStatus) -> bool:
    return target in COMMENT_REQUIRED_TARGETS


def derive_approval_status(status: TaskStatus) -> ApprovalStatus | None:
    """Read-time projection of ``status``; never persisted."""
    return _APPROVAL_PROJECTION.get(TaskStatus(status))
