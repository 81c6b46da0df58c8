from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from app.domain.state_machine import ActorRole, TaskStatus


class AttachmentType(StrEnum):
    CONTEXT = "context"
    RESULT = "result"
    FEEDBACK = "feedback"


@dataclass(frozen=True)
class Actor:
    uid: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_employee(self) -> bool:
        return self.role == ActorRole.EMPLOYEE


def actor_from_claims(claims: dict[str, Any]) -> Actor:
    return Actor(uid=str(claims["sub"]), role=ActorRole(claims["role"]))


_CONTEXT_UPLOAD_CLOSED: frozenset[TaskStatus] = frozenset(
    {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.DONE}
)
_RESULT_UPLOAD_OPEN: frozenset[TaskStatus] = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED})
_FEEDBACK_UPLOAD_OPEN: frozenset[TaskStatus] = frozenset({TaskStatus.COMPLETED})

_RESULT_DELETE_OPEN: frozenset[TaskStatus] = frozenset(
    {TaskStatus.IN_PROGRESS, TaskStatus.REVISION, TaskStatus.REJECTED}
)
_FEEDBACK_DELETE_OPEN: frozenset[TaskStatus] = frozenset({TaskStatus.REVISION, TaskStatus.REJECTED})

_RESULT_HIDDEN_FOR_EMPLOYEE: frozenset[TaskStatus] = frozenset({TaskStatus.BACKLOG})
_RESULT_VISIBLE_FOR_ADMIN: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.REVISION, TaskStatus.REJECTED, TaskStatus.DONE}
)
_FEEDBACK_VISIBLE: frozenset[TaskStatus] = frozenset(
    {TaskStatus.REVISION, TaskStatus.REJECTED, TaskStatus.DONE}
)


def can_upload_attachment(attachment_type: AttachmentType, actor: Actor, status: TaskStatus) -> bool:
    attachment_type = AttachmentType(attachment_type)
    status = TaskStatus(status)
    if attachment_type == AttachmentType.CONTEXT:
        return actor.is_admin and status not in _CONTEXT_UPLOAD_CLOSED
    if attachment_type == AttachmentType.RESULT:
        return actor.is_employee and status in _RESULT_UPLOAD_OPEN
    return actor.is_admin and status in _FEEDBACK_UPLOAD_OPEN


def can_delete_attachment(attachment: Mapping[str, Any], actor: Actor, status: TaskStatus) -> bool:
    """Exactly three (role, uploader, type, status) cells allow a delete; everything else is denied."""
    status = TaskStatus(status)
    attachment_type = attachment.get("attachment_type")
    uploaded_by_role = attachment.get("uploaded_by_role")

    if (
        actor.is_admin
        and uploaded_by_role == ActorRole.ADMIN
        and attachment_type == AttachmentType.CONTEXT
        and status != TaskStatus.DONE
    ):
        return True
    if (
        actor.is_employee
        and uploaded_by_role == ActorRole.EMPLOYEE
        and attachment_type == AttachmentType.RESULT
        and status in _RESULT_DELETE_OPEN
    ):
        return True
    return (
        actor.is_admin
        and uploaded_by_role == ActorRole.ADMIN
        and attachment_type == AttachmentType.FEEDBACK
        and status in _FEEDBACK_DELETE_OPEN
    )


def can_view_attachment_type(attachment_type: AttachmentType, actor: Actor, status: TaskStatus) -> bool:
    attachment_type = AttachmentType(attachment_type)
    status = TaskStatus(status)
    if attachment_type == AttachmentType.CONTEXT:
        return True
    if attachment_type == AttachmentType.RESULT:
        if actor.is_employee:
            return status not in _RESULT_HIDDEN_FOR_EMPLOYEE
        return status in _RESULT_VISIBLE_FOR_ADMIN
    return status in _FEEDBACK_VISIBLE
