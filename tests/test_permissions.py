from __future__ import annotations

import pytest

from app.domain.permissions import (
    Actor,
    AttachmentType,
    actor_from_claims,
    can_delete_attachment,
    can_upload_attachment,
    can_view_attachment_type,
)
from app.domain.state_machine import BOARD_COLUMNS, ActorRole, TaskStatus

ADMIN = Actor(uid="admin-1", role=ActorRole.ADMIN)
EMPLOYEE = Actor(uid="employee-1", role=ActorRole.EMPLOYEE)
ACTORS = {ActorRole.ADMIN: ADMIN, ActorRole.EMPLOYEE: EMPLOYEE}

UPLOAD_ALLOWED = {
    (AttachmentType.CONTEXT, ActorRole.ADMIN, TaskStatus.BACKLOG),
    (AttachmentType.CONTEXT, ActorRole.ADMIN, TaskStatus.REVISION),
    (AttachmentType.CONTEXT, ActorRole.ADMIN, TaskStatus.REJECTED),
    (AttachmentType.RESULT, ActorRole.EMPLOYEE, TaskStatus.IN_PROGRESS),
    (AttachmentType.RESULT, ActorRole.EMPLOYEE, TaskStatus.COMPLETED),
    (AttachmentType.FEEDBACK, ActorRole.ADMIN, TaskStatus.COMPLETED),
}

# (type, acting role == uploader role, status)
DELETE_ALLOWED = {
    (AttachmentType.CONTEXT, ActorRole.ADMIN, TaskStatus.BACKLOG),
    (AttachmentType.CONTEXT, ActorRole.ADMIN, TaskStatus.IN_PROGRESS),
    (AttachmentType.CONTEXT, ActorRole.ADMIN, TaskStatus.COMPLETED),
    (AttachmentType.CONTEXT, ActorRole.ADMIN, TaskStatus.REVISION),
    (AttachmentType.CONTEXT, ActorRole.ADMIN, TaskStatus.REJECTED),
    (AttachmentType.RESULT, ActorRole.EMPLOYEE, TaskStatus.IN_PROGRESS),
    (AttachmentType.RESULT, ActorRole.EMPLOYEE, TaskStatus.REVISION),
    (AttachmentType.RESULT, ActorRole.EMPLOYEE, TaskStatus.REJECTED),
    (AttachmentType.FEEDBACK, ActorRole.ADMIN, TaskStatus.REVISION),
    (AttachmentType.FEEDBACK, ActorRole.ADMIN, TaskStatus.REJECTED),
}

VIEW_ALLOWED = {
    *{(AttachmentType.CONTEXT, role, status) for role in ActorRole for status in BOARD_COLUMNS},
    *{
        (AttachmentType.RESULT, ActorRole.EMPLOYEE, status)
        for status in BOARD_COLUMNS
        if status != TaskStatus.BACKLOG
    },
    (AttachmentType.RESULT, ActorRole.ADMIN, TaskStatus.COMPLETED),
    (AttachmentType.RESULT, ActorRole.ADMIN, TaskStatus.REVISION),
    (AttachmentType.RESULT, ActorRole.ADMIN, TaskStatus.REJECTED),
    (AttachmentType.RESULT, ActorRole.ADMIN, TaskStatus.DONE),
    *{
        (AttachmentType.FEEDBACK, role, status)
        for role in ActorRole
        for status in (TaskStatus.REVISION, TaskStatus.REJECTED, TaskStatus.DONE)
    },
}


def _attachment(attachment_type: AttachmentType, uploaded_by_role: ActorRole) -> dict[str, str]:
    return {
        "id": "att-1",
        "attachment_type": attachment_type.value,
        "uploaded_by_role": uploaded_by_role.value,
    }


@pytest.mark.parametrize("attachment_type", list(AttachmentType))
@pytest.mark.parametrize("role", list(ActorRole))
@pytest.mark.parametrize("status", BOARD_COLUMNS)
def test_upload_matrix(attachment_type: AttachmentType, role: ActorRole, status: TaskStatus) -> None:
    expected = (attachment_type, role, status) in UPLOAD_ALLOWED
    assert can_upload_attachment(attachment_type, ACTORS[role], status) is expected


@pytest.mark.parametrize("attachment_type", list(AttachmentType))
@pytest.mark.parametrize("role", list(ActorRole))
@pytest.mark.parametrize("status", BOARD_COLUMNS)
def test_delete_matrix_for_own_uploads(
    attachment_type: AttachmentType,
    role: ActorRole,
    status: TaskStatus,
) -> None:
    expected = (attachment_type, role, status) in DELETE_ALLOWED
    attachment = _attachment(attachment_type, role)
    assert can_delete_attachment(attachment, ACTORS[role], status) is expected


@pytest.mark.parametrize("attachment_type", list(AttachmentType))
@pytest.mark.parametrize("status", BOARD_COLUMNS)
def test_nobody_deletes_files_uploaded_by_the_other_role(
    attachment_type: AttachmentType,
    status: TaskStatus,
) -> None:
    assert not can_delete_attachment(_attachment(attachment_type, ActorRole.EMPLOYEE), ADMIN, status)
    assert not can_delete_attachment(_attachment(attachment_type, ActorRole.ADMIN), EMPLOYEE, status)


@pytest.mark.parametrize("attachment_type", list(AttachmentType))
@pytest.mark.parametrize("role", list(ActorRole))
@pytest.mark.parametrize("status", BOARD_COLUMNS)
def test_visibility_matrix(attachment_type: AttachmentType, role: ActorRole, status: TaskStatus) -> None:
    expected = (attachment_type, role, status) in VIEW_ALLOWED
    assert can_view_attachment_type(attachment_type, ACTORS[role], status) is expected


def test_actor_from_claims() -> None:
    actor = actor_from_claims({"sub": "user-9", "role": "employee"})
    assert actor == Actor(uid="user-9", role=ActorRole.EMPLOYEE)
    assert actor.is_employee
    assert not actor.is_admin

    with pytest.raises(ValueError):
        actor_from_claims({"sub": "user-9", "role": "owner"})
