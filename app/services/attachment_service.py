from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from sqlmodel import Session

from app.domain.models import TaskActivityAction, TaskAttachmentRead
from app.domain.permissions import (
    Actor,
    AttachmentType,
    can_delete_attachment,
    can_upload_attachment,
    can_view_attachment_type,
)
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.file_storage_service import FileStorageError, FileStorageNotFoundError, FileStorageService
from app.services.task_service import (
    NotFoundError,
    PermissionDeniedError,
    PersistenceFailureError,
    build_attachment_record,
    commit_or_fail,
    discard_stored_files,
    get_visible_task,
    is_assignee,
    record_activity,
    validate_upload,
    visible_attachments,
)


def _find_attachment(attachments: list[dict[str, Any]], attachment_id: str) -> dict[str, Any]:
    for item in attachments:
        if isinstance(item, dict) and item.get("id") == attachment_id:
            return item
    raise NotFoundError("attachment not found")


class AttachmentService:
    def __init__(self, *, storage: FileStorageService | None = None) -> None:
        self._storage = storage

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @property
    def storage(self) -> FileStorageService:
        if self._storage is None:
            self._storage = FileStorageService()
        return self._storage

    def upload_attachment(
        self,
        task_id: str,
        actor: Actor,
        *,
        attachment_type: AttachmentType,
        file_name: str,
        content: bytes,
        content_type: str,
    ) -> TaskAttachmentRead:
        attachment_type = AttachmentType(attachment_type)
        validate_upload(file_name, content)
        with self._session() as session:
            row = get_visible_task(session, task_id, actor)
            if actor.is_employee and not is_assignee(row, actor):
                raise PermissionDeniedError("only the assignee can upload files to this task")
            if not can_upload_attachment(attachment_type, actor, row.status):
                raise PermissionDeniedError(
                    f"{actor.role} cannot upload {attachment_type} files while task is {row.status}"
                )
            try:
                stored = self.storage.upload(
                    content=content,
                    file_name=file_name,
                    content_type=content_type,
                    path_hint=f"tasks/{row.id}",
                    attachment_type=attachment_type,
                )
            except FileStorageError as exc:
                raise PersistenceFailureError(f"upload failed: {exc}") from exc

            attachment = build_attachment_record(
                stored,
                file_name=file_name,
                content_type=content_type,
                attachment_type=attachment_type,
                actor=actor,
            )
            row.attachments = [*row.attachments, attachment]
            row.updated_at = datetime.now(UTC)
            session.add(row)
            record_activity(
                session,
                task=row,
                action=TaskActivityAction.ATTACHMENT_ADDED,
                actor=actor,
                from_status=row.status,
                to_status=row.status,
                detail={"attachment_id": attachment["id"], "attachment_type": attachment["attachment_type"]},
            )
            event = event_bus.stage(
                session,
                "task.attachment_added",
                {"task_id": task_id, "attachment_id": attachment["id"], "attachment_type": attachment_type},
                actor_id=actor.uid,
            )
            try:
                commit_or_fail(session, "attachment add")
            except PersistenceFailureError:
                discard_stored_files(self.storage, [stored.public_id])
                raise
            status = row.status

        event_bus.dispatch(event)
        return TaskAttachmentRead.model_validate(
            {**attachment, "can_delete": can_delete_attachment(attachment, actor, status)}
        )

    def delete_attachment(self, task_id: str, attachment_id: str, actor: Actor) -> None:
        with self._session() as session:
            row = get_visible_task(session, task_id, actor)
            attachment = _find_attachment(row.attachments, attachment_id)
            if actor.is_employee and not is_assignee(row, actor):
                raise PermissionDeniedError("only the assignee can delete files on this task")
            if not can_delete_attachment(attachment, actor, row.status):
                raise PermissionDeniedError(
                    f"{actor.role} cannot delete this {attachment.get('attachment_type')} file "
                    f"while task is {row.status}"
                )
            try:
                deleted = self.storage.delete(str(attachment.get("public_id", "")))
            except FileStorageError as exc:
                raise PersistenceFailureError(f"file delete failed: {exc}") from exc
            if not deleted:
                raise PersistenceFailureError("file delete failed: storage refused the delete")

            row.attachments = [item for item in row.attachments if item.get("id") != attachment_id]
            row.updated_at = datetime.now(UTC)
            session.add(row)
            record_activity(
                session,
                task=row,
                action=TaskActivityAction.ATTACHMENT_DELETED,
                actor=actor,
                from_status=row.status,
                to_status=row.status,
                detail={"attachment_id": attachment_id, "attachment_type": attachment.get("attachment_type")},
            )
            event = event_bus.stage(
                session,
                "task.attachment_deleted",
                {"task_id": task_id, "attachment_id": attachment_id},
                actor_id=actor.uid,
            )
            commit_or_fail(session, "attachment delete")

        event_bus.dispatch(event)

    def list_attachments(
        self,
        task_id: str,
        actor: Actor,
        *,
        attachment_type: AttachmentType | None = None,
    ) -> list[TaskAttachmentRead]:
        with self._session() as session:
            row = get_visible_task(session, task_id, actor)
            items = visible_attachments(row, actor)
        if attachment_type is not None:
            items = [item for item in items if item.attachment_type == attachment_type]
        return items

    def resolve_download(self, task_id: str, attachment_id: str, actor: Actor) -> tuple[dict[str, Any], Path | str]:
        with self._session() as session:
            row = get_visible_task(session, task_id, actor)
            attachment = _find_attachment(row.attachments, attachment_id)
            if not can_view_attachment_type(attachment["attachment_type"], actor, row.status):
                raise PermissionDeniedError("file is not available at this stage of the task")
        try:
            target = self.storage.resolve_download(attachment)
        except FileStorageNotFoundError as exc:
            raise NotFoundError("file not found in storage") from exc
        return attachment, target
