from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from sqlmodel.sql.expression import SelectOfScalar

from app.domain.models import (
    Earning,
    Task,
    TaskActivity,
    TaskActivityAction,
    TaskAttachmentRead,
    TaskCommentRead,
    TaskCreate,
    TaskRead,
    TaskUpdate,
)
from app.domain.permissions import (
    Actor,
    AttachmentType,
    can_delete_attachment,
    can_upload_attachment,
    can_view_attachment_type,
)
from app.domain.state_machine import (
    BOARD_COLUMNS,
    ActorRole,
    TaskStatus,
    available_transitions,
    derive_approval_status,
    is_known_transition,
    requires_comment,
    transition_role,
)
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.earning_service import EarningService
from app.services.file_storage_service import FileStorageError, FileStorageService, StoredFile
from app.services.identity_service import IdentityService
from app.services.notification_service import NotificationService

ATTACHMENT_MAX_BYTES = int(os.getenv("ATTACHMENT_MAX_BYTES", str(10 * 1024 * 1024)))


class TaskLifecycleError(Exception):
    code = "task_error"


class NotFoundError(TaskLifecycleError):
    code = "not_found"


class ValidationError(TaskLifecycleError):
    code = "validation_error"


class PermissionDeniedError(TaskLifecycleError):
    code = "permission_denied"


class MissingRequiredCommentError(TaskLifecycleError):
    code = "missing_required_comment"


class PersistenceFailureError(TaskLifecycleError):
    code = "persistence_failure"


class InvalidTransitionError(TaskLifecycleError):
    code = "invalid_transition"

    ILLEGAL_TRANSITION = "illegal_transition"
    ROLE_NOT_ALLOWED = "role_not_allowed"
    NOT_ASSIGNEE = "not_assignee"

    def __init__(self, message: str, *, reason: str, source: TaskStatus, target: TaskStatus) -> None:
        super().__init__(message)
        self.reason = reason
        self.source = source
        self.target = target


@dataclass(frozen=True)
class FileUpload:
    file_name: str
    content: bytes
    content_type: str = "application/octet-stream"


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def is_assignee(task: Task, actor: Actor) -> bool:
    return bool(task.assigned_to) and task.assigned_to[0] == actor.uid


def is_visible(task: Task, actor: Actor) -> bool:
    return actor.is_admin or actor.uid in task.assigned_to


def task_row_statement(task_id: str, *, for_update: bool = False) -> SelectOfScalar[Task]:
    statement = select(Task).where(Task.id == task_id)
    if for_update:
        # Row lock on Postgres; SQLite serialises writers on its own.
        statement = statement.with_for_update()
    return statement


def get_visible_task(session: Session, task_id: str, actor: Actor, *, for_update: bool = False) -> Task:
    row = session.exec(task_row_statement(task_id, for_update=for_update)).first()
    # Employees cannot tell other people's tasks from missing ones.
    if row is None or not is_visible(row, actor):
        raise NotFoundError("task not found")
    return row


def commit_or_fail(session: Session, what: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceFailureError(f"{what} failed: store write error") from exc


def record_activity(
    session: Session,
    *,
    task: Task,
    action: TaskActivityAction,
    actor: Actor,
    from_status: TaskStatus | None = None,
    to_status: TaskStatus | None = None,
    note: str | None = None,
    detail: dict[str, Any] | None = None,
) -> TaskActivity:
    activity = TaskActivity(
        task_id=task.id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor.uid,
        actor_role=actor.role,
        note=note,
        detail=detail or {},
    )
    session.add(activity)
    return activity


def validate_upload(file_name: str, content: bytes) -> None:
    if not file_name.strip():
        raise ValidationError("file name is empty")
    if not content:
        raise ValidationError("file is empty")
    if len(content) > ATTACHMENT_MAX_BYTES:
        raise ValidationError(f"file exceeds {ATTACHMENT_MAX_BYTES} bytes")


def build_attachment_record(
    stored: StoredFile,
    *,
    file_name: str,
    content_type: str,
    attachment_type: AttachmentType,
    actor: Actor,
) -> dict[str, Any]:
    return {
        "id": str(uuid4()),
        "file_name": file_name,
        "file_url": stored.url,
        "secure_url": stored.secure_url,
        "public_id": stored.public_id,
        "file_size": stored.file_size,
        "file_type": content_type,
        "attachment_type": str(attachment_type),
        "uploaded_by": actor.uid,
        "uploaded_by_role": str(actor.role),
        "uploaded_at": datetime.now(UTC).isoformat(),
        "storage_provider": str(stored.provider),
    }


def discard_stored_files(storage: FileStorageService, public_ids: Sequence[str]) -> list[str]:
    """Best-effort delete of stored files the database no longer points at; returns ids left behind."""
    leftovers: list[str] = []
    for public_id in public_ids:
        try:
            if not storage.delete(public_id):
                leftovers.append(public_id)
        except FileStorageError:
            leftovers.append(public_id)
    return leftovers


def visible_attachments(task: Task, actor: Actor) -> list[TaskAttachmentRead]:
    items: list[TaskAttachmentRead] = []
    for raw in task.attachments:
        if not isinstance(raw, dict):
            continue
        if not can_view_attachment_type(raw["attachment_type"], actor, task.status):
            continue
        items.append(
            TaskAttachmentRead.model_validate(
                {**raw, "can_delete": can_delete_attachment(raw, actor, task.status)}
            )
        )
    return items


def actor_transitions(task: Task, actor: Actor) -> list[TaskStatus]:
    if actor.is_employee and not is_assignee(task, actor):
        return []
    return available_transitions(task.status, actor.role)


def build_task_read(task: Task, actor: Actor) -> TaskRead:
    payload = task.model_dump(exclude={"attachments", "comments"})
    payload["attachments"] = visible_attachments(task, actor)
    payload["approval_status"] = derive_approval_status(task.status)
    payload["available_transitions"] = actor_transitions(task, actor)
    return TaskRead.model_validate(payload)


class TaskService:
    """Owns every task status change; the transition table is the single source of truth."""

    def __init__(
        self,
        *,
        storage: FileStorageService | None = None,
        identity: IdentityService | None = None,
        earnings: EarningService | None = None,
        notifications: NotificationService | None = None,
    ) -> None:
        self._storage = storage
        self._identity = identity or IdentityService()
        self._earnings = earnings or EarningService()
        self._notifications = notifications or NotificationService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @property
    def storage(self) -> FileStorageService:
        if self._storage is None:
            self._storage = FileStorageService()
        return self._storage

    def _validate_assignees(self, assigned_to: list[str]) -> list[str]:
        unique = list(dict.fromkeys(item for item in assigned_to if item))
        active = self._identity.active_user_ids(unique)
        missing = [item for item in unique if item not in active]
        if missing:
            raise ValidationError(f"unknown or inactive assignee: {', '.join(missing)}")
        return unique

    def create_task(self, actor: Actor, payload: TaskCreate) -> Task:
        assigned_to = list(payload.assigned_to)
        if actor.is_employee:
            if not assigned_to:
                assigned_to = [actor.uid]
            if assigned_to != [actor.uid]:
                raise PermissionDeniedError("employees can only create tasks assigned to themselves")
        assigned_to = self._validate_assignees(assigned_to)

        row = Task(
            name=payload.name,
            description=payload.description,
            project_id=payload.project_id,
            team_id=payload.team_id,
            status=TaskStatus.BACKLOG,
            priority=payload.priority,
            assigned_to=assigned_to,
            deadline=ensure_utc(payload.deadline) if payload.deadline is not None else None,
            task_rate=payload.task_rate,
            created_by=actor.uid,
        )
        with self._session() as session:
            session.add(row)
            record_activity(
                session,
                task=row,
                action=TaskActivityAction.TASK_CREATED,
                actor=actor,
                to_status=row.status,
                detail={"assigned_to": assigned_to},
            )
            event = event_bus.stage(
                session,
                "task.created",
                {"task_id": row.id, "status": row.status, "assigned_to": assigned_to},
                actor_id=actor.uid,
            )
            commit_or_fail(session, "task create")
            session.refresh(row)

        event_bus.dispatch(event)
        return row

    def list_tasks(
        self,
        actor: Actor,
        *,
        status: TaskStatus | None = None,
        priority: str | None = None,
        project_id: str | None = None,
        search: str | None = None,
    ) -> list[Task]:
        with self._session() as session:
            statement = select(Task)
            if status is not None:
                statement = statement.where(Task.status == status)
            if priority is not None:
                statement = statement.where(Task.priority == priority)
            if project_id is not None:
                statement = statement.where(Task.project_id == project_id)
            rows = [item for item in session.exec(statement).all() if is_visible(item, actor)]

        if search:
            term = search.strip().lower()
            rows = [
                item
                for item in rows
                if term in item.name.lower() or term in (item.description or "").lower()
            ]
        return sorted(rows, key=lambda item: ensure_utc(item.created_at), reverse=True)

    def board(self, actor: Actor) -> dict[TaskStatus, list[Task]]:
        columns: dict[TaskStatus, list[Task]] = {column: [] for column in BOARD_COLUMNS}
        for task in self.list_tasks(actor):
            if task.status in columns:
                columns[task.status].append(task)
        return columns

    def get_task(self, task_id: str, actor: Actor) -> Task:
        with self._session() as session:
            return get_visible_task(session, task_id, actor)

    def update_task(self, task_id: str, actor: Actor, payload: TaskUpdate) -> Task:
        if not actor.is_admin:
            raise PermissionDeniedError("only admins can edit tasks")
        changes = payload.model_dump(exclude_unset=True)
        if "assigned_to" in changes:
            changes["assigned_to"] = self._validate_assignees(changes["assigned_to"] or [])
        if changes.get("deadline") is not None:
            changes["deadline"] = ensure_utc(changes["deadline"])

        with self._session() as session:
            row = get_visible_task(session, task_id, actor)
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = datetime.now(UTC)
            session.add(row)
            record_activity(
                session,
                task=row,
                action=TaskActivityAction.TASK_UPDATED,
                actor=actor,
                from_status=row.status,
                to_status=row.status,
                detail={"fields": sorted(changes)},
            )
            event = event_bus.stage(
                session,
                "task.updated",
                {"task_id": row.id, "fields": sorted(changes)},
                actor_id=actor.uid,
            )
            commit_or_fail(session, "task update")
            session.refresh(row)

        event_bus.dispatch(event)
        return row

    def delete_task(self, task_id: str, actor: Actor) -> None:
        if not actor.is_admin:
            raise PermissionDeniedError("only admins can delete tasks")
        with self._session() as session:
            row = get_visible_task(session, task_id, actor, for_update=True)
            public_ids = [
                str(item["public_id"])
                for item in row.attachments
                if isinstance(item, dict) and item.get("public_id")
            ]
            for activity in session.exec(select(TaskActivity).where(TaskActivity.task_id == task_id)).all():
                session.delete(activity)
            session.delete(row)
            event = event_bus.stage(
                session,
                "task.deleted",
                {"task_id": task_id, "public_ids": public_ids},
                actor_id=actor.uid,
            )
            commit_or_fail(session, "task delete")

        # Stored files go only after the row delete has committed.
        discard_stored_files(self.storage, public_ids)
        event_bus.dispatch(event)

    def check_transition(
        self,
        task: Task,
        target: TaskStatus,
        actor: Actor,
        comment: str | None = None,
    ) -> None:
        source = TaskStatus(task.status)
        target = TaskStatus(target)
        if not is_known_transition(source, target):
            raise InvalidTransitionError(
                f"illegal transition: {source} -> {target}",
                reason=InvalidTransitionError.ILLEGAL_TRANSITION,
                source=source,
                target=target,
            )
        allowed_role = transition_role(source, target)
        if allowed_role != actor.role:
            raise InvalidTransitionError(
                f"transition {source} -> {target} is not allowed for role {actor.role}",
                reason=InvalidTransitionError.ROLE_NOT_ALLOWED,
                source=source,
                target=target,
            )
        if allowed_role == ActorRole.EMPLOYEE and not is_assignee(task, actor):
            raise InvalidTransitionError(
                "only the assignee can move this task",
                reason=InvalidTransitionError.NOT_ASSIGNEE,
                source=source,
                target=target,
            )
        if requires_comment(target) and not (comment or "").strip():
            raise MissingRequiredCommentError(f"a review comment is required to move a task to {target}")

    def request_transition(
        self,
        task_id: str,
        target: TaskStatus,
        actor: Actor,
        comment: str | None = None,
        *,
        feedback_files: Sequence[FileUpload] = (),
    ) -> Task:
        target = TaskStatus(target)
        stored_files: list[StoredFile] = []
        with self._session() as session:
            row = get_visible_task(session, task_id, actor, for_update=True)
            self.check_transition(row, target, actor, comment)
            source = TaskStatus(row.status)

            if feedback_files:
                if not can_upload_attachment(AttachmentType.FEEDBACK, actor, source):
                    raise PermissionDeniedError("feedback files can only be attached during review")
                for upload in feedback_files:
                    validate_upload(upload.file_name, upload.content)

            new_attachments: list[dict[str, Any]] = []
            for upload in feedback_files:
                try:
                    stored = self.storage.upload(
                        content=upload.content,
                        file_name=upload.file_name,
                        content_type=upload.content_type,
                        path_hint=f"tasks/{row.id}",
                        attachment_type=AttachmentType.FEEDBACK,
                    )
                except FileStorageError as exc:
                    discard_stored_files(self.storage, [item.public_id for item in stored_files])
                    raise PersistenceFailureError(f"feedback upload failed: {exc}") from exc
                stored_files.append(stored)
                new_attachments.append(
                    build_attachment_record(
                        stored,
                        file_name=upload.file_name,
                        content_type=upload.content_type,
                        attachment_type=AttachmentType.FEEDBACK,
                        actor=actor,
                    )
                )

            now = datetime.now(UTC)
            note = comment.strip() if comment and comment.strip() else None
            row.status = target
            row.updated_at = now
            if new_attachments:
                row.attachments = [*row.attachments, *new_attachments]

            action = TaskActivityAction.TASK_STATUS_CHANGED
            earnings: list[Earning] = []
            if target == TaskStatus.COMPLETED:
                row.completed_at = now
                if note is not None:
                    row.employee_comment = note
                action = TaskActivityAction.TASK_SUBMITTED_FOR_REVIEW
            elif target == TaskStatus.REVISION:
                row.review_comment = note
                action = TaskActivityAction.TASK_REVISION_REQUESTED
            elif target == TaskStatus.DONE:
                # The approval note replaces any note from an earlier revision round.
                row.review_comment = note
                earnings = self._earnings.earnings_for_approval(row, actor.uid)
                for earning in earnings:
                    session.add(earning)
                action = (
                    TaskActivityAction.TASK_APPROVED_WITH_EARNING
                    if earnings
                    else TaskActivityAction.TASK_APPROVED_NO_EARNING
                )

            session.add(row)
            record_activity(
                session,
                task=row,
                action=action,
                actor=actor,
                from_status=source,
                to_status=target,
                note=note,
                detail={
                    "feedback_attachment_ids": [item["id"] for item in new_attachments],
                    "earning_total": sum(item.amount for item in earnings),
                },
            )
            event = event_bus.stage(
                session,
                "task.status_changed",
                {
                    "task_id": row.id,
                    "from_status": source,
                    "to_status": target,
                    "approval_status": derive_approval_status(target),
                },
                actor_id=actor.uid,
            )
            try:
                commit_or_fail(session, "status change")
            except PersistenceFailureError:
                discard_stored_files(self.storage, [item.public_id for item in stored_files])
                raise
            session.refresh(row)

        event_bus.dispatch(event)
        self._notify_transition(row, source, actor)
        return row

    def _notify_transition(self, task: Task, source: TaskStatus, actor: Actor) -> bool:
        if task.status == TaskStatus.COMPLETED:
            return self._notifications.notify(
                [task.created_by],
                kind="task_submitted_for_review",
                task=task,
                actor_id=actor.uid,
                message=f"'{task.name}' was submitted for review",
            )
        if task.status == TaskStatus.DONE:
            return self._notifications.notify(
                task.assigned_to,
                kind="task_approved",
                task=task,
                actor_id=actor.uid,
                message=f"'{task.name}' was approved",
            )
        if task.status == TaskStatus.REVISION:
            return self._notifications.notify(
                task.assigned_to,
                kind="task_revision_requested",
                task=task,
                actor_id=actor.uid,
                message=f"Revision requested for '{task.name}': {task.review_comment}",
            )
        return True

    def start_task(self, task_id: str, actor: Actor) -> Task:
        return self.request_transition(task_id, TaskStatus.IN_PROGRESS, actor)

    def submit_for_review(self, task_id: str, actor: Actor, comment: str | None = None) -> Task:
        return self.request_transition(task_id, TaskStatus.COMPLETED, actor, comment)

    def approve_task(
        self,
        task_id: str,
        actor: Actor,
        comment: str | None = None,
        *,
        feedback_files: Sequence[FileUpload] = (),
    ) -> Task:
        return self.request_transition(
            task_id, TaskStatus.DONE, actor, comment, feedback_files=feedback_files
        )

    def request_revision(
        self,
        task_id: str,
        actor: Actor,
        comment: str | None,
        *,
        feedback_files: Sequence[FileUpload] = (),
    ) -> Task:
        return self.request_transition(
            task_id, TaskStatus.REVISION, actor, comment, feedback_files=feedback_files
        )

    def resume_task(self, task_id: str, actor: Actor) -> Task:
        return self.request_transition(task_id, TaskStatus.IN_PROGRESS, actor)

    def add_comment(self, task_id: str, actor: Actor, content: str) -> TaskCommentRead:
        text = content.strip()
        if not text:
            raise ValidationError("comment is empty")
        with self._session() as session:
            row = get_visible_task(session, task_id, actor)
            comment = {
                "id": str(uuid4()),
                "user_id": actor.uid,
                "user_name": self._identity.display_name(actor.uid),
                "content": text,
                "created_at": datetime.now(UTC).isoformat(),
            }
            row.comments = [*row.comments, comment]
            row.updated_at = datetime.now(UTC)
            session.add(row)
            record_activity(
                session,
                task=row,
                action=TaskActivityAction.COMMENT_ADDED,
                actor=actor,
                from_status=row.status,
                to_status=row.status,
                detail={"comment_id": comment["id"]},
            )
            event = event_bus.stage(
                session,
                "task.comment_added",
                {"task_id": task_id, "comment_id": comment["id"]},
                actor_id=actor.uid,
            )
            commit_or_fail(session, "comment add")

        event_bus.dispatch(event)
        return TaskCommentRead.model_validate(comment)

    def list_comments(self, task_id: str, actor: Actor) -> list[TaskCommentRead]:
        with self._session() as session:
            row = get_visible_task(session, task_id, actor)
            comments = [TaskCommentRead.model_validate(item) for item in row.comments if isinstance(item, dict)]
        return sorted(comments, key=lambda item: item.created_at)

    def list_activity(self, task_id: str, actor: Actor) -> list[TaskActivity]:
        with self._session() as session:
            get_visible_task(session, task_id, actor)
            rows = list(session.exec(select(TaskActivity).where(TaskActivity.task_id == task_id)).all())
        return sorted(rows, key=lambda item: ensure_utc(item.created_at))
