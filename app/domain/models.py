from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from app.domain.permissions import AttachmentType
from app.domain.state_machine import ActorRole, ApprovalStatus, TaskStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    actor_role: str | None = None
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    username: str = Field(index=True, unique=True)
    display_name: str | None = None
    password_hash: str
    role: ActorRole = Field(default=ActorRole.EMPLOYEE, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class TaskPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StorageProvider(StrEnum):
    LOCAL = "local"
    CLOUDINARY = "cloudinary"


class Task(SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (Index("ix_tasks_status_created_at", "status", "created_at"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str
    description: str | None = None
    project_id: str | None = Field(default=None, index=True)
    team_id: str | None = Field(default=None, index=True)
    status: TaskStatus = Field(default=TaskStatus.BACKLOG, index=True)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, index=True)
    assigned_to: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    deadline: datetime | None = None
    task_rate: float | None = None
    employee_comment: str | None = None
    review_comment: str | None = None
    attachments: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    comments: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    created_by: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)
    completed_at: datetime | None = None


class TaskActivityAction(StrEnum):
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_STATUS_CHANGED = "task_status_changed"
    TASK_SUBMITTED_FOR_REVIEW = "task_submitted_for_review"
    TASK_APPROVED_WITH_EARNING = "task_approved_with_earning"
    TASK_APPROVED_NO_EARNING = "task_approved_no_earning"
    TASK_REVISION_REQUESTED = "task_revision_requested"
    ATTACHMENT_ADDED = "attachment_added"
    ATTACHMENT_DELETED = "attachment_deleted"
    COMMENT_ADDED = "comment_added"


class TaskActivity(SQLModel, table=True):
    __tablename__ = "task_activities"
    __table_args__ = (Index("ix_task_activities_task_created", "task_id", "created_at"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    task_id: str = Field(index=True)
    action: TaskActivityAction = Field(index=True)
    from_status: TaskStatus | None = None
    to_status: TaskStatus | None = None
    actor_id: str = Field(index=True)
    actor_role: ActorRole
    note: str | None = None
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Earning(SQLModel, table=True):
    __tablename__ = "earnings"
    __table_args__ = (Index("ix_earnings_user_created", "user_id", "created_at"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    task_id: str = Field(index=True)
    amount: float
    approved_by: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserCreate(BaseModel):
    username: str = PydanticField(min_length=1)
    password: str = PydanticField(min_length=1)
    display_name: str | None = None
    role: ActorRole = ActorRole.EMPLOYEE
    is_active: bool = True


class UserUpdate(BaseModel):
    password: str | None = None
    display_name: str | None = None
    role: ActorRole | None = None
    is_active: bool | None = None


class UserRead(ORMReadModel):
    id: str
    username: str
    display_name: str | None = None
    role: ActorRole
    is_active: bool
    created_at: datetime


class DevLoginRequest(BaseModel):
    username: str
    password: str


class BootstrapAdminRequest(BaseModel):
    username: str = PydanticField(min_length=1)
    password: str = PydanticField(min_length=1)
    display_name: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: ActorRole


class TaskCreate(BaseModel):
    name: str = PydanticField(min_length=1)
    description: str | None = None
    project_id: str | None = None
    team_id: str | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: list[str] = PydanticField(default_factory=list)
    deadline: datetime | None = None
    task_rate: float | None = PydanticField(default=None, ge=0)


class TaskUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1)
    description: str | None = None
    project_id: str | None = None
    team_id: str | None = None
    priority: TaskPriority | None = None
    assigned_to: list[str] | None = None
    deadline: datetime | None = None
    task_rate: float | None = PydanticField(default=None, ge=0)


class TaskAttachmentRead(BaseModel):
    id: str
    file_name: str
    file_url: str
    secure_url: str
    public_id: str
    file_size: int
    file_type: str
    attachment_type: AttachmentType
    uploaded_by: str
    uploaded_by_role: ActorRole
    uploaded_at: datetime
    storage_provider: StorageProvider
    can_delete: bool = False


class TaskCommentRead(BaseModel):
    id: str
    user_id: str
    user_name: str
    content: str
    created_at: datetime


class TaskRead(ORMReadModel):
    id: str
    name: str
    description: str | None = None
    project_id: str | None = None
    team_id: str | None = None
    status: TaskStatus
    priority: TaskPriority
    assigned_to: list[str]
    deadline: datetime | None = None
    task_rate: float | None = None
    employee_comment: str | None = None
    review_comment: str | None = None
    attachments: list[TaskAttachmentRead] = PydanticField(default_factory=list)
    created_by: str
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    approval_status: ApprovalStatus | None = None
    available_transitions: list[TaskStatus] = PydanticField(default_factory=list)


class TaskBoardRead(BaseModel):
    columns: dict[TaskStatus, list[TaskRead]]


class FeedbackFileUpload(BaseModel):
    file_name: str = PydanticField(min_length=1)
    content_type: str = "application/octet-stream"
    content_base64: str


class TaskTransitionRequest(BaseModel):
    target_status: TaskStatus
    comment: str | None = None


class TaskSubmitRequest(BaseModel):
    comment: str | None = None


class TaskReviewRequest(BaseModel):
    comment: str | None = None
    feedback_files: list[FeedbackFileUpload] = PydanticField(default_factory=list)


class TaskCommentCreate(BaseModel):
    content: str = PydanticField(min_length=1)


class TaskActivityRead(ORMReadModel):
    id: str
    task_id: str
    action: TaskActivityAction
    from_status: TaskStatus | None = None
    to_status: TaskStatus | None = None
    actor_id: str
    actor_role: ActorRole
    note: str | None = None
    detail: dict[str, Any]
    created_at: datetime


class EarningRead(ORMReadModel):
    id: str
    user_id: str
    task_id: str
    amount: float
    approved_by: str
    created_at: datetime


class NotificationRead(BaseModel):
    id: str
    kind: str
    task_id: str
    task_name: str
    actor_id: str
    message: str
    created_at: datetime
