from __future__ import annotations

import base64
import binascii
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from app.api.deps import CurrentActor
from app.domain.models import (
    FeedbackFileUpload,
    TaskActivityRead,
    TaskBoardRead,
    TaskCommentCreate,
    TaskCommentRead,
    TaskCreate,
    TaskPriority,
    TaskRead,
    TaskReviewRequest,
    TaskSubmitRequest,
    TaskTransitionRequest,
    TaskUpdate,
)
from app.domain.state_machine import TaskStatus
from app.infra.audit import set_audit_context
from app.services.task_service import (
    FileUpload,
    InvalidTransitionError,
    MissingRequiredCommentError,
    NotFoundError,
    PermissionDeniedError,
    PersistenceFailureError,
    TaskLifecycleError,
    TaskService,
    ValidationError,
    build_task_read,
)

router = APIRouter()


def get_task_service() -> TaskService:
    return TaskService()


Service = Annotated[TaskService, Depends(get_task_service)]

_STATUS_BY_ERROR: tuple[tuple[type[TaskLifecycleError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (MissingRequiredCommentError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (PersistenceFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _handle_task_error(exc: Exception) -> None:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            detail = {"code": exc.code, "message": str(exc)}
            if isinstance(exc, InvalidTransitionError):
                detail["reason"] = exc.reason
            raise HTTPException(status_code=status_code, detail=detail) from exc
    raise exc


def _decode_feedback_files(files: list[FeedbackFileUpload]) -> list[FileUpload]:
    uploads: list[FileUpload] = []
    for item in files:
        try:
            content = base64.b64decode(item.content_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError(f"feedback file {item.file_name} is not valid base64") from exc
        uploads.append(FileUpload(file_name=item.file_name, content=content, content_type=item.content_type))
    return uploads


@router.post("", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreate, request: Request, actor: CurrentActor, service: Service) -> TaskRead:
    set_audit_context(
        request,
        action="task.create",
        detail={"what": {"name": payload.name, "assigned_to": payload.assigned_to}},
    )
    try:
        row = service.create_task(actor, payload)
        return build_task_read(row, actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.get("", response_model=list[TaskRead])
def list_tasks(
    actor: CurrentActor,
    service: Service,
    status_filter: Annotated[TaskStatus | None, Query(alias="status")] = None,
    priority: TaskPriority | None = None,
    project_id: str | None = None,
    search: str | None = None,
) -> list[TaskRead]:
    rows = service.list_tasks(
        actor,
        status=status_filter,
        priority=priority,
        project_id=project_id,
        search=search,
    )
    return [build_task_read(item, actor) for item in rows]


@router.get("/board", response_model=TaskBoardRead)
def get_board(actor: CurrentActor, service: Service) -> TaskBoardRead:
    columns = service.board(actor)
    return TaskBoardRead(
        columns={column: [build_task_read(item, actor) for item in rows] for column, rows in columns.items()}
    )


@router.get("/{task_id}", response_model=TaskRead)
def get_task(task_id: str, actor: CurrentActor, service: Service) -> TaskRead:
    try:
        return build_task_read(service.get_task(task_id, actor), actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.patch("/{task_id}", response_model=TaskRead)
def update_task(
    task_id: str,
    payload: TaskUpdate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.update",
        detail={"what": {"task_id": task_id, "fields": sorted(payload.model_dump(exclude_unset=True))}},
    )
    try:
        return build_task_read(service.update_task(task_id, actor, payload), actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: str, request: Request, actor: CurrentActor, service: Service) -> Response:
    set_audit_context(request, action="task.delete", detail={"what": {"task_id": task_id}})
    try:
        service.delete_task(task_id, actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{task_id}/transition", response_model=TaskRead)
def transition_task(
    task_id: str,
    payload: TaskTransitionRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.transition",
        detail={"what": {"task_id": task_id, "target_status": payload.target_status}},
    )
    try:
        row = service.request_transition(task_id, payload.target_status, actor, payload.comment)
        return build_task_read(row, actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.post("/{task_id}/start", response_model=TaskRead)
def start_task(task_id: str, request: Request, actor: CurrentActor, service: Service) -> TaskRead:
    set_audit_context(request, action="task.start", detail={"what": {"task_id": task_id}})
    try:
        return build_task_read(service.start_task(task_id, actor), actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.post("/{task_id}/submit", response_model=TaskRead)
def submit_task(
    task_id: str,
    payload: TaskSubmitRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskRead:
    set_audit_context(request, action="task.submit", detail={"what": {"task_id": task_id}})
    try:
        return build_task_read(service.submit_for_review(task_id, actor, payload.comment), actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.post("/{task_id}/approve", response_model=TaskRead)
def approve_task(
    task_id: str,
    payload: TaskReviewRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.approve",
        detail={"what": {"task_id": task_id, "feedback_files": len(payload.feedback_files)}},
    )
    try:
        uploads = _decode_feedback_files(payload.feedback_files)
        row = service.approve_task(task_id, actor, payload.comment, feedback_files=uploads)
        return build_task_read(row, actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.post("/{task_id}/revision", response_model=TaskRead)
def request_revision(
    task_id: str,
    payload: TaskReviewRequest,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskRead:
    set_audit_context(
        request,
        action="task.request_revision",
        detail={"what": {"task_id": task_id, "feedback_files": len(payload.feedback_files)}},
    )
    try:
        uploads = _decode_feedback_files(payload.feedback_files)
        row = service.request_revision(task_id, actor, payload.comment, feedback_files=uploads)
        return build_task_read(row, actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.post("/{task_id}/resume", response_model=TaskRead)
def resume_task(task_id: str, request: Request, actor: CurrentActor, service: Service) -> TaskRead:
    set_audit_context(request, action="task.resume", detail={"what": {"task_id": task_id}})
    try:
        return build_task_read(service.resume_task(task_id, actor), actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.post("/{task_id}/comments", response_model=TaskCommentRead, status_code=status.HTTP_201_CREATED)
def add_comment(
    task_id: str,
    payload: TaskCommentCreate,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> TaskCommentRead:
    set_audit_context(request, action="task.comment", detail={"what": {"task_id": task_id}})
    try:
        return service.add_comment(task_id, actor, payload.content)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.get("/{task_id}/comments", response_model=list[TaskCommentRead])
def list_comments(task_id: str, actor: CurrentActor, service: Service) -> list[TaskCommentRead]:
    try:
        return service.list_comments(task_id, actor)
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise


@router.get("/{task_id}/activity", response_model=list[TaskActivityRead])
def list_activity(task_id: str, actor: CurrentActor, service: Service) -> list[TaskActivityRead]:
    try:
        rows = service.list_activity(task_id, actor)
        return [TaskActivityRead.model_validate(item) for item in rows]
    except TaskLifecycleError as exc:
        _handle_task_error(exc)
        raise
