from __future__ import annotations

from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import FileResponse, RedirectResponse

from app.api.deps import CurrentActor
from app.domain.models import TaskAttachmentRead
from app.domain.permissions import AttachmentType
from app.infra.audit import set_audit_context
from app.services.attachment_service import AttachmentService
from app.services.task_service import (
    NotFoundError,
    PermissionDeniedError,
    PersistenceFailureError,
    TaskLifecycleError,
    ValidationError,
)

router = APIRouter()


def get_attachment_service() -> AttachmentService:
    return AttachmentService()


Service = Annotated[AttachmentService, Depends(get_attachment_service)]


def _handle_attachment_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, PermissionDeniedError):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, ValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, PersistenceFailureError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        raise exc
    raise HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)}) from exc


@router.post(
    "/{task_id}/attachments",
    response_model=TaskAttachmentRead,
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    task_id: str,
    request: Request,
    actor: CurrentActor,
    service: Service,
    attachment_type: Annotated[AttachmentType, Query()],
    file_name: Annotated[str, Header(alias="X-File-Name")],
    content_type: Annotated[str, Header(alias="Content-Type")] = "application/octet-stream",
) -> TaskAttachmentRead:
    set_audit_context(
        request,
        action="task.attachment.upload",
        detail={"what": {"task_id": task_id, "attachment_type": attachment_type, "file_name": file_name}},
    )
    try:
        content = await request.body()
        return service.upload_attachment(
            task_id,
            actor,
            attachment_type=attachment_type,
            file_name=file_name,
            content=content,
            content_type=content_type,
        )
    except TaskLifecycleError as exc:
        _handle_attachment_error(exc)
        raise


@router.get("/{task_id}/attachments", response_model=list[TaskAttachmentRead])
def list_attachments(
    task_id: str,
    actor: CurrentActor,
    service: Service,
    attachment_type: AttachmentType | None = None,
) -> list[TaskAttachmentRead]:
    try:
        return service.list_attachments(task_id, actor, attachment_type=attachment_type)
    except TaskLifecycleError as exc:
        _handle_attachment_error(exc)
        raise


@router.delete("/{task_id}/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_attachment(
    task_id: str,
    attachment_id: str,
    request: Request,
    actor: CurrentActor,
    service: Service,
) -> Response:
    set_audit_context(
        request,
        action="task.attachment.delete",
        detail={"what": {"task_id": task_id, "attachment_id": attachment_id}},
    )
    try:
        service.delete_attachment(task_id, attachment_id, actor)
    except TaskLifecycleError as exc:
        _handle_attachment_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{task_id}/attachments/{attachment_id}/download", response_model=None)
def download_attachment(
    task_id: str,
    attachment_id: str,
    actor: CurrentActor,
    service: Service,
) -> FileResponse | RedirectResponse:
    try:
        attachment, target = service.resolve_download(task_id, attachment_id, actor)
    except TaskLifecycleError as exc:
        _handle_attachment_error(exc)
        raise
    if isinstance(target, Path):
        return FileResponse(
            path=target,
            filename=str(attachment.get("file_name") or target.name),
            media_type=str(attachment.get("file_type") or "application/octet-stream"),
        )
    return RedirectResponse(url=target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
