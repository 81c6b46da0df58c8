from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from app.api.deps import AdminActor, CurrentActor
from app.domain.models import (
    BootstrapAdminRequest,
    DevLoginRequest,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from app.domain.state_machine import ActorRole
from app.infra.audit import set_audit_context
from app.infra.auth import create_access_token
from app.services.identity_service import AuthError, ConflictError, IdentityService, NotFoundError

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


Service = Annotated[IdentityService, Depends(get_identity_service)]


def _handle_identity_error(exc: Exception) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, AuthError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    raise exc


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, request: Request, service: Service) -> UserRead:
    set_audit_context(request, action="identity.bootstrap_admin", detail={"what": {"username": payload.username}})
    try:
        user = service.bootstrap_admin(payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/dev-login", response_model=TokenResponse)
def dev_login(payload: DevLoginRequest, service: Service) -> TokenResponse:
    try:
        user = service.dev_login(payload.username, payload.password)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise
    token = create_access_token(user_id=user.id, role=user.role)
    return TokenResponse(access_token=token, role=user.role)


@router.get("/me", response_model=UserRead)
def get_me(actor: CurrentActor, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(actor.uid))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, request: Request, _admin: AdminActor, service: Service) -> UserRead:
    set_audit_context(
        request,
        action="identity.user.create",
        detail={"what": {"username": payload.username, "role": payload.role}},
    )
    try:
        user = service.create_user(payload)
        return UserRead.model_validate(user)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.get("/users", response_model=list[UserRead])
def list_users(
    _admin: AdminActor,
    service: Service,
    role: ActorRole | None = None,
    is_active: bool | None = None,
) -> list[UserRead]:
    users = service.list_users(role=role, is_active=is_active)
    return [UserRead.model_validate(item) for item in users]


@router.get("/users/{user_id}", response_model=UserRead)
def get_user(user_id: str, _admin: AdminActor, service: Service) -> UserRead:
    try:
        return UserRead.model_validate(service.get_user(user_id))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.patch("/users/{user_id}", response_model=UserRead)
def update_user(
    user_id: str,
    payload: UserUpdate,
    request: Request,
    _admin: AdminActor,
    service: Service,
) -> UserRead:
    set_audit_context(
        request,
        action="identity.user.update",
        detail={"what": {"user_id": user_id, "fields": sorted(payload.model_dump(exclude_unset=True))}},
    )
    try:
        return UserRead.model_validate(service.update_user(user_id, payload))
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(user_id: str, request: Request, _admin: AdminActor, service: Service) -> Response:
    set_audit_context(request, action="identity.user.delete", detail={"what": {"user_id": user_id}})
    try:
        service.delete_user(user_id)
    except (NotFoundError, ConflictError, AuthError) as exc:
        _handle_identity_error(exc)
        raise
    return Response(status_code=status.HTTP_204_NO_CONTENT)
