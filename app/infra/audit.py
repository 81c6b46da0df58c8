from __future__ import annotations

from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import AuditLog, now_utc
from app.infra.db import engine

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
AUDITED_READ_PATH_KEYWORDS = ("/download",)
UNAUDITED_PATHS = {"/healthz", "/readyz"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
REQUEST_ID_HEADER = "X-Request-ID"

# Path params that name a resource, outermost first.
_RESOURCE_PARAMS: tuple[tuple[str, str], ...] = (
    ("task_id", "task"),
    ("attachment_id", "attachment"),
    ("user_id", "user"),
)


def write_audit_log(
    *,
    actor_id: str | None,
    actor_role: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    with Session(engine) as session:
        session.add(
            AuditLog(
                actor_id=actor_id,
                actor_role=actor_role,
                action=action,
                resource=resource,
                method=method,
                status_code=status_code,
                detail=detail or {},
            )
        )
        session.commit()


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code == 409:
        return "conflict"
    if status_code >= 400:
        return "rejected"
    return "success"


def should_audit_request(method: str, path: str) -> bool:
    if path in UNAUDITED_PATHS:
        return False
    return method in WRITE_METHODS or any(keyword in path for keyword in AUDITED_READ_PATH_KEYWORDS)


def default_resource(request: Request) -> str:
    """``task:<id>/attachment:<id>`` from the matched route, else the raw path."""
    parts = [
        f"{label}:{request.path_params[param]}"
        for param, label in _RESOURCE_PARAMS
        if param in request.path_params
    ]
    return "/".join(parts) if parts else request.url.path


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    current = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    context = dict(current) if isinstance(current, dict) else {}
    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous = context.get("detail")
        context["detail"] = _deep_merge(previous, detail) if isinstance(previous, dict) else detail
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def _audit_detail(
    request: Request,
    response: Response,
    *,
    claims: dict[str, Any],
    action: str,
    resource: str,
) -> dict[str, Any]:
    route = request.scope.get("route")
    return {
        "who": {"actor_id": claims.get("sub"), "actor_role": claims.get("role")},
        "when": {"request_ts": now_utc().isoformat()},
        "where": {
            "path": request.url.path,
            "route": getattr(route, "path", request.url.path),
            "query": request.url.query,
            "client_ip": request.client.host if request.client is not None else None,
            "request_id": request.headers.get(REQUEST_ID_HEADER),
        },
        "what": {"action": action, "resource": resource, "method": request.method},
        "result": {
            "status_code": response.status_code,
            "outcome": _status_outcome(response.status_code),
        },
    }


class AuditMiddleware(BaseHTTPMiddleware):
    """One ``AuditLog`` row per write or download; routers name the action via ``set_audit_context``."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        if request.url.path in UNAUDITED_PATHS:
            return response

        current = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        context = current if isinstance(current, dict) else {}
        explicit = any(key in context for key in ("action", "resource", "detail"))
        if not explicit and not should_audit_request(request.method, request.url.path):
            return response

        claims_raw = getattr(request.state, "claims", {})
        claims = claims_raw if isinstance(claims_raw, dict) else {}
        action = context.get("action")
        if not isinstance(action, str):
            action = f"{request.method}:{request.url.path}"
        resource = context.get("resource")
        if not isinstance(resource, str):
            resource = default_resource(request)

        detail = _audit_detail(request, response, claims=claims, action=action, resource=resource)
        extra = context.get("detail")
        if isinstance(extra, dict):
            detail = _deep_merge(detail, extra)

        try:
            write_audit_log(
                actor_id=claims.get("sub"),
                actor_role=claims.get("role"),
                action=action,
                resource=resource,
                method=request.method,
                status_code=response.status_code,
                detail=detail,
            )
        except Exception:
            # A failed audit write never fails the request it describes.
            return response
        return response
