from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

from app.api.routers import attachments, earnings, identity, notifications, tasks
from app.infra import db
from app.infra.audit import AuditMiddleware
from app.infra.db import check_db_ready
from app.infra.redis_state import check_redis_ready


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    if db.DB_AUTO_CREATE:
        db.create_schema()
    yield


app = FastAPI(
    title="team-sync",
    description="Task lifecycle, review and attachment service for Team Sync.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"])
app.include_router(attachments.router, prefix="/api/tasks", tags=["attachments"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
app.include_router(earnings.router, prefix="/api/earnings", tags=["earnings"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
