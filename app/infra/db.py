from __future__ import annotations

import os

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://teamsync:teamsync@db:5432/team_sync",
)
DB_AUTO_CREATE = os.getenv("DB_AUTO_CREATE", "false").strip().lower() in {"1", "true", "yes"}

engine = create_engine(DATABASE_URL, pool_pre_ping=True)


def get_engine() -> Engine:
    return engine


def create_schema(target: Engine | None = None) -> None:
    # Local/dev shortcut; deployed databases are managed by alembic.
    from app.domain import models  # noqa: F401

    SQLModel.metadata.create_all(target or get_engine())


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
