from __future__ import annotations

from sqlmodel import Session, select

from app.domain.models import Earning, Task
from app.infra.db import get_engine


class EarningService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def earnings_for_approval(task: Task, approved_by: str) -> list[Earning]:
        """One earning per assignee when the approved task carries a positive rate."""
        if not task.assigned_to or not task.task_rate or task.task_rate <= 0:
            return []
        return [
            Earning(
                user_id=assignee_id,
                task_id=task.id,
                amount=float(task.task_rate),
                approved_by=approved_by,
            )
            for assignee_id in dict.fromkeys(task.assigned_to)
        ]

    def list_earnings(self, user_id: str) -> list[Earning]:
        with self._session() as session:
            rows = list(session.exec(select(Earning).where(Earning.user_id == user_id)).all())
            return sorted(rows, key=lambda item: item.created_at, reverse=True)

