from __future__ import annotations

import os
from collections.abc import Iterable
from uuid import uuid4

from redis.exceptions import RedisError

from app.domain.models import NotificationRead, Task, now_utc
from app.infra import redis_state

NOTIFICATION_INBOX_LIMIT = int(os.getenv("NOTIFICATION_INBOX_LIMIT", "100"))


class NotificationService:
    def __init__(self, *, inbox_limit: int | None = None) -> None:
        self._inbox_limit = inbox_limit or NOTIFICATION_INBOX_LIMIT

    def notify(
        self,
        user_ids: Iterable[str],
        *,
        kind: str,
        task: Task,
        actor_id: str,
        message: str,
    ) -> bool:
        recipients = [item for item in dict.fromkeys(user_ids) if item and item != actor_id]
        if not recipients:
            return True
        try:
            redis = redis_state.get_redis()
            for user_id in recipients:
                notification = NotificationRead(
                    id=str(uuid4()),
                    kind=kind,
                    task_id=task.id,
                    task_name=task.name,
                    actor_id=actor_id,
                    message=message,
                    created_at=now_utc(),
                )
                key = redis_state.inbox_key(user_id)
                redis.lpush(key, notification.model_dump_json())
                redis.ltrim(key, 0, self._inbox_limit - 1)
        except RedisError:
            # Inbox delivery is best effort; the task write is already committed.
            return False
        return True

    def list_notifications(self, user_id: str, *, limit: int = 50) -> list[NotificationRead]:
        redis = redis_state.get_redis()
        raw_items = redis.lrange(redis_state.inbox_key(user_id), 0, max(limit, 1) - 1)
        notifications: list[NotificationRead] = []
        for raw in raw_items:
            if isinstance(raw, bytes):
                raw = raw.decode()
            if not isinstance(raw, str):
                continue
            notifications.append(NotificationRead.model_validate_json(raw))
        return notifications
