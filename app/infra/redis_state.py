from __future__ import annotations

import os
from functools import lru_cache

from redis import Redis

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
NOTIFICATION_KEY_PREFIX = os.getenv("NOTIFICATION_KEY_PREFIX", "notifications")


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True, socket_timeout=2)


def inbox_key(user_id: str) -> str:
    return f"{NOTIFICATION_KEY_PREFIX}:{user_id}"


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False
