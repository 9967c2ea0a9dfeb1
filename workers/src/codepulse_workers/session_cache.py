"""Active-session metadata cache.

Snapshots never contain source code, only whether code was present and how
long it was. Entries expire on their own; nothing reads them as truth.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol

import redis.asyncio as redis

from .activity_contract import ActivityEvent

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session"


class SessionCache(Protocol):
    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> dict[str, Any] | None: ...


def session_cache_key(user_id: str, problem_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}:{user_id}:{problem_id}"


def build_session_snapshot(event: ActivityEvent, event_id: int) -> dict[str, Any]:
    return {
        "event_id": event_id,
        "event_type": event.event_type.value,
        "session_id": event.session_id,
        "last_activity": int(time.time() * 1000),
        "language": event.language,
        "problem_id": event.problem_id,
        "problem_title": event.problem_title,
        "problem_url": event.problem_url,
        "platform_username": event.platform_username,
        "platform": event.platform,
        "has_code": event.has_code,
        "code_length": event.code_length,
    }


class RedisSessionCache:
    """``SessionCache`` storing JSON strings with a Redis expiry."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 0.5) -> "RedisSessionCache":
        client = redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        await self._client.set(key, json.dumps(value, default=str), ex=ttl_seconds)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._client.get(key)
        if raw is None:
            return None
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable session snapshot at %s", key)
            return None
        return decoded if isinstance(decoded, dict) else None

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


async def get_active_session(
    cache: SessionCache,
    user_id: str,
    problem_id: str,
) -> dict[str, Any] | None:
    key = session_cache_key(user_id, problem_id)
    session = await cache.get(key)
    logger.debug("Active session lookup %s: %s", key, "found" if session else "not found")
    return session
