"""Activity fan-out through a PostgreSQL outbox.

Each message lands in ``activity_outbox`` and is announced with NOTIFY on the
topic channel. Downstream consumers read per ``partition_key`` (the session
id) in outbox id order.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .activity_contract import ActivityEvent, EventType
from .config import TopicNames

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    # When true, publish bounds its own duration and must not be cancelled.
    enforces_timeout: bool

    async def publish(self, topic: str, key: str, message: dict[str, Any]) -> None: ...


def topic_for_event_type(event_type: EventType | str, topics: TopicNames) -> str:
    """Finite lookup; anything unmapped goes to the progress topic."""
    table: dict[str, str] = {
        EventType.SESSION_STARTED: topics.started,
        EventType.SESSION_PROGRESS: topics.progress,
        EventType.CODE_RUN: topics.progress,
        EventType.CODE_SUBMIT: topics.submitted,
        EventType.SESSION_ENDED: topics.ended,
    }
    return table.get(str(event_type), topics.progress)


def build_event_message(event: ActivityEvent, event_id: int) -> dict[str, Any]:
    now = datetime.now(UTC)
    return {
        "event_type": event.event_type.value,
        "event_id": event_id,
        "session_id": event.session_id,
        "data": {**event.metadata(), "source_code": event.source_code},
        "timestamp": int(now.timestamp() * 1000),
        "published_at": now.isoformat(),
    }


class PostgresOutboxPublisher:
    """``EventPublisher`` writing to the outbox inside a savepoint.

    A failed publish rolls back only its own savepoint, so the caller's
    transaction (and the event row in it) survives. The write shares the
    caller's connection, so it is bounded by a server-side
    ``statement_timeout`` rather than by cancelling the coroutine, which
    would leave the connection busy with an unfinished statement.
    """

    enforces_timeout = True

    def __init__(
        self,
        conn: psycopg.AsyncConnection[Any],
        *,
        statement_timeout_seconds: float | None = None,
    ) -> None:
        self._conn = conn
        self._statement_timeout_ms = (
            max(1, int(statement_timeout_seconds * 1000))
            if statement_timeout_seconds is not None
            else None
        )

    async def publish(self, topic: str, key: str, message: dict[str, Any]) -> None:
        async with self._conn.transaction():
            async with self._conn.cursor(row_factory=dict_row) as cur:
                previous_timeout = None
                if self._statement_timeout_ms is not None:
                    await cur.execute("SELECT current_setting('statement_timeout') AS previous")
                    row = await cur.fetchone()
                    previous_timeout = row["previous"] if row else "0"
                    await cur.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (f"{self._statement_timeout_ms}ms",),
                    )

                await cur.execute(
                    """
                    INSERT INTO activity_outbox (topic, partition_key, message)
                    VALUES (%s, %s, %s)
                    RETURNING id
                    """,
                    (topic, key, Json(message)),
                )
                row = await cur.fetchone()
                outbox_id = row["id"] if row else None
                await cur.execute(
                    "SELECT pg_notify(%s, %s)",
                    (topic, json.dumps({"outbox_id": outbox_id, "key": key})),
                )

                # SET LOCAL semantics outlive a released savepoint.
                if previous_timeout is not None:
                    await cur.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (previous_timeout,),
                    )
        logger.info("Published %s to topic %s with key %s", message.get("event_type"), topic, key)
