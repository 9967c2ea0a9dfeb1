"""activity.ingest: record one client activity payload.

Rejected payloads complete the job with a warning; a failed store write raises
so the worker rolls back and retries.
"""

import logging
from typing import Any

import psycopg

from ..ingestion import ingest_activity
from ..publisher import PostgresOutboxPublisher
from ..registry import register
from ..runtime import get_runtime
from ..store import PostgresActivityStore

logger = logging.getLogger(__name__)


@register("activity.ingest")
async def handle_activity_ingest(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    runtime = get_runtime()
    settings = runtime.config.ingestion
    result = await ingest_activity(
        payload,
        store=PostgresActivityStore(conn),
        cache=runtime.cache,
        publisher=PostgresOutboxPublisher(
            conn, statement_timeout_seconds=settings.side_write_timeout_seconds
        ),
        settings=settings,
    )
    if result.success:
        return
    if result.error_code == "invalid_payload":
        logger.warning("Dropping activity payload: %s", result.message)
        return
    raise RuntimeError(result.message)
