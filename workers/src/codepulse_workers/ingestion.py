"""Activity ingestion: normalize -> append -> {cache, publish}.

The store append is the only write that can fail the call. Cache and outbox
writes are bounded by a short timeout and their failures are logged, counted
and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .activity_contract import ActivityEvent, ActivityPayloadError, normalize_activity_payload
from .config import IngestionSettings
from .metrics import record_event_ingested, record_side_write_failure
from .publisher import EventPublisher, build_event_message, topic_for_event_type
from .session_cache import SessionCache, build_session_snapshot, session_cache_key
from .store import ActivityStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionResult:
    success: bool
    message: str
    event_id: int | None = None
    session_id: str | None = None
    event_type: str | None = None
    error_code: str | None = None
    cached: bool = False
    published: bool = False


async def _best_effort(
    kind: str, write: Awaitable[None], timeout: float | None, event_id: int
) -> bool:
    """Await ``write``; a ``None`` timeout leaves the bound to the writer itself."""
    try:
        async with asyncio.timeout(timeout):
            await write
        return True
    except TimeoutError:
        logger.warning(
            "%s write timed out after %ss for event %d",
            kind,
            timeout,
            event_id,
            extra={"codepulse_side_write": kind, "codepulse_event_id": event_id},
        )
    except Exception as exc:
        logger.warning(
            "%s write failed for event %d: %s",
            kind,
            event_id,
            exc,
            extra={"codepulse_side_write": kind, "codepulse_event_id": event_id},
        )
    record_side_write_failure(kind)
    return False


async def cache_session_metadata(
    cache: SessionCache,
    event: ActivityEvent,
    event_id: int,
    settings: IngestionSettings,
) -> bool:
    key = session_cache_key(event.user_id, event.problem_id)
    return await _best_effort(
        "cache",
        cache.set(key, build_session_snapshot(event, event_id), settings.session_ttl_seconds),
        settings.side_write_timeout_seconds,
        event_id,
    )


async def publish_activity(
    publisher: EventPublisher,
    event: ActivityEvent,
    event_id: int,
    settings: IngestionSettings,
) -> bool:
    topic = topic_for_event_type(event.event_type, settings.topics)
    timeout = None if publisher.enforces_timeout else settings.side_write_timeout_seconds
    return await _best_effort(
        "publish",
        publisher.publish(topic, event.session_id, build_event_message(event, event_id)),
        timeout,
        event_id,
    )


async def ingest_activity(
    payload: Any,
    *,
    store: ActivityStore,
    cache: SessionCache,
    publisher: EventPublisher,
    settings: IngestionSettings,
    now: datetime | None = None,
) -> IngestionResult:
    try:
        event = normalize_activity_payload(payload, now=now)
    except ActivityPayloadError as exc:
        logger.warning("Rejected activity payload: %s", exc)
        return IngestionResult(
            success=False,
            message=f"Invalid request data: {exc}",
            error_code=exc.code,
        )

    try:
        event_id = await store.append(event)
    except Exception as exc:
        logger.exception(
            "Failed to persist %s event for user %s",
            event.event_type.value,
            event.user_id,
            extra={"codepulse_user_id": event.user_id},
        )
        return IngestionResult(
            success=False,
            message=f"Failed to process activity: {exc}",
            session_id=event.session_id,
            event_type=event.event_type.value,
            error_code="persistence_failed",
        )

    record_event_ingested()
    cached = await cache_session_metadata(cache, event, event_id, settings)
    published = await publish_activity(publisher, event, event_id, settings)

    logger.info(
        "Processed %s event for user %s on problem %s (event_id=%d)",
        event.event_type.value,
        event.user_id,
        event.problem_id,
        event_id,
        extra={
            "codepulse_event_id": event_id,
            "codepulse_user_id": event.user_id,
            "codepulse_session_id": event.session_id,
        },
    )
    return IngestionResult(
        success=True,
        message="Activity processed successfully",
        event_id=event_id,
        session_id=event.session_id,
        event_type=event.event_type.value,
        cached=cached,
        published=published,
    )
