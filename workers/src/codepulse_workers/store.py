"""PostgreSQL system of record for activity events and analysis results.

Events are append-only: there is no update or delete path. Source code lives
in its own column; ``event_data`` carries the metadata view only.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .activity_contract import ActivityEvent, EventType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisRecord:
    """Composite analysis row. ``problem_categories`` and
    ``improvement_suggestions`` are already JSON-encoded."""

    user_id: str
    analysis_date: date
    analysis_period_days: int
    total_problems_attempted: int
    total_runs: int
    total_submits: int
    unique_languages_used: int
    most_used_language: str
    problem_categories: str
    initial_approach_rating: float
    code_quality_score: float
    problem_solving_style: str
    strengths: str
    weaknesses: str
    improvement_suggestions: str
    ai_model_used: str
    analysis_confidence: float
    narrative: str


class ActivityStore(Protocol):
    async def append(self, event: ActivityEvent) -> int: ...

    async def get(self, event_id: int) -> ActivityEvent | None: ...

    async def query(
        self,
        user_id: str,
        since: datetime,
        event_types: Sequence[EventType] | None = None,
    ) -> list[ActivityEvent]: ...

    async def save_analysis(self, record: AnalysisRecord) -> int: ...

    async def try_lock_user(self, user_id: str) -> bool: ...


_EVENT_COLUMNS = """
    id, event_type, user_id, problem_id, platform, session_id, source_code,
    language, problem_title, problem_url, platform_username, extension_version,
    event_data, created_at, processed_at
"""


def _row_to_event(row: dict[str, Any]) -> ActivityEvent:
    event_data = row.get("event_data") or {}
    return ActivityEvent(
        event_id=int(row["id"]),
        event_type=EventType(row["event_type"]),
        user_id=row["user_id"],
        problem_id=row["problem_id"],
        platform=row["platform"],
        session_id=row["session_id"],
        source_code=row.get("source_code"),
        language=row.get("language"),
        problem_title=row.get("problem_title"),
        problem_url=row.get("problem_url"),
        platform_username=row.get("platform_username"),
        extension_version=row["extension_version"],
        client_timestamp=event_data.get("client_timestamp"),
        created_at=row["created_at"],
        processed_at=row["processed_at"],
    )


class PostgresActivityStore:
    """``ActivityStore`` over one async psycopg connection.

    Transaction boundaries belong to the caller (the worker wraps each job in
    one transaction).
    """

    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self._conn = conn

    async def append(self, event: ActivityEvent) -> int:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                INSERT INTO coding_session_events (
                    event_type, user_id, problem_id, platform, session_id,
                    source_code, language, problem_title, problem_url,
                    platform_username, extension_version, event_data,
                    created_at, processed_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    event.event_type.value,
                    event.user_id,
                    event.problem_id,
                    event.platform,
                    event.session_id,
                    event.source_code,
                    event.language,
                    event.problem_title,
                    event.problem_url,
                    event.platform_username,
                    event.extension_version,
                    Json(event.metadata()),
                    event.created_at,
                    event.processed_at,
                ),
            )
            row = await cur.fetchone()
        if row is None:
            raise RuntimeError("event insert returned no id")
        return int(row["id"])

    async def get(self, event_id: int) -> ActivityEvent | None:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                f"SELECT {_EVENT_COLUMNS} FROM coding_session_events WHERE id = %s",
                (event_id,),
            )
            row = await cur.fetchone()
        return _row_to_event(row) if row is not None else None

    async def query(
        self,
        user_id: str,
        since: datetime,
        event_types: Sequence[EventType] | None = None,
    ) -> list[ActivityEvent]:
        sql = f"""
            SELECT {_EVENT_COLUMNS}
            FROM coding_session_events
            WHERE user_id = %s
              AND created_at >= %s
        """
        params: list[Any] = [user_id, since]
        if event_types:
            sql += " AND event_type = ANY(%s)"
            params.append([et.value for et in event_types])
        sql += " ORDER BY created_at ASC, id ASC"

        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(sql, params)
            rows = await cur.fetchall()
        return [_row_to_event(row) for row in rows]

    async def save_analysis(self, record: AnalysisRecord) -> int:
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                INSERT INTO coding_analysis_results (
                    user_id, analysis_date, analysis_period_days,
                    total_problems_attempted, total_runs, total_submits,
                    unique_languages_used, most_used_language, problem_categories,
                    initial_approach_rating, code_quality_score,
                    problem_solving_style, strengths, weaknesses,
                    improvement_suggestions, ai_model_used, analysis_confidence,
                    narrative
                )
                VALUES (
                    %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb,
                    %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s
                )
                RETURNING id
                """,
                (
                    record.user_id,
                    record.analysis_date,
                    record.analysis_period_days,
                    record.total_problems_attempted,
                    record.total_runs,
                    record.total_submits,
                    record.unique_languages_used,
                    record.most_used_language,
                    record.problem_categories,
                    record.initial_approach_rating,
                    record.code_quality_score,
                    record.problem_solving_style,
                    record.strengths,
                    record.weaknesses,
                    record.improvement_suggestions,
                    record.ai_model_used,
                    record.analysis_confidence,
                    record.narrative,
                ),
            )
            row = await cur.fetchone()
        if row is None:
            raise RuntimeError("analysis insert returned no id")
        return int(row["id"])

    async def try_lock_user(self, user_id: str) -> bool:
        """Transaction-scoped advisory lock; released on commit/rollback."""
        async with self._conn.cursor() as cur:
            await cur.execute(
                "SELECT pg_try_advisory_xact_lock(hashtext(%s))",
                (user_id,),
            )
            row = await cur.fetchone()
        acquired = bool(row and row[0])
        if not acquired:
            logger.info("Analysis lock for user %s held elsewhere", user_id)
        return acquired
