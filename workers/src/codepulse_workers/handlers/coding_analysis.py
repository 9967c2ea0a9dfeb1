"""analysis.coding_patterns: produce and persist one coding-pattern analysis.

Payload: ``{"user_id": str, "period_days": int}`` (period defaults to 30).
Input errors and empty windows complete the job; a held per-user lock or a
failed write raises so the job is retried with backoff.
"""

import logging
from typing import Any

import psycopg

from ..analysis import analyze_user_coding_patterns
from ..registry import register
from ..runtime import get_runtime
from ..store import PostgresActivityStore

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_DAYS = 30

# Outcomes that will not change on retry.
_TERMINAL_ERROR_CODES = {"invalid_request", "no_activity"}


def _period_days(payload: dict[str, Any]) -> int:
    raw = payload.get("period_days", DEFAULT_PERIOD_DAYS)
    if isinstance(raw, bool):
        raise ValueError("period_days must be an integer")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"period_days must be an integer, got {raw!r}") from exc


@register("analysis.coding_patterns")
async def handle_coding_analysis(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    user_id = str(payload.get("user_id") or "").strip()
    if not user_id:
        raise ValueError("analysis.coding_patterns payload requires user_id")
    period_days = _period_days(payload)

    runtime = get_runtime()
    outcome = await analyze_user_coding_patterns(
        user_id,
        period_days,
        store=PostgresActivityStore(conn),
        ai_client=runtime.ai_client,
        settings=runtime.config.analysis,
    )
    if outcome.success:
        logger.info(
            "Coding analysis %s stored for user %s (engine=%s, confidence=%.2f)",
            outcome.analysis_id,
            user_id,
            outcome.engine,
            outcome.confidence or 0.0,
            extra={"codepulse_user_id": user_id, "codepulse_engine": outcome.engine},
        )
        return
    if outcome.error_code in _TERMINAL_ERROR_CODES:
        logger.info("Coding analysis skipped for user %s: %s", user_id, outcome.error_message)
        return
    raise RuntimeError(outcome.error_message or "coding analysis failed")
