"""Per-problem coding statistics over a trailing window.

Run and submit totals are counted over the whole window and repeated on every
per-title aggregate unless ``per_title_totals`` is set. Language, category and
problem counts are always window-wide. ``completion_problems`` is not filled
in here, so the quality completion bonus never applies to aggregation output.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .activity_contract import ActivityEvent, EventType
from .store import ActivityStore

logger = logging.getLogger(__name__)

CODING_EVENT_TYPES: tuple[EventType, ...] = (EventType.CODE_RUN, EventType.CODE_SUBMIT)
UNKNOWN_LANGUAGE = "unknown"
OTHER_CATEGORY = "Other"

# Ordered: the first matching rule wins.
CATEGORY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Array", ("array", "list")),
    ("String", ("string",)),
    ("Tree", ("tree", "binary")),
    ("Graph", ("graph", "bfs", "dfs")),
    ("Dynamic Programming", ("dynamic", "dp")),
    ("Sorting", ("sort",)),
    ("Hash Table", ("hash", "map")),
)


@dataclass(frozen=True)
class UserCodingAggregate:
    user_id: str
    problem_title: str
    total_runs: int
    total_submits: int
    languages_used: tuple[str, ...]
    most_used_language: str
    recent_code_samples: tuple[str, ...]
    total_problems: int
    problem_categories: dict[str, int] = field(default_factory=dict)
    analysis_period_days: int = 0
    # Denominator of the quality completion bonus. Aggregation leaves it at 0.
    completion_problems: int = 0

    @property
    def category_count(self) -> int:
        return len(self.problem_categories)

    @property
    def language_count(self) -> int:
        return len(self.languages_used)


def classify_problem_category(title: str | None) -> str:
    if not title:
        return OTHER_CATEGORY
    lowered = title.lower()
    for category, keywords in CATEGORY_RULES:
        if any(keyword in lowered for keyword in keywords):
            return category
    return OTHER_CATEGORY


def categorize_problems(events: Iterable[ActivityEvent]) -> dict[str, int]:
    categories: dict[str, int] = {}
    for event in events:
        if event.problem_title is None:
            continue
        category = classify_problem_category(event.problem_title)
        categories[category] = categories.get(category, 0) + 1
    return categories


def language_counts(events: Iterable[ActivityEvent]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for event in events:
        language = event.language
        if not language or language == UNKNOWN_LANGUAGE:
            continue
        counts[language] = counts.get(language, 0) + 1
    return counts


def most_used_language(counts: dict[str, int]) -> str:
    """Arg-max by count; ties keep the first language encountered."""
    best = UNKNOWN_LANGUAGE
    best_count = 0
    for language, count in counts.items():
        if count > best_count:
            best, best_count = language, count
    return best


def _title_key(event: ActivityEvent) -> str:
    return event.problem_title or event.problem_id


def group_code_samples(events: Iterable[ActivityEvent]) -> dict[str, list[str]]:
    samples: dict[str, list[str]] = {}
    for event in events:
        samples.setdefault(_title_key(event), []).append(event.source_code or "")
    return samples


def _count_type(events: Iterable[ActivityEvent], event_type: EventType) -> int:
    return sum(1 for event in events if event.event_type == event_type)


def build_aggregates(
    user_id: str,
    events: Sequence[ActivityEvent],
    *,
    period_days: int,
    per_title_totals: bool = False,
) -> list[UserCodingAggregate]:
    if not events:
        return []

    counts = language_counts(events)
    languages = tuple(counts)
    top_language = most_used_language(counts)
    categories = categorize_problems(events)
    total_problems = len({event.problem_id for event in events})
    window_runs = _count_type(events, EventType.CODE_RUN)
    window_submits = _count_type(events, EventType.CODE_SUBMIT)

    aggregates: list[UserCodingAggregate] = []
    for title, samples in group_code_samples(events).items():
        if per_title_totals:
            title_events = [e for e in events if _title_key(e) == title]
            runs = _count_type(title_events, EventType.CODE_RUN)
            submits = _count_type(title_events, EventType.CODE_SUBMIT)
        else:
            runs, submits = window_runs, window_submits
        aggregates.append(
            UserCodingAggregate(
                user_id=user_id,
                problem_title=title,
                total_runs=runs,
                total_submits=submits,
                languages_used=languages,
                most_used_language=top_language,
                recent_code_samples=tuple(samples),
                total_problems=total_problems,
                problem_categories=dict(categories),
                analysis_period_days=period_days,
            )
        )
    return aggregates


def combine_aggregates(
    aggregates: Sequence[UserCodingAggregate],
    *,
    per_title_totals: bool = False,
) -> UserCodingAggregate:
    """Collapse per-title aggregates into one window-level record.

    With coupled totals every record already carries the window totals, so
    the first one is used as-is; per-title totals are summed.
    """
    if not aggregates:
        raise ValueError("cannot combine an empty aggregate list")
    first = aggregates[0]
    if not per_title_totals:
        runs, submits = first.total_runs, first.total_submits
    else:
        runs = sum(a.total_runs for a in aggregates)
        submits = sum(a.total_submits for a in aggregates)
    return UserCodingAggregate(
        user_id=first.user_id,
        problem_title="*",
        total_runs=runs,
        total_submits=submits,
        languages_used=first.languages_used,
        most_used_language=first.most_used_language,
        recent_code_samples=(),
        total_problems=first.total_problems,
        problem_categories=dict(first.problem_categories),
        analysis_period_days=first.analysis_period_days,
        completion_problems=first.completion_problems,
    )


async def aggregate_user_activity(
    store: ActivityStore,
    user_id: str,
    period_days: int,
    *,
    now: datetime | None = None,
    per_title_totals: bool = False,
) -> list[UserCodingAggregate]:
    since = (now or datetime.now(UTC)) - timedelta(days=period_days)
    logger.info("Aggregating data for user %s (last %d days)", user_id, period_days)

    events = await store.query(user_id, since, CODING_EVENT_TYPES)
    stats = build_user_coding_stats(events)
    logger.info(
        "User %s: %d events (%d runs, %d submits) across %d problem(s)",
        user_id,
        stats["total_events"],
        stats["run_count"],
        stats["submit_count"],
        stats["unique_problems"],
        extra={"codepulse_user_id": user_id},
    )
    aggregates = build_aggregates(
        user_id,
        events,
        period_days=period_days,
        per_title_totals=per_title_totals,
    )
    for aggregate in aggregates:
        logger.debug(
            "Aggregated %s: %d runs, %d submits for user %s",
            aggregate.problem_title,
            aggregate.total_runs,
            aggregate.total_submits,
            user_id,
        )
    return aggregates


def build_user_coding_stats(events: Sequence[ActivityEvent]) -> dict[str, Any]:
    languages: list[str | None] = []
    for event in events:
        if event.language not in languages:
            languages.append(event.language)
    return {
        "total_events": len(events),
        "run_count": _count_type(events, EventType.CODE_RUN),
        "submit_count": _count_type(events, EventType.CODE_SUBMIT),
        "unique_problems": len({event.problem_id for event in events}),
        "languages_used": languages,
    }
