"""Coding-pattern analysis orchestration.

VALIDATE -> AGGREGATE -> AI_ATTEMPT (-> HEURISTIC on any failure)
-> EXTRACT_FIELDS -> PERSIST -> RESPOND.

Every path returns an ``AnalysisOutcome``; nothing propagates to the caller.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Protocol

from .aggregation import UserCodingAggregate, aggregate_user_activity, combine_aggregates
from .config import AnalysisSettings
from .heuristics import (
    MAX_SCORE,
    MIN_SCORE,
    HeuristicAnalysis,
    ImprovementSuggestions,
    generate_heuristic_analysis,
    render_heuristic_narrative,
)
from .metrics import record_analysis
from .narrative import extract_summary, parse_narrative
from .store import ActivityStore, AnalysisRecord

logger = logging.getLogger(__name__)

HEURISTIC_ENGINE = "heuristic-fallback"
AI_CONFIDENCE = 0.90
HEURISTIC_CONFIDENCE = 0.65
MIN_PERIOD_DAYS = 1
MAX_PERIOD_DAYS = 365
DEFAULT_RECOMMENDATIONS = (
    "Continue practicing regularly",
    "Focus on problem-solving patterns",
)


class NarrativeAnalyzer(Protocol):
    @property
    def model(self) -> str: ...

    async def analyze(self, aggregates: Sequence[UserCodingAggregate]) -> str: ...


class AnalysisSerializationError(Exception):
    pass


@dataclass(frozen=True)
class AnalysisOutcome:
    success: bool
    summary: str | None = None
    recommendations: list[str] = field(default_factory=list)
    initial_approach_rating: float | None = None
    code_quality_score: float | None = None
    error_message: str | None = None
    error_code: str | None = None
    analysis_id: int | None = None
    engine: str | None = None
    confidence: float | None = None

    @classmethod
    def failure(cls, message: str, code: str) -> "AnalysisOutcome":
        return cls(success=False, error_message=message, error_code=code)


@dataclass(frozen=True)
class ExtractedFields:
    approach_rating: float
    code_quality_score: float
    problem_solving_style: str
    strengths: str
    weaknesses: str
    suggestions: ImprovementSuggestions


def validate_request(user_id: str | None, period_days: int) -> str | None:
    if user_id is None or not user_id.strip():
        return "User ID cannot be null or empty"
    if period_days < MIN_PERIOD_DAYS or period_days > MAX_PERIOD_DAYS:
        return f"Period days must be between {MIN_PERIOD_DAYS} and {MAX_PERIOD_DAYS}"
    return None


def _bounded(value: float) -> float:
    return min(MAX_SCORE, max(MIN_SCORE, value))


def extract_fields(narrative: str, fallback: HeuristicAnalysis) -> ExtractedFields:
    """Parse what the narrative offers; take the heuristic value for each miss."""
    parsed = parse_narrative(narrative)
    heuristic = fallback.suggestions
    suggestions = ImprovementSuggestions(
        focus_areas=parsed.focus_areas or list(heuristic.focus_areas),
        next_steps=parsed.next_steps or list(heuristic.next_steps),
        resources=parsed.resources or list(heuristic.resources),
        timeline=parsed.timeline or heuristic.timeline,
    )
    return ExtractedFields(
        approach_rating=_bounded(
            parsed.approach_rating
            if parsed.approach_rating is not None
            else fallback.approach_rating
        ),
        code_quality_score=_bounded(
            parsed.code_quality_score
            if parsed.code_quality_score is not None
            else fallback.code_quality_score
        ),
        problem_solving_style=parsed.problem_solving_style or fallback.problem_solving_style,
        strengths=parsed.strengths or fallback.strengths,
        weaknesses=parsed.weaknesses or fallback.weaknesses,
        suggestions=suggestions,
    )


def flatten_recommendations(suggestions: ImprovementSuggestions) -> list[str]:
    flattened: list[str] = []
    for item in [*suggestions.focus_areas, *suggestions.next_steps]:
        if item not in flattened:
            flattened.append(item)
    return flattened or list(DEFAULT_RECOMMENDATIONS)


def build_analysis_record(
    summary: UserCodingAggregate,
    fields: ExtractedFields,
    *,
    engine: str,
    confidence: float,
    narrative: str,
    analysis_date: date,
) -> AnalysisRecord:
    try:
        categories_json = json.dumps(summary.problem_categories, sort_keys=True)
        suggestions_json = fields.suggestions.model_dump_json()
    except (TypeError, ValueError) as exc:
        raise AnalysisSerializationError(str(exc)) from exc

    return AnalysisRecord(
        user_id=summary.user_id,
        analysis_date=analysis_date,
        analysis_period_days=summary.analysis_period_days,
        total_problems_attempted=summary.total_problems,
        total_runs=summary.total_runs,
        total_submits=summary.total_submits,
        unique_languages_used=summary.language_count,
        most_used_language=summary.most_used_language,
        problem_categories=categories_json,
        initial_approach_rating=fields.approach_rating,
        code_quality_score=fields.code_quality_score,
        problem_solving_style=fields.problem_solving_style,
        strengths=fields.strengths,
        weaknesses=fields.weaknesses,
        improvement_suggestions=suggestions_json,
        ai_model_used=engine,
        analysis_confidence=confidence,
        narrative=narrative,
    )


async def _narrative_from_ai(
    ai_client: NarrativeAnalyzer | None,
    aggregates: Sequence[UserCodingAggregate],
) -> tuple[str, str, float] | None:
    if ai_client is None:
        return None
    user_id = aggregates[0].user_id
    try:
        narrative = await ai_client.analyze(aggregates)
    except Exception as exc:
        logger.warning(
            "AI analysis failed for user %s, using heuristic fallback: %s",
            user_id,
            exc,
            extra={"codepulse_user_id": user_id, "codepulse_engine": HEURISTIC_ENGINE},
        )
        return None
    return narrative, ai_client.model, AI_CONFIDENCE


async def analyze_user_coding_patterns(
    user_id: str,
    period_days: int,
    *,
    store: ActivityStore,
    ai_client: NarrativeAnalyzer | None,
    settings: AnalysisSettings | None = None,
    now: datetime | None = None,
) -> AnalysisOutcome:
    settings = settings or AnalysisSettings()
    error = validate_request(user_id, period_days)
    if error is not None:
        return AnalysisOutcome.failure(error, "invalid_request")

    now = now or datetime.now(UTC)
    logger.info(
        "Starting analysis for user %s (period: %d days)",
        user_id,
        period_days,
        extra={"codepulse_user_id": user_id},
    )

    try:
        if settings.single_flight and not await store.try_lock_user(user_id):
            return AnalysisOutcome.failure(
                "An analysis for this user is already running", "analysis_in_progress"
            )

        aggregates = await aggregate_user_activity(
            store,
            user_id,
            period_days,
            now=now,
            per_title_totals=settings.per_title_totals,
        )
        if not aggregates:
            logger.warning(
                "No coding activity found for user %s in the last %d days", user_id, period_days
            )
            return AnalysisOutcome.failure(
                "No coding activity found for the specified period", "no_activity"
            )

        summary = combine_aggregates(aggregates, per_title_totals=settings.per_title_totals)
        heuristic = generate_heuristic_analysis(summary)

        ai_result = await _narrative_from_ai(ai_client, aggregates)
        if ai_result is not None:
            narrative, engine, confidence = ai_result
        else:
            narrative = render_heuristic_narrative(summary, heuristic)
            engine, confidence = HEURISTIC_ENGINE, HEURISTIC_CONFIDENCE

        fields = extract_fields(narrative, heuristic)
        record = build_analysis_record(
            summary,
            fields,
            engine=engine,
            confidence=confidence,
            narrative=narrative,
            analysis_date=now.date(),
        )
        analysis_id = await store.save_analysis(record)
    except AnalysisSerializationError as exc:
        logger.error("Serialization error for user %s: %s", user_id, exc)
        return AnalysisOutcome.failure(
            f"Failed to process analysis data: {exc}", "serialization_failed"
        )
    except Exception as exc:
        logger.exception("Unexpected error analyzing user %s", user_id)
        return AnalysisOutcome.failure(f"Analysis failed: {exc}", "analysis_failed")

    record_analysis(engine)
    logger.info(
        "Analysis saved with id %d (engine=%s)",
        analysis_id,
        engine,
        extra={"codepulse_user_id": user_id, "codepulse_engine": engine},
    )
    return AnalysisOutcome(
        success=True,
        analysis_id=analysis_id,
        summary=extract_summary(narrative),
        recommendations=flatten_recommendations(fields.suggestions),
        initial_approach_rating=fields.approach_rating,
        code_quality_score=fields.code_quality_score,
        engine=engine,
        confidence=confidence,
    )
