"""Analysis orchestration: validation, AI/heuristic selection, backfill, persistence."""

from __future__ import annotations

import asyncio
import json
import time
from unittest.mock import patch

import httpx
import pytest

from codepulse_workers.activity_contract import EventType
from codepulse_workers.ai_client import AIAnalysisClient, AIAnalysisUnavailable
from codepulse_workers.analysis import (
    AI_CONFIDENCE,
    DEFAULT_RECOMMENDATIONS,
    HEURISTIC_CONFIDENCE,
    HEURISTIC_ENGINE,
    analyze_user_coding_patterns,
    flatten_recommendations,
)
from codepulse_workers.config import AISettings, AnalysisSettings
from codepulse_workers.heuristics import SUGGESTION_TIMELINE, ImprovementSuggestions
from conftest import NOW, FakeAnalyzer, make_event

FULL_NARRATIVE = """\
Your approach starts with a clear plan and you converge on a working solution in very few runs.

Initial Approach Rating: 4.5/5
Code Quality Score: 4/5

### Problem-Solving Style
Plans first, then codes.

### Strengths
Clean code, Early edge-case handling

### Areas for Improvement
Explore graph problems

### Recommendations
- Study graph traversal
- Study graph traversal

### Next Steps
- Solve three BFS problems
- Study graph traversal

### Resources
- Graph algorithms handbook

### Timeline
Four weeks
"""


@pytest.fixture
def seeded_store(store):
    store.events = [
        make_event(EventType.CODE_RUN, source_code="v1"),
        make_event(EventType.CODE_RUN, source_code="v2"),
        make_event(EventType.CODE_SUBMIT, source_code="v3"),
    ]
    return store


async def _analyze(store, ai_client, *, user_id="u1", period_days=14, settings=None):
    return await analyze_user_coding_patterns(
        user_id,
        period_days,
        store=store,
        ai_client=ai_client,
        settings=settings,
        now=NOW,
    )


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", ["", "   ", None])
    async def test_blank_user_id(self, store, user_id):
        outcome = await _analyze(store, FakeAnalyzer(), user_id=user_id)

        assert outcome.success is False
        assert outcome.error_message == "User ID cannot be null or empty"
        assert outcome.error_code == "invalid_request"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("period_days", [0, -3, 366])
    async def test_period_out_of_range(self, store, period_days):
        outcome = await _analyze(store, FakeAnalyzer(), period_days=period_days)

        assert outcome.success is False
        assert outcome.error_message == "Period days must be between 1 and 365"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("period_days", [1, 365])
    async def test_period_bounds_are_inclusive(self, seeded_store, period_days):
        outcome = await _analyze(seeded_store, None, period_days=period_days)
        assert outcome.success is True


class TestNoActivity:
    @pytest.mark.asyncio
    async def test_no_events_is_terminal(self, store):
        analyzer = FakeAnalyzer(FULL_NARRATIVE)

        outcome = await _analyze(store, analyzer)

        assert outcome.success is False
        assert outcome.error_code == "no_activity"
        assert outcome.error_message == "No coding activity found for the specified period"
        assert analyzer.calls == 0
        assert store.analyses == []


class TestHeuristicFallback:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            AIAnalysisUnavailable("down", reason="retries_exhausted"),
            RuntimeError("unexpected client bug"),
            TimeoutError(),
        ],
    )
    async def test_ai_failure_falls_back(self, seeded_store, error):
        outcome = await _analyze(seeded_store, FakeAnalyzer(error=error))

        assert outcome.success is True
        assert outcome.engine == HEURISTIC_ENGINE
        assert outcome.confidence == HEURISTIC_CONFIDENCE
        assert outcome.initial_approach_rating == 3.0
        assert outcome.code_quality_score == 4.5
        assert outcome.summary.startswith("Over the last 14 days you worked on 1 problem(s)")

        record = seeded_store.analyses[0]
        assert record.ai_model_used == "heuristic-fallback"
        assert record.analysis_confidence == 0.65
        assert record.problem_solving_style
        assert record.strengths
        assert record.weaknesses
        assert record.narrative.startswith("## Coding Pattern Analysis")

    @pytest.mark.asyncio
    async def test_missing_client_uses_heuristics(self, seeded_store):
        outcome = await _analyze(seeded_store, None)

        assert outcome.engine == HEURISTIC_ENGINE
        assert outcome.recommendations[0].startswith("Expand into new problem categories")
        assert "Join coding competitions or daily challenges" in outcome.recommendations

    @pytest.mark.asyncio
    async def test_two_runs_one_submit_scores(self, seeded_store):
        outcome = await _analyze(seeded_store, None)
        record = seeded_store.analyses[0]

        assert outcome.initial_approach_rating == 3.0
        assert outcome.code_quality_score == 4.5
        assert record.most_used_language == "python"
        assert (record.total_runs, record.total_submits) == (2, 1)

    @pytest.mark.asyncio
    async def test_persisted_aggregate_totals(self, seeded_store):
        outcome = await _analyze(seeded_store, None)
        record = seeded_store.analyses[0]

        assert outcome.analysis_id == 1
        assert record.user_id == "u1"
        assert record.analysis_date == NOW.date()
        assert record.analysis_period_days == 14
        assert record.total_problems_attempted == 1
        assert record.total_runs == 2
        assert record.total_submits == 1
        assert record.unique_languages_used == 1
        assert record.most_used_language == "python"
        assert json.loads(record.problem_categories) == {"Other": 3}

        suggestions = ImprovementSuggestions.model_validate_json(record.improvement_suggestions)
        assert suggestions.timeline == SUGGESTION_TIMELINE

    @pytest.mark.asyncio
    async def test_always_timing_out_ai_finishes_in_bounded_time(self, seeded_store):
        async def hang(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200, json={})

        settings = AISettings(
            api_key="test-key",
            base_url="https://ai.test",
            timeout_seconds=0.05,
            max_retries=2,
            backoff_seconds=0.01,
        )
        client = AIAnalysisClient(
            settings,
            client=httpx.AsyncClient(
                base_url=settings.base_url, transport=httpx.MockTransport(hang)
            ),
        )

        started = time.monotonic()
        outcome = await _analyze(seeded_store, client)

        assert time.monotonic() - started < 1.0
        assert outcome.success is True
        assert outcome.engine == HEURISTIC_ENGINE


class TestAINarrative:
    @pytest.mark.asyncio
    async def test_full_narrative_is_used(self, seeded_store):
        outcome = await _analyze(seeded_store, FakeAnalyzer(FULL_NARRATIVE))

        assert outcome.success is True
        assert outcome.engine == "sonar-pro"
        assert outcome.confidence == AI_CONFIDENCE
        assert outcome.initial_approach_rating == 4.5
        assert outcome.code_quality_score == 4.0
        assert outcome.summary.startswith("Your approach starts with a clear plan")
        assert outcome.recommendations == ["Study graph traversal", "Solve three BFS problems"]

        record = seeded_store.analyses[0]
        assert record.ai_model_used == "sonar-pro"
        assert record.analysis_confidence == 0.9
        assert record.problem_solving_style == "Plans first, then codes."
        assert record.strengths == "Clean code, Early edge-case handling"
        assert record.weaknesses == "Explore graph problems"
        assert record.narrative == FULL_NARRATIVE

        stored = ImprovementSuggestions.model_validate_json(record.improvement_suggestions)
        assert stored.resources == ["Graph algorithms handbook"]
        assert stored.timeline == "Four weeks"

    @pytest.mark.asyncio
    async def test_partial_narrative_is_backfilled(self, seeded_store):
        narrative = "Initial Approach Rating: 4/5\n\nNo further structure in this reply."

        outcome = await _analyze(seeded_store, FakeAnalyzer(narrative))

        assert outcome.engine == "sonar-pro"
        assert outcome.initial_approach_rating == 4.0
        assert outcome.code_quality_score == 4.5

        record = seeded_store.analyses[0]
        assert record.strengths == "Active coding practice, Good solution completion rate"
        assert record.problem_solving_style.startswith("Confident problem solver")

        stored = ImprovementSuggestions.model_validate_json(record.improvement_suggestions)
        assert stored.next_steps[0] == "Complete 15-20 problems in the next month"
        assert stored.timeline == SUGGESTION_TIMELINE

    @pytest.mark.asyncio
    async def test_suggestions_backfill_per_sub_field(self, seeded_store):
        narrative = "### Resources\n- Book A\n"

        await _analyze(seeded_store, FakeAnalyzer(narrative))

        stored = ImprovementSuggestions.model_validate_json(
            seeded_store.analyses[0].improvement_suggestions
        )
        assert stored.resources == ["Book A"]
        assert stored.focus_areas[0].startswith("Expand into new problem categories")


class TestFailures:
    @pytest.mark.asyncio
    async def test_store_failure(self, seeded_store):
        seeded_store.fail_save = RuntimeError("db gone")

        outcome = await _analyze(seeded_store, None)

        assert outcome.success is False
        assert outcome.error_message == "Analysis failed: db gone"
        assert outcome.error_code == "analysis_failed"

    @pytest.mark.asyncio
    async def test_serialization_failure(self, seeded_store):
        with patch("codepulse_workers.analysis.json.dumps", side_effect=TypeError("not JSON")):
            outcome = await _analyze(seeded_store, None)

        assert outcome.success is False
        assert outcome.error_message == "Failed to process analysis data: not JSON"
        assert seeded_store.analyses == []


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_held_lock_short_circuits(self, seeded_store):
        seeded_store.lock_available = False
        analyzer = FakeAnalyzer(FULL_NARRATIVE)

        outcome = await _analyze(
            seeded_store, analyzer, settings=AnalysisSettings(single_flight=True)
        )

        assert outcome.success is False
        assert outcome.error_code == "analysis_in_progress"
        assert analyzer.calls == 0
        assert seeded_store.analyses == []

    @pytest.mark.asyncio
    async def test_lock_only_taken_when_enabled(self, seeded_store):
        await _analyze(seeded_store, None)
        assert seeded_store.lock_requests == []

        await _analyze(seeded_store, None, settings=AnalysisSettings(single_flight=True))
        assert seeded_store.lock_requests == ["u1"]


class TestRecommendations:
    def test_deduplicated_in_order(self):
        suggestions = ImprovementSuggestions(focus_areas=["a", "b"], next_steps=["b", "c"])
        assert flatten_recommendations(suggestions) == ["a", "b", "c"]

    def test_default_pair_when_empty(self):
        assert flatten_recommendations(ImprovementSuggestions()) == list(DEFAULT_RECOMMENDATIONS)
