from __future__ import annotations

import json

import pytest

from codepulse_workers.aggregation import UserCodingAggregate, build_aggregates
from codepulse_workers.activity_contract import EventType
from codepulse_workers.heuristics import (
    MAX_SCORE,
    MIN_SCORE,
    SUGGESTION_TIMELINE,
    ImprovementSuggestions,
    calculate_approach_rating,
    calculate_quality_score,
    clamp_score,
    generate_heuristic_analysis,
    generate_improvement_suggestions,
    generate_problem_solving_style,
    generate_strengths,
    generate_weaknesses,
    render_heuristic_narrative,
)
from codepulse_workers.narrative import parse_narrative
from conftest import make_event


def _aggregate(**overrides) -> UserCodingAggregate:
    values = {
        "user_id": "u1",
        "problem_title": "Two Sum",
        "total_runs": 2,
        "total_submits": 1,
        "languages_used": ("python",),
        "most_used_language": "python",
        "recent_code_samples": (),
        "total_problems": 1,
        "problem_categories": {"Other": 3},
        "analysis_period_days": 14,
    }
    values.update(overrides)
    return UserCodingAggregate(**values)


class TestScores:
    def test_worked_example_from_events(self):
        events = [
            make_event(EventType.CODE_RUN),
            make_event(EventType.CODE_RUN),
            make_event(EventType.CODE_SUBMIT),
        ]
        data = build_aggregates("u1", events, period_days=14)[0]

        assert data.total_problems == 1
        assert data.completion_problems == 0
        assert calculate_approach_rating(data) == 3.0
        # 3.5 + 1.0 (ratio 2)
        assert calculate_quality_score(data) == 4.5

    def test_completion_bonus_needs_problem_base(self):
        data = _aggregate(completion_problems=1)
        assert calculate_quality_score(data) == 4.8

    def test_all_rating_bonuses(self):
        data = _aggregate(
            total_runs=11,
            total_submits=6,
            total_problems=6,
            languages_used=("python", "java"),
            problem_categories={"Array": 1, "String": 1, "Tree": 1, "Graph": 1},
        )
        assert calculate_approach_rating(data) == 4.6

    @pytest.mark.parametrize(
        "runs,submits,problems,expected",
        [
            (0, 0, 0, 3.5),
            (3, 1, 0, 4.0),
            (5, 1, 0, 3.5),
            (7, 1, 0, 3.2),
            (2, 2, 2, 4.8),
            (1, 1, 10, 4.5),
        ],
    )
    def test_quality_score_bands(self, runs, submits, problems, expected):
        data = _aggregate(total_runs=runs, total_submits=submits, completion_problems=problems)
        assert calculate_quality_score(data) == expected

    @pytest.mark.parametrize("value", [-10.0, 0.0, 0.99, 1.0, 3.33, 5.0, 7.5, 1e9])
    def test_clamp_stays_in_range(self, value):
        assert MIN_SCORE <= clamp_score(value) <= MAX_SCORE

    @pytest.mark.parametrize(
        "runs,submits,problems,languages",
        [(0, 0, 0, 0), (500, 1, 200, 5), (1, 500, 1, 1), (10_000, 10_000, 10_000, 30)],
    )
    def test_scores_always_in_range(self, runs, submits, problems, languages):
        data = _aggregate(
            total_runs=runs,
            total_submits=submits,
            total_problems=problems,
            languages_used=tuple(f"lang{i}" for i in range(languages)),
        )
        assert MIN_SCORE <= calculate_approach_rating(data) <= MAX_SCORE
        assert MIN_SCORE <= calculate_quality_score(data) <= MAX_SCORE


class TestText:
    def test_style_for_iterative_multi_language_solver(self):
        data = _aggregate(
            total_runs=9,
            total_submits=2,
            languages_used=("python", "go"),
            problem_categories={"Array": 1, "Tree": 1, "Graph": 1},
        )
        style = generate_problem_solving_style(data)

        assert style.startswith("Iterative problem solver")
        assert "multiple programming languages" in style
        assert "diverse categories" in style

    def test_style_for_confident_solver(self):
        assert generate_problem_solving_style(_aggregate()).startswith("Confident problem solver")

    def test_strengths(self):
        strengths = generate_strengths(_aggregate())
        assert strengths == "Active coding practice, Good solution completion rate"

    def test_weaknesses_for_worked_example(self):
        weaknesses = generate_weaknesses(_aggregate(analysis_period_days=7))
        assert weaknesses.split(", ") == [
            "Limited analysis period",
            "Need more diverse problem categories",
            "Could benefit from exploring multiple programming languages",
        ]

    def test_weaknesses_placeholder(self):
        data = _aggregate(
            analysis_period_days=30,
            languages_used=("python", "java"),
            problem_categories={"Array": 1, "String": 1, "Tree": 1},
        )
        assert generate_weaknesses(data) == "Areas for continued growth and learning"


class TestSuggestions:
    def test_beginner_suggestions(self):
        suggestions = generate_improvement_suggestions(_aggregate())

        assert suggestions.focus_areas[0].startswith("Expand into new problem categories")
        assert suggestions.focus_areas[1].startswith("Learn a second programming language")
        assert suggestions.next_steps[0] == "Complete 15-20 problems in the next month"
        assert suggestions.next_steps[-2:] == [
            "Join coding competitions or daily challenges",
            "Review and optimize your most challenging solutions",
        ]
        assert suggestions.timeline == SUGGESTION_TIMELINE

    def test_tiers_by_problem_count(self):
        medium = generate_improvement_suggestions(_aggregate(total_problems=20))
        advanced = generate_improvement_suggestions(_aggregate(total_problems=80))

        assert medium.next_steps[0] == "Progress to medium-difficulty problems"
        assert advanced.next_steps[1] == "Explore system design concepts"

    def test_run_ratio_focus_areas(self):
        many_runs = generate_improvement_suggestions(_aggregate(total_runs=9, total_submits=2))
        few_runs = generate_improvement_suggestions(_aggregate(total_runs=1, total_submits=1))

        assert any("reduce testing iterations" in item for item in many_runs.focus_areas)
        assert any("edge case" in item for item in few_runs.focus_areas)

    def test_json_round_trip(self):
        suggestions = generate_improvement_suggestions(_aggregate())
        raw = suggestions.model_dump_json()

        assert set(json.loads(raw)) == {"focus_areas", "next_steps", "resources", "timeline"}
        assert ImprovementSuggestions.model_validate_json(raw) == suggestions


class TestHeuristicNarrative:
    def test_parse_yields_the_heuristic_fields(self):
        data = _aggregate(
            total_runs=14,
            total_submits=3,
            total_problems=6,
            languages_used=("python", "java"),
            problem_categories={"Array": 4, "Tree": 2, "Graph": 1, "Other": 2},
            analysis_period_days=30,
        )
        analysis = generate_heuristic_analysis(data)

        parsed = parse_narrative(render_heuristic_narrative(data, analysis))

        assert parsed.approach_rating == analysis.approach_rating
        assert parsed.code_quality_score == analysis.code_quality_score
        assert parsed.problem_solving_style == analysis.problem_solving_style
        assert parsed.strengths == analysis.strengths
        assert parsed.weaknesses == analysis.weaknesses
        assert parsed.focus_areas == analysis.suggestions.focus_areas
        assert parsed.next_steps == analysis.suggestions.next_steps
        assert parsed.resources == analysis.suggestions.resources
        assert parsed.timeline == analysis.suggestions.timeline
