"""Deterministic coding-pattern analysis.

Produces the same structured fields an AI narrative is parsed into, from one
aggregate record alone. No I/O, no randomness.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, Field

from .aggregation import UserCodingAggregate

MIN_SCORE = 1.0
MAX_SCORE = 5.0

SUGGESTION_TIMELINE = "2-4 weeks for immediate improvements, 2-3 months for advanced skills"


class ImprovementSuggestions(BaseModel):
    focus_areas: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)
    timeline: str = ""


@dataclass(frozen=True)
class HeuristicAnalysis:
    approach_rating: float
    code_quality_score: float
    problem_solving_style: str
    strengths: str
    weaknesses: str
    suggestions: ImprovementSuggestions


def clamp_score(value: float) -> float:
    return round(min(MAX_SCORE, max(MIN_SCORE, value)), 1)


def _run_submit_ratio(data: UserCodingAggregate) -> float:
    if data.total_submits <= 0:
        return 0.0
    return data.total_runs / data.total_submits


def calculate_approach_rating(data: UserCodingAggregate) -> float:
    rating = 3.0
    if data.total_runs > 10:
        rating += 0.5
    if data.total_submits > 5:
        rating += 0.3
    if data.total_problems > 5:
        rating += 0.4
    if data.language_count > 1:
        rating += 0.2
    if data.category_count > 3:
        rating += 0.2
    return clamp_score(rating)


def calculate_quality_score(data: UserCodingAggregate) -> float:
    score = 3.5
    if data.total_submits > 0:
        ratio = data.total_runs / data.total_submits
        if ratio <= 2:
            score += 1.0
        elif ratio <= 3:
            score += 0.5
        elif ratio > 6:
            score -= 0.3
    if data.completion_problems > 0 and data.total_submits > 0:
        if data.total_submits / data.completion_problems > 0.7:
            score += 0.3
    return clamp_score(score)


def generate_problem_solving_style(data: UserCodingAggregate) -> str:
    parts: list[str] = []
    if data.total_runs > data.total_submits * 2:
        parts.append("Iterative problem solver who thoroughly tests code before submission.")
    else:
        parts.append("Confident problem solver with a focused and efficient approach.")
    if data.language_count > 1:
        parts.append("Demonstrates versatility by using multiple programming languages.")
    if data.category_count > 2:
        parts.append("Shows breadth in problem-solving by tackling diverse categories.")
    return " ".join(parts)


def generate_strengths(data: UserCodingAggregate) -> str:
    strengths = ["Active coding practice"]
    if data.total_runs > 5:
        strengths.append("Regular practice habits")
    if data.language_count > 1:
        strengths.append("Language versatility")
    if data.category_count > 3:
        strengths.append("Diverse problem-solving approach")
    if data.total_submits > data.total_runs * 0.3:
        strengths.append("Good solution completion rate")
    return ", ".join(strengths)


def generate_weaknesses(data: UserCodingAggregate) -> str:
    weaknesses: list[str] = []
    if data.analysis_period_days < 14:
        weaknesses.append("Limited analysis period")
    if data.category_count <= 2:
        weaknesses.append("Need more diverse problem categories")
    if data.language_count == 1:
        weaknesses.append("Could benefit from exploring multiple programming languages")
    if data.total_runs > data.total_submits * 5:
        weaknesses.append(
            "High run-to-submit ratio suggests room for improvement in solution confidence"
        )
    if not weaknesses:
        weaknesses.append("Areas for continued growth and learning")
    return ", ".join(weaknesses)


def generate_improvement_suggestions(data: UserCodingAggregate) -> ImprovementSuggestions:
    focus_areas: list[str] = []
    next_steps: list[str] = []
    resources: list[str] = []

    if data.category_count <= 2:
        focus_areas.append("Expand into new problem categories (Graphs, Dynamic Programming, Trees)")
        resources.append("LeetCode problem categories guide")

    if data.language_count == 1:
        focus_areas.append("Learn a second programming language (Python/Java/C++)")
        resources.append("Multi-language algorithm practice")

    ratio = _run_submit_ratio(data)
    if ratio > 4:
        focus_areas.append("Improve initial problem analysis to reduce testing iterations")
        resources.append("Problem-solving frameworks and pattern recognition")
    elif ratio < 1.5:
        focus_areas.append("Increase code testing and edge case consideration")

    if data.total_problems < 10:
        next_steps.append("Complete 15-20 problems in the next month")
        next_steps.append("Focus on fundamental data structures (Arrays, LinkedLists, Stacks)")
    elif data.total_problems < 50:
        next_steps.append("Progress to medium-difficulty problems")
        next_steps.append("Study time and space complexity analysis")
    else:
        next_steps.append("Tackle hard problems and optimize existing solutions")
        next_steps.append("Explore system design concepts")

    next_steps.append("Join coding competitions or daily challenges")
    next_steps.append("Review and optimize your most challenging solutions")

    return ImprovementSuggestions(
        focus_areas=focus_areas,
        next_steps=next_steps,
        resources=resources,
        timeline=SUGGESTION_TIMELINE,
    )


def generate_heuristic_analysis(data: UserCodingAggregate) -> HeuristicAnalysis:
    return HeuristicAnalysis(
        approach_rating=calculate_approach_rating(data),
        code_quality_score=calculate_quality_score(data),
        problem_solving_style=generate_problem_solving_style(data),
        strengths=generate_strengths(data),
        weaknesses=generate_weaknesses(data),
        suggestions=generate_improvement_suggestions(data),
    )


def _bullets(items: list[str]) -> list[str]:
    return [f"- {item}" for item in items]


def render_heuristic_narrative(data: UserCodingAggregate, analysis: HeuristicAnalysis) -> str:
    """Markdown report laid out the way the narrative parser reads AI output."""
    suggestions = analysis.suggestions
    lines = [
        "## Coding Pattern Analysis",
        "",
        (
            f"Over the last {data.analysis_period_days} days you worked on "
            f"{data.total_problems} problem(s) with {data.total_runs} runs and "
            f"{data.total_submits} submissions, mostly in {data.most_used_language}. "
            f"{analysis.problem_solving_style}"
        ),
        "",
        f"Initial Approach Rating: {analysis.approach_rating:.1f}/5",
        f"Code Quality Score: {analysis.code_quality_score:.1f}/5",
        "",
        "### Problem-Solving Style",
        analysis.problem_solving_style,
        "",
        "### Strengths",
        analysis.strengths,
        "",
        "### Areas for Improvement",
        analysis.weaknesses,
        "",
        "### Recommendations",
        *_bullets(suggestions.focus_areas),
        "",
        "### Next Steps",
        *_bullets(suggestions.next_steps),
        "",
        "### Resources",
        *_bullets(suggestions.resources),
        "",
        "### Timeline",
        suggestions.timeline,
    ]
    return "\n".join(lines)
