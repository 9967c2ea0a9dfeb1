"""Best-effort field extraction from free-form analysis narratives.

Every extractor returns None (or an empty list) on a miss; callers backfill
misses from the heuristic analysis. Nothing here raises on odd input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .heuristics import MAX_SCORE, MIN_SCORE

DEFAULT_SUMMARY = (
    "Comprehensive coding pattern analysis completed based on your recent activity."
)
EMPTY_NARRATIVE_SUMMARY = "Analysis completed with basic heuristic evaluation."
SUMMARY_MIN_CHARS = 50
SUMMARY_MAX_CHARS = 200

_NUMBER_RE = re.compile(r"(?<![\d.])\d+(?:\.\d+)?(?![\d.])")
# Scale annotations such as "(1-5)", "1–5" or "/5" are not scores.
_SCALE_RE = re.compile(r"\(?\b1\s*[-–]\s*5\b\)?|/\s*5(?:\.0)?\b|\bout of 5\b", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[•\-–]|\*(?!\*)|\d+[.)])\s+")
_HEADER_DECORATION_RE = re.compile(r"^[#\s]*|\*\*|:\s*$")

STYLE_SECTIONS = ("Problem-Solving Style", "Problem Solving Style")
STRENGTH_SECTIONS = ("Key Strengths", "Strengths")
WEAKNESS_SECTIONS = ("Areas for Improvement", "Weaknesses")
RECOMMENDATION_SECTIONS = ("Recommendations",)
NEXT_STEP_SECTIONS = ("Next Steps",)
RESOURCE_SECTIONS = ("Resources",)
TIMELINE_SECTIONS = ("Timeline",)


@dataclass(frozen=True)
class ParsedNarrative:
    approach_rating: float | None = None
    code_quality_score: float | None = None
    problem_solving_style: str | None = None
    strengths: str | None = None
    weaknesses: str | None = None
    focus_areas: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    timeline: str | None = None


def extract_labeled_score(narrative: str, label: str) -> float | None:
    """First line mentioning ``label`` that carries a number within [1, 5]."""
    needle = label.lower()
    for line in narrative.splitlines():
        if needle not in line.lower():
            continue
        for token in _NUMBER_RE.findall(_SCALE_RE.sub(" ", line)):
            value = float(token)
            if MIN_SCORE <= value <= MAX_SCORE:
                return value
    return None


def _is_header(line: str) -> bool:
    stripped = line.strip()
    if stripped.startswith("#"):
        return True
    return stripped.startswith("**") and stripped.rstrip(":").endswith("**")


def _header_text(line: str) -> str:
    return _HEADER_DECORATION_RE.sub("", line.strip()).strip().lower()


def _section_lines(narrative: str, names: tuple[str, ...]) -> list[str] | None:
    wanted = [name.lower() for name in names]
    collected: list[str] = []
    found = False
    in_section = False
    for line in narrative.splitlines():
        if _is_header(line):
            if in_section:
                break
            text = _header_text(line)
            if any(name in text for name in wanted):
                found = in_section = True
            continue
        if in_section and line.strip():
            collected.append(line)
    return collected if found else None


def extract_section(narrative: str, names: tuple[str, ...]) -> str | None:
    lines = _section_lines(narrative, names)
    if not lines:
        return None
    bulleted = any(_BULLET_RE.match(line) for line in lines)
    cleaned = [_BULLET_RE.sub("", line).strip() for line in lines]
    cleaned = [line for line in cleaned if line]
    if not cleaned:
        return None
    return ("; " if bulleted else " ").join(cleaned)


def extract_bullets(narrative: str, names: tuple[str, ...]) -> list[str]:
    lines = _section_lines(narrative, names) or []
    items: list[str] = []
    for line in lines:
        if not _BULLET_RE.match(line):
            continue
        item = _BULLET_RE.sub("", line).replace("**", "").strip()
        if item:
            items.append(item)
    return items


def extract_summary(narrative: str | None) -> str:
    """First substantial non-heading paragraph, trimmed to ~200 characters."""
    if narrative is None or not narrative.strip():
        return EMPTY_NARRATIVE_SUMMARY
    for block in narrative.split("\n\n"):
        block = block.strip()
        if len(block) <= SUMMARY_MIN_CHARS or block.startswith("#"):
            continue
        clean = re.sub(r"###?\s*", "", block.replace("**", "")).strip()
        if len(clean) > SUMMARY_MAX_CHARS:
            return clean[: SUMMARY_MAX_CHARS - 3] + "..."
        return clean
    return DEFAULT_SUMMARY


def parse_narrative(narrative: str) -> ParsedNarrative:
    return ParsedNarrative(
        approach_rating=extract_labeled_score(narrative, "rating"),
        code_quality_score=extract_labeled_score(narrative, "quality"),
        problem_solving_style=extract_section(narrative, STYLE_SECTIONS),
        strengths=extract_section(narrative, STRENGTH_SECTIONS),
        weaknesses=extract_section(narrative, WEAKNESS_SECTIONS),
        focus_areas=extract_bullets(narrative, RECOMMENDATION_SECTIONS),
        next_steps=extract_bullets(narrative, NEXT_STEP_SECTIONS),
        resources=extract_bullets(narrative, RESOURCE_SECTIONS),
        timeline=extract_section(narrative, TIMELINE_SECTIONS),
    )
