"""Canonical coding activity contract.

Client payloads (browser extension or direct event posts) are mapped into
``ActivityEvent`` before anything is written. The source-code blob travels on
the event but is never part of its metadata view.
"""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

DEFAULT_USER_ID = "user123"
DEFAULT_PLATFORM = "leetcode"
DEFAULT_EXTENSION_VERSION = "unknown"
UNKNOWN_PROBLEM_ID = "unknown-problem"

_PROBLEM_SLUG_STRIP_RE = re.compile(r"[^A-Za-z0-9-]")


class EventType(StrEnum):
    CODE_RUN = "CODE_RUN"
    CODE_SUBMIT = "CODE_SUBMIT"
    SESSION_STARTED = "SESSION_STARTED"
    SESSION_PROGRESS = "SESSION_PROGRESS"
    SESSION_ENDED = "SESSION_ENDED"
    CODE_ACTIVITY = "CODE_ACTIVITY"


ACTION_EVENT_TYPES: dict[str, EventType] = {
    "run": EventType.CODE_RUN,
    "submit": EventType.CODE_SUBMIT,
}

# Session lifecycle names emitted by older clients.
LEGACY_EVENT_TYPE_ALIASES: dict[str, EventType] = {
    "ProblemSessionStarted": EventType.SESSION_STARTED,
    "ProblemProgress": EventType.SESSION_PROGRESS,
    "ProblemSubmitted": EventType.CODE_SUBMIT,
    "ProblemSessionEnded": EventType.SESSION_ENDED,
}


class ActivityPayloadError(Exception):
    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.code = "invalid_payload"
        self.field = field


class ActivityEvent(BaseModel):
    """One recorded run/submit/session action. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    user_id: str
    problem_id: str
    session_id: str
    platform: str = DEFAULT_PLATFORM
    source_code: str | None = None
    language: str | None = None
    problem_title: str | None = None
    problem_url: str | None = None
    extension_version: str = DEFAULT_EXTENSION_VERSION
    platform_username: str | None = None
    client_timestamp: str | None = None
    created_at: datetime
    processed_at: datetime
    event_id: int | None = None

    @field_validator("user_id", "problem_id", "session_id", "platform")
    @classmethod
    def validate_required_text(cls, value: str, info: Any) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must not be empty")
        return normalized

    @field_validator(
        "language",
        "problem_title",
        "problem_url",
        "platform_username",
        "client_timestamp",
    )
    @classmethod
    def trim_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        trimmed = value.strip()
        return trimmed or None

    @property
    def has_code(self) -> bool:
        return self.source_code is not None

    @property
    def code_length(self) -> int:
        return len(self.source_code) if self.source_code is not None else 0

    def metadata(self) -> dict[str, Any]:
        """Every field except the source code, JSON-ready."""
        return self.model_dump(mode="json", exclude={"source_code", "event_id"})


# ---------------------------------------------------------------------------
# Session ids
# ---------------------------------------------------------------------------

_session_clock_lock = threading.Lock()
_last_session_ms = 0


def next_session_timestamp_ms() -> int:
    """Wall-clock milliseconds, forced strictly increasing within the process."""
    global _last_session_ms  # noqa: PLW0603
    with _session_clock_lock:
        candidate = time.time_ns() // 1_000_000
        if candidate <= _last_session_ms:
            candidate = _last_session_ms + 1
        _last_session_ms = candidate
        return candidate


def build_session_id(user_id: str, problem_id: str, timestamp_ms: int) -> str:
    return f"{user_id}_{problem_id}_{timestamp_ms}"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def extract_problem_id_from_url(problem_url: str | None) -> str:
    """Slug after ``/problems/``, e.g. https://leetcode.com/problems/two-sum/ -> two-sum."""
    if not problem_url or "/problems/" not in problem_url:
        return UNKNOWN_PROBLEM_ID
    slug = problem_url.split("/problems/", 1)[1].split("/", 1)[0]
    cleaned = _PROBLEM_SLUG_STRIP_RE.sub("", slug)
    return cleaned or UNKNOWN_PROBLEM_ID


def _text(source: Mapping[str, Any], key: str) -> str | None:
    value = source.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or isinstance(value, (dict, list, tuple, set)):
        raise ActivityPayloadError(f"{key} must be a string", field=key)
    if isinstance(value, (int, float)):
        return str(value)
    if not isinstance(value, str):
        raise ActivityPayloadError(f"{key} must be a string", field=key)
    stripped = value.strip()
    return stripped or None


def _nested_map(source: Mapping[str, Any], key: str) -> Mapping[str, Any] | None:
    value = source.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ActivityPayloadError(f"{key} must be an object", field=key)
    return value


def resolve_event_type(action: str | None, event_type: str | None) -> EventType:
    if action is not None:
        return ACTION_EVENT_TYPES.get(action.lower(), EventType.CODE_ACTIVITY)
    if event_type is None:
        raise ActivityPayloadError(
            "payload requires either an action or an eventType",
            field="eventType",
        )
    if event_type in LEGACY_EVENT_TYPE_ALIASES:
        return LEGACY_EVENT_TYPE_ALIASES[event_type]
    try:
        return EventType(event_type.upper())
    except ValueError as exc:
        raise ActivityPayloadError(
            f"unsupported eventType: {event_type}", field="eventType"
        ) from exc


def _flatten(payload: Mapping[str, Any]) -> tuple[dict[str, Any], str | None]:
    """Merge either inbound shape into one camelCase field map plus the action."""
    data = _nested_map(payload, "data")
    if data is not None or "eventType" in payload:
        fields = dict(data if data is not None else payload)
        return fields, _text(fields, "action")

    problem_data = _nested_map(payload, "problemData")
    metadata = _nested_map(payload, "metadata") or {}
    if problem_data is None:
        problem_data = {
            "title": payload.get("problemTitle"),
            "url": payload.get("problemUrl"),
            "action": payload.get("action"),
            "timestamp": payload.get("timestamp"),
            "language": payload.get("language"),
            "code": payload.get("code"),
            "sessionId": payload.get("sessionId"),
        }
    fields = {
        "userId": payload.get("userId"),
        "leetcodeUsername": payload.get("leetcodeUsername"),
        "problemId": problem_data.get("problemId", payload.get("problemId")),
        "problemTitle": problem_data.get("title"),
        "problemUrl": problem_data.get("url"),
        "language": problem_data.get("language"),
        "code": problem_data.get("code"),
        "sessionId": problem_data.get("sessionId"),
        "timestamp": problem_data.get("timestamp"),
        "platform": payload.get("platform"),
        "extensionVersion": metadata.get("extensionVersion"),
    }
    return fields, _text(problem_data, "action")


def normalize_activity_payload(
    payload: Any,
    *,
    now: datetime | None = None,
) -> ActivityEvent:
    """Map a raw client payload to an ``ActivityEvent``.

    Raises ``ActivityPayloadError`` instead of returning a partial event.
    """
    if not isinstance(payload, Mapping):
        raise ActivityPayloadError("payload must be an object")

    fields, action = _flatten(payload)
    event_type = resolve_event_type(action, _text(payload, "eventType"))

    user_id = _text(fields, "userId") or DEFAULT_USER_ID
    problem_url = _text(fields, "problemUrl")
    problem_id = _text(fields, "problemId") or extract_problem_id_from_url(problem_url)
    session_id = _text(fields, "sessionId") or build_session_id(
        user_id, problem_id, next_session_timestamp_ms()
    )

    code = fields.get("code")
    if code is not None and not isinstance(code, str):
        raise ActivityPayloadError("code must be a string", field="code")

    created_at = now or datetime.now(UTC)
    try:
        return ActivityEvent(
            event_type=event_type,
            user_id=user_id,
            problem_id=problem_id,
            session_id=session_id,
            platform=_text(fields, "platform") or DEFAULT_PLATFORM,
            source_code=code,
            language=_text(fields, "language"),
            problem_title=_text(fields, "problemTitle"),
            problem_url=problem_url,
            extension_version=_text(fields, "extensionVersion") or DEFAULT_EXTENSION_VERSION,
            platform_username=_text(fields, "leetcodeUsername"),
            client_timestamp=_text(fields, "timestamp"),
            created_at=created_at,
            processed_at=created_at,
        )
    except ValidationError as exc:
        raise ActivityPayloadError(f"invalid activity payload: {exc}") from exc
