"""In-memory fakes for the store, cache, publisher and AI client."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from codepulse_workers.activity_contract import ActivityEvent, EventType
from codepulse_workers.store import AnalysisRecord

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class FakeStore:
    def __init__(self) -> None:
        self.events: list[ActivityEvent] = []
        self.analyses: list[AnalysisRecord] = []
        self.fail_append: Exception | None = None
        self.fail_save: Exception | None = None
        self.lock_available = True
        self.lock_requests: list[str] = []

    async def append(self, event: ActivityEvent) -> int:
        if self.fail_append is not None:
            raise self.fail_append
        event_id = len(self.events) + 1
        self.events.append(event.model_copy(update={"event_id": event_id}))
        return event_id

    async def get(self, event_id: int) -> ActivityEvent | None:
        for event in self.events:
            if event.event_id == event_id:
                return event
        return None

    async def query(
        self,
        user_id: str,
        since: datetime,
        event_types: Sequence[EventType] | None = None,
    ) -> list[ActivityEvent]:
        wanted = set(event_types) if event_types else None
        return [
            event
            for event in self.events
            if event.user_id == user_id
            and event.created_at >= since
            and (wanted is None or event.event_type in wanted)
        ]

    async def save_analysis(self, record: AnalysisRecord) -> int:
        if self.fail_save is not None:
            raise self.fail_save
        self.analyses.append(record)
        return len(self.analyses)

    async def try_lock_user(self, user_id: str) -> bool:
        self.lock_requests.append(user_id)
        return self.lock_available


class FakeCache:
    def __init__(self) -> None:
        self.entries: dict[str, tuple[dict[str, Any], int]] = {}
        self.fail: Exception | None = None
        self.delay: float = 0.0

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        self.entries[key] = (value, ttl_seconds)

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self.entries.get(key)
        return entry[0] if entry else None


class FakePublisher:
    def __init__(self, *, enforces_timeout: bool = False) -> None:
        self.messages: list[tuple[str, str, dict[str, Any]]] = []
        self.fail: Exception | None = None
        self.delay = 0.0
        self.enforces_timeout = enforces_timeout

    async def publish(self, topic: str, key: str, message: dict[str, Any]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        self.messages.append((topic, key, message))


class FakeAnalyzer:
    """Returns a canned narrative, or raises ``error`` when set."""

    def __init__(self, narrative: str = "", *, error: Exception | None = None) -> None:
        self.narrative = narrative
        self.error = error
        self.calls = 0

    @property
    def model(self) -> str:
        return "sonar-pro"

    async def analyze(self, aggregates) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.narrative


def make_event(
    event_type: EventType = EventType.CODE_RUN,
    *,
    user_id: str = "u1",
    problem_id: str = "two-sum",
    problem_title: str | None = "Two Sum",
    language: str | None = "python",
    source_code: str | None = "print(1)",
    created_at: datetime | None = None,
    **overrides: Any,
) -> ActivityEvent:
    created = created_at or NOW - timedelta(days=1)
    return ActivityEvent(
        event_type=event_type,
        user_id=user_id,
        problem_id=problem_id,
        session_id=overrides.pop("session_id", f"{user_id}_{problem_id}_1"),
        problem_title=problem_title,
        language=language,
        source_code=source_code,
        created_at=created,
        processed_at=created,
        **overrides,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()
