"""In-memory worker metrics.

Asyncio is single-threaded, so plain dicts need no locking.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "jobs_processed": 0,
    "jobs_failed": 0,
    "jobs_dead": 0,
    "events_ingested": 0,
    "side_write_failures": {},
    "analyses": {},
}


def record_job_completed() -> None:
    _metrics["jobs_processed"] += 1


def record_job_failed() -> None:
    _metrics["jobs_failed"] += 1


def record_job_dead() -> None:
    _metrics["jobs_dead"] += 1


def record_event_ingested() -> None:
    _metrics["events_ingested"] += 1


def record_side_write_failure(kind: str) -> None:
    """Count a swallowed cache/queue failure ("cache" or "publish")."""
    failures = _metrics["side_write_failures"]
    failures[kind] = failures.get(kind, 0) + 1


def record_analysis(engine: str) -> None:
    analyses = _metrics["analyses"]
    analyses[engine] = analyses.get(engine, 0) + 1


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "jobs_processed": _metrics["jobs_processed"],
        "jobs_failed": _metrics["jobs_failed"],
        "jobs_dead": _metrics["jobs_dead"],
        "events_ingested": _metrics["events_ingested"],
        "side_write_failures": dict(_metrics["side_write_failures"]),
        "analyses": dict(_metrics["analyses"]),
    }
