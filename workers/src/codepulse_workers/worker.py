"""Job loop over ``background_jobs``.

Ingestion and analysis requests arrive as job rows. Workers claim them with
``FOR UPDATE SKIP LOCKED``, wake on NOTIFY ``codepulse_jobs`` and poll as a
fallback. A handler's writes and the job's completion commit together; a
raising handler rolls both back and the job is rescheduled with exponential
backoff until ``max_retries``, then marked dead.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .config import Config
from .metrics import record_job_completed, record_job_dead, record_job_failed
from .registry import get_handler

logger = logging.getLogger(__name__)

JOBS_CHANNEL = "codepulse_jobs"
LISTEN_RECONNECT_SECONDS = 5.0


@dataclass(frozen=True)
class ClaimedJob:
    id: int
    job_type: str
    payload: dict[str, Any]
    attempt: int
    max_retries: int
    user_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ClaimedJob":
        return cls(
            id=int(row["id"]),
            job_type=row["job_type"],
            payload=row["payload"] or {},
            attempt=int(row["attempt"]),
            max_retries=int(row["max_retries"]),
            user_id=row.get("user_id"),
        )

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries

    def log_extra(self) -> dict[str, Any]:
        return {
            "codepulse_job_id": self.id,
            "codepulse_job_type": self.job_type,
            "codepulse_attempt": self.attempt,
        }


def retry_delay_seconds(attempt: int) -> int:
    return 2**attempt


async def enqueue_job(
    conn: psycopg.AsyncConnection[Any],
    job_type: str,
    payload: dict[str, Any],
    *,
    user_id: str | None = None,
    max_retries: int = 3,
) -> int:
    """Insert a pending job and wake listening workers. Returns the job id."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO background_jobs (user_id, job_type, payload, max_retries)
            VALUES (%s, %s, %s, %s)
            RETURNING id
            """,
            (user_id, job_type, Json(payload), max_retries),
        )
        row = await cur.fetchone()
        if row is None:
            raise RuntimeError("job insert returned no id")
        await cur.execute("SELECT pg_notify(%s, %s)", (JOBS_CHANNEL, job_type))
    return int(row["id"])


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        logger.info(
            "Worker starting on %s (poll_interval=%.1fs, batch_size=%d)",
            JOBS_CHANNEL,
            self.config.poll_interval_seconds,
            self.config.batch_size,
        )
        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._poll_loop())

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def _listen_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {JOBS_CHANNEL}")
                    logger.info("Listening on %s", JOBS_CHANNEL)
                    while not self._shutdown.is_set():
                        # The timeout only ends this notifies() pass; the connection stays.
                        async for notify in conn.notifies(
                            timeout=self.config.poll_interval_seconds
                        ):
                            logger.debug("Wake-up for %s", notify.payload)
                            await self.run_once()
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning(
                    "Lost LISTEN connection, reconnecting in %.0fs", LISTEN_RECONNECT_SECONDS
                )
                await asyncio.sleep(LISTEN_RECONNECT_SECONDS)
        logger.info("Listen loop stopped")

    async def _poll_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(), timeout=self.config.poll_interval_seconds
                )
            except TimeoutError:
                await self.run_once()
        logger.info("Poll loop stopped")

    async def run_once(self) -> int:
        """Claim one batch and run it. Returns the number of jobs claimed."""
        try:
            async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
                jobs = await self.claim_jobs(conn)
                # Commit the claims before running handlers.
                await conn.commit()
                for job in jobs:
                    await self.process_job(conn, job)
                return len(jobs)
        except Exception:
            logger.exception("Job batch failed")
            return 0

    async def claim_jobs(self, conn: psycopg.AsyncConnection[Any]) -> list[ClaimedJob]:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'processing', started_at = NOW(), attempt = attempt + 1
                WHERE id IN (
                    SELECT id FROM background_jobs
                    WHERE status = 'pending' AND scheduled_for <= NOW()
                    ORDER BY scheduled_for, priority DESC, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, user_id, job_type, payload, attempt, max_retries
                """,
                (self.config.batch_size,),
            )
            rows = await cur.fetchall()
        return [ClaimedJob.from_row(row) for row in rows]

    async def process_job(self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob) -> None:
        handler = get_handler(job.job_type)
        if handler is None:
            logger.warning(
                "No handler for %s, burying job %d", job.job_type, job.id, extra=job.log_extra()
            )
            record_job_dead()
            await self._settle(conn, job, status="dead", error=f"No handler for {job.job_type}")
            return

        try:
            async with conn.transaction():
                await handler(conn, job.payload)
                await conn.execute(
                    "UPDATE background_jobs SET status = 'completed', completed_at = NOW() "
                    "WHERE id = %s",
                    (job.id,),
                )
        except Exception as exc:
            await self._handle_failure(conn, job, exc)
            return

        record_job_completed()
        logger.info("Job %d (%s) completed", job.id, job.job_type, extra=job.log_extra())

    async def _handle_failure(
        self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob, exc: Exception
    ) -> None:
        if job.exhausted:
            record_job_dead()
            logger.error(
                "Job %d (%s) is dead after %d attempts: %s",
                job.id,
                job.job_type,
                job.attempt,
                exc,
                extra=job.log_extra(),
            )
            await self._settle(conn, job, status="dead", error=str(exc))
            return

        record_job_failed()
        delay = retry_delay_seconds(job.attempt)
        logger.warning(
            "Job %d (%s) failed on attempt %d, retrying in %ds: %s",
            job.id,
            job.job_type,
            job.attempt,
            delay,
            exc,
            extra=job.log_extra(),
        )
        await self._settle(conn, job, status="pending", error=str(exc), delay_seconds=delay)

    async def _settle(
        self,
        conn: psycopg.AsyncConnection[Any],
        job: ClaimedJob,
        *,
        status: str,
        error: str,
        delay_seconds: float = 0.0,
    ) -> None:
        """Record a failed attempt as either a rescheduled or a dead job."""
        async with conn.cursor() as cur:
            if status == "pending":
                await cur.execute(
                    """
                    UPDATE background_jobs
                    SET status = 'pending', error_message = %s,
                        scheduled_for = NOW() + make_interval(secs => %s)
                    WHERE id = %s
                    """,
                    (error, float(delay_seconds), job.id),
                )
            else:
                await cur.execute(
                    """
                    UPDATE background_jobs
                    SET status = 'dead', error_message = %s, completed_at = NOW()
                    WHERE id = %s
                    """,
                    (error, job.id),
                )
        await conn.commit()
