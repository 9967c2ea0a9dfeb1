"""Process-wide services shared by job handlers.

Handlers only receive ``(conn, payload)``; the Redis cache and the AI client
outlive a single job, so they live here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .ai_client import AIAnalysisClient
from .config import Config
from .session_cache import RedisSessionCache

logger = logging.getLogger(__name__)


@dataclass
class WorkerRuntime:
    config: Config
    cache: RedisSessionCache
    ai_client: AIAnalysisClient

    @classmethod
    def from_config(cls, config: Config) -> "WorkerRuntime":
        return cls(
            config=config,
            cache=RedisSessionCache.from_url(
                config.redis_url,
                socket_timeout=config.ingestion.side_write_timeout_seconds,
            ),
            ai_client=AIAnalysisClient(config.ai),
        )

    async def close(self) -> None:
        await self.ai_client.close()
        await self.cache.close()


_RUNTIME: WorkerRuntime | None = None


def init_runtime(config: Config) -> WorkerRuntime:
    global _RUNTIME  # noqa: PLW0603
    _RUNTIME = WorkerRuntime.from_config(config)
    if not config.ai.api_key:
        logger.warning("AI_API_KEY not set; analyses will use the heuristic engine")
    return _RUNTIME


def get_runtime() -> WorkerRuntime:
    global _RUNTIME  # noqa: PLW0603
    if _RUNTIME is None:
        _RUNTIME = WorkerRuntime.from_config(Config.from_env())
    return _RUNTIME


async def shutdown_runtime() -> None:
    global _RUNTIME  # noqa: PLW0603
    if _RUNTIME is None:
        return
    runtime, _RUNTIME = _RUNTIME, None
    await runtime.close()
