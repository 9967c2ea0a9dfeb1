"""CodePulse workers: activity ingestion and coding-pattern analysis jobs."""

import asyncio
import logging

from .config import Config
from .health import start_health_server
from .logging import setup_logging
from .registry import registered_types
from .runtime import WorkerRuntime, init_runtime, shutdown_runtime
from .worker import Worker

# Import handlers to register them
from . import handlers  # noqa: F401


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger = logging.getLogger(__name__)
    logger.info("CodePulse worker starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Health port: %d", config.health_port)
    logger.info("Registered job types: %s", registered_types())
    logger.info("AI model: %s (timeout=%.0fs)", config.ai.model, config.ai.timeout_seconds)

    asyncio.run(_run(config))


async def check_ai_endpoint(runtime: WorkerRuntime) -> bool:
    """Ping the AI endpoint once at startup; an outage only degrades analyses."""
    ai = runtime.config.ai
    if not ai.api_key:
        return False
    healthy = await runtime.ai_client.is_healthy()
    if not healthy:
        logging.getLogger(__name__).warning(
            "AI endpoint %s is not answering; analyses fall back to heuristics",
            ai.base_url,
        )
    return healthy


async def _run(config: Config) -> None:
    logger = logging.getLogger(__name__)

    runtime = init_runtime(config)
    await check_ai_endpoint(runtime)
    health_server = await start_health_server(
        config.health_port, config.database_url, runtime.cache.ping
    )
    logger.info("Health server started")

    try:
        worker = Worker(config)
        await worker.run()
    finally:
        health_server.close()
        await health_server.wait_closed()
        await shutdown_runtime()


if __name__ == "__main__":
    main()
