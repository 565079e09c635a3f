"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and delegates to the appropriate job. Used when the aggregator
runs in its own process instead of inside the API (RUN_AGGREGATOR_IN_API=false).
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.container import PublishingContainer
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def start_publishing_aggregator() -> None:
    """Run the aggregator loop until cancelled."""
    await db_pool.initialize()
    container = PublishingContainer.build()
    container.cache.start()
    try:
        await container.aggregator.run_forever()
    finally:
        await container.dispose()
        await db_pool.close()


async def run_publishing_flush() -> None:
    """Process every submission whose window has passed, once."""
    await db_pool.initialize()
    container = PublishingContainer.build()
    try:
        metrics = await container.aggregator.run_once()
        logger.info("Publishing flush completed", **metrics)
    finally:
        await container.dispose()
        await db_pool.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "publishing_aggregator": start_publishing_aggregator,
    "publishing_flush": run_publishing_flush,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "publishing_aggregator").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
