"""
Aggregator job.

Polls the pending submission store on a fixed interval, claims every
submission whose aggregation window has passed and runs the publishing
pipeline on each one in turn. One submission failing never stops the rest.
"""

import asyncio
import contextlib
from datetime import UTC, datetime, timedelta

from app.features.publishing.domain import PendingSubmission
from app.features.publishing.pipeline.publisher import (
    PipelineOutcome,
    PipelineResult,
    PublishingPipeline,
)
from app.features.publishing.repository import PendingSubmissionStore
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

JOB_NAME = "publishing_aggregator"
OVERDUE_FACTOR = 10  # healthy while the last tick is newer than 10 intervals
ERROR_BACKOFF_SECONDS = 5.0


class AggregatorJobError(Exception):
    """Custom exception for aggregator job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class AggregatorMetrics:
    """Per-tick counters."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.claimed = 0
        self.published = 0
        self.drafted = 0
        self.rejected = 0
        self.failed = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_result(self, result: PipelineResult):
        if result.outcome == PipelineOutcome.PUBLISHED:
            self.published += 1
        elif result.outcome == PipelineOutcome.DRAFTED:
            self.drafted += 1
        elif result.outcome == PipelineOutcome.REJECTED:
            self.rejected += 1
        else:
            self.failed += 1

    def record_error(self, submission_id: str, error: str):
        self.failed += 1
        self.errors.append(
            {
                "submission_id": submission_id,
                "error": error,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.error("Aggregator processing error", submission_id=submission_id, error=error, job_run=JOB_NAME)

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": JOB_NAME,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 3),
            "claimed": self.claimed,
            "published": self.published,
            "drafted": self.drafted,
            "rejected": self.rejected,
            "failed": self.failed,
            "errors_count": len(self.errors),
        }


class AggregatorJob:
    """
    Background loop driving the publishing pipeline.

    Claimed submissions are processed sequentially so replies to one sender
    never interleave; a slow AI call delays the rest of that tick.
    """

    def __init__(
        self,
        store: PendingSubmissionStore,
        pipeline: PublishingPipeline,
        *,
        interval_seconds: float = 1.0,
        batch_limit: int | None = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds
        self.batch_limit = batch_limit
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.total_runs = 0
        self.total_processed = 0
        self.job_metrics = AggregatorMetrics()
        self._task: asyncio.Task | None = None

        if interval_seconds <= 0:
            raise AggregatorJobError("Aggregator interval must be positive", operation="configure")

    async def run_once(self) -> dict:
        """
        Claim expired submissions and process each one.

        Raises:
            AggregatorJobError: the claim itself failed
        """
        if self.is_running:
            logger.warning("Aggregator tick already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            try:
                claimed = await self.store.claim_expired(self.batch_limit)
            except Exception as e:
                logger.error("Failed to claim expired submissions", error=str(e), error_type=type(e).__name__)
                raise AggregatorJobError(f"Claim failed: {e}", operation="claim_expired") from e

            self.job_metrics.claimed = len(claimed)
            for submission in claimed:
                await self._process_submission(submission)

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)
            self.total_runs += 1
            self.total_processed += len(claimed)

            metrics = self.job_metrics.to_dict()
            if claimed:
                logger.info("Aggregator tick completed", **metrics)
            return metrics

        finally:
            self.is_running = False

    async def _process_submission(self, submission: PendingSubmission) -> None:
        try:
            result = await self.pipeline.process(submission)
            self.job_metrics.record_result(result)
        except Exception as e:
            # process() handles its own failures; this guards against bugs in it
            self.job_metrics.record_error(submission.id, f"{type(e).__name__}: {e}")
            try:
                await self.store.delete(submission.id)
            except Exception as delete_error:
                logger.error(
                    "Failed to delete submission after processing error",
                    submission_id=submission.id,
                    error=str(delete_error),
                )

    async def run_forever(self) -> None:
        logger.info("Starting aggregator loop", interval_seconds=self.interval_seconds)

        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("Aggregator loop cancelled")
                raise
            except Exception as e:
                logger.error("Error in aggregator loop", error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(max(self.interval_seconds, ERROR_BACKOFF_SECONDS))

    def start(self) -> asyncio.Task:
        """Run the loop as a task on the current event loop."""
        if self._task and not self._task.done():
            logger.info("Aggregator job already running")
            return self._task
        self._task = asyncio.create_task(self.run_forever(), name=JOB_NAME)
        return self._task

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Aggregator job stopped")

    @property
    def started(self) -> bool:
        return bool(self._task and not self._task.done())

    def get_job_status(self) -> dict:
        return {
            "job_name": JOB_NAME,
            "started": self.started,
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_seconds": self.interval_seconds,
            "total_runs": self.total_runs,
            "total_processed": self.total_processed,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
            "pipeline_metrics": self.pipeline.metrics.to_dict(),
        }

    def health_check(self) -> dict:
        now = datetime.now(UTC)
        overdue_threshold = timedelta(seconds=max(self.interval_seconds * OVERDUE_FACTOR, 30))
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold

        health_status = {
            "healthy": self.started and not is_overdue,
            "service": f"{JOB_NAME}_job",
            "started": self.started,
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
            "configuration": {
                "interval_seconds": self.interval_seconds,
                "batch_limit": self.batch_limit,
            },
        }

        if not self.started:
            health_status["warning"] = "Aggregator loop is not running"
        elif is_overdue:
            health_status["warning"] = (
                f"Aggregator overdue by {(now - self.last_run_time).total_seconds():.1f} seconds"
            )
        return health_status
