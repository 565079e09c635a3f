"""
Fragment ingestion.

Appends each inbound fragment to its pending submission. A force-flush
fragment claims the submission right away and runs the pipeline inline;
everything else waits for the aggregator to pick it up after the window.
A fragment that arrives while its submission is processing opens a new
submission instead of waiting for the first one to finish.
"""

import asyncio
from dataclasses import dataclass

from app.features.publishing.domain import InboundFragment, PendingSubmission
from app.features.publishing.pipeline.publisher import PipelineResult, PublishingPipeline
from app.features.publishing.repository import PendingSubmissionStore, SubmissionBusyError
from app.infrastructure.observability.logging import get_logger, mask_address

logger = get_logger(__name__)

BUSY_RETRY_ATTEMPTS = 3
BUSY_RETRY_DELAY_SECONDS = 0.05


@dataclass(slots=True)
class IngestResult:
    submission: PendingSubmission
    is_first: bool
    processed: PipelineResult | None = None


class SubmissionIngestor:
    def __init__(
        self,
        store: PendingSubmissionStore,
        pipeline: PublishingPipeline,
        *,
        busy_retry_attempts: int = BUSY_RETRY_ATTEMPTS,
        busy_retry_delay: float = BUSY_RETRY_DELAY_SECONDS,
    ):
        self.store = store
        self.pipeline = pipeline
        self.busy_retry_attempts = busy_retry_attempts
        self.busy_retry_delay = busy_retry_delay

    async def ingest(self, fragment: InboundFragment) -> IngestResult:
        """
        Append ``fragment`` and force-flush when asked.

        Raises:
            SubmissionBusyError: every append raced with a claim of the
                open submission
        """
        submission, is_first = await self._append_with_retry(fragment)

        logger.info(
            "Fragment accepted",
            submission_id=submission.id,
            sender=mask_address(fragment.sender_address),
            token=fragment.token,
            parts=submission.part_count,
            is_first=is_first,
            force_process=fragment.force_process,
        )

        if not fragment.force_process:
            return IngestResult(submission=submission, is_first=is_first)

        claimed = await self.store.claim_one(submission.id)
        if claimed is None:
            logger.info("Force flush skipped, submission already claimed", submission_id=submission.id)
            return IngestResult(submission=submission, is_first=is_first)

        result = await self.pipeline.process(claimed)
        return IngestResult(submission=claimed, is_first=is_first, processed=result)

    async def _append_with_retry(self, fragment: InboundFragment) -> tuple[PendingSubmission, bool]:
        for attempt in range(1, self.busy_retry_attempts + 1):
            try:
                return await self.store.append_fragment(
                    fragment.sender_address,
                    fragment.token,
                    fragment.message_part,
                    fragment.media_urls,
                    channel=fragment.channel,
                    token_id=fragment.token_id,
                    user_id=fragment.user_id,
                )
            except SubmissionBusyError:
                if attempt == self.busy_retry_attempts:
                    raise
                logger.info(
                    "Submission busy, retrying append",
                    sender=mask_address(fragment.sender_address),
                    token=fragment.token,
                    attempt=attempt,
                )
                await asyncio.sleep(self.busy_retry_delay * attempt)

        raise SubmissionBusyError(fragment.sender_address, fragment.token)
