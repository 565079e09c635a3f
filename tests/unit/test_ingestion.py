import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.features.publishing.domain import Channel, InboundFragment, WebhookLogStatus
from app.features.publishing.pipeline.ingestion import SubmissionIngestor
from app.features.publishing.pipeline.publisher import PipelineOutcome
from app.features.publishing.repository import SubmissionBusyError

SENDER = "+966500000001"


def _fragment(text: str, **overrides) -> InboundFragment:
    fields = {"sender_address": SENDER, "token": "ABC123", "message_part": text}
    fields.update(overrides)
    return InboundFragment(**fields)


@pytest.mark.asyncio
async def test_fragments_accumulate_without_processing(store, pipeline):
    ingestor = SubmissionIngestor(store, pipeline)

    first = await ingestor.ingest(_fragment("part one"))
    second = await ingestor.ingest(_fragment("part two", media_urls=["https://cdn.example.com/a.jpg"]))

    assert first.is_first is True
    assert second.is_first is False
    assert second.processed is None
    assert second.submission.message_parts == ["part one", "part two"]
    assert second.submission.media_urls == ["https://cdn.example.com/a.jpg"]


@pytest.mark.asyncio
async def test_force_fragment_runs_pipeline_inline(store, senders, pipeline, webhook_logs):
    senders.add("ABC123")
    ingestor = SubmissionIngestor(store, pipeline)

    await ingestor.ingest(_fragment("ارتفع مؤشر السوق اليوم بنسبة خمسة بالمئة"))
    result = await ingestor.ingest(_fragment("send", force_process=True))

    assert result.processed is not None
    assert result.processed.outcome == PipelineOutcome.PUBLISHED
    assert await store.get(result.submission.id) is None
    (log,) = webhook_logs.by_status(WebhookLogStatus.PROCESSED)
    assert log.message == "ارتفع مؤشر السوق اليوم بنسبة خمسة بالمئة\n\nsend"


@pytest.mark.asyncio
async def test_force_flush_is_skipped_when_already_claimed(store):
    pipeline = MagicMock()
    pipeline.process = AsyncMock()
    ingestor = SubmissionIngestor(store, pipeline)
    submission, _ = await store.append_fragment(SENDER, "ABC123", "text")
    store.claim_one = AsyncMock(return_value=None)

    result = await ingestor.ingest(_fragment("done", force_process=True))

    assert result.processed is None
    assert result.submission.id == submission.id
    pipeline.process.assert_not_awaited()


@pytest.mark.asyncio
async def test_email_fragment_keeps_channel_and_ids(store, pipeline):
    ingestor = SubmissionIngestor(store, pipeline)

    result = await ingestor.ingest(
        _fragment(
            "body",
            sender_address="reporter@example.com",
            channel=Channel.EMAIL,
            token_id="token-1",
            user_id="user-1",
        )
    )

    assert result.submission.channel == Channel.EMAIL
    assert result.submission.token_id == "token-1"
    assert result.submission.user_id == "user-1"


@pytest.mark.asyncio
async def test_busy_submission_is_retried_then_appended(store, pipeline):
    real_append = store.append_fragment
    attempts = []

    async def flaky_append(*args, **kwargs):
        attempts.append(1)
        if len(attempts) == 1:
            raise SubmissionBusyError(SENDER, "ABC123")
        return await real_append(*args, **kwargs)

    store.append_fragment = flaky_append
    ingestor = SubmissionIngestor(store, pipeline, busy_retry_delay=0)

    result = await ingestor.ingest(_fragment("late part"))

    assert len(attempts) == 2
    assert result.submission.message_parts == ["late part"]


@pytest.mark.asyncio
async def test_busy_submission_raises_after_all_retries(store, pipeline):
    store.append_fragment = AsyncMock(side_effect=SubmissionBusyError(SENDER, "ABC123"))
    ingestor = SubmissionIngestor(store, pipeline, busy_retry_attempts=2, busy_retry_delay=0)

    with pytest.raises(SubmissionBusyError):
        await ingestor.ingest(_fragment("late part"))

    assert store.append_fragment.await_count == 2


@pytest.mark.asyncio
async def test_fragment_arriving_mid_pipeline_becomes_next_submission(
    store, senders, pipeline, quality_service, articles
):
    senders.add("ABC123")
    analysis_started = asyncio.Event()
    release_analysis = asyncio.Event()
    analyze = quality_service.analyze_and_rewrite

    async def slow_analyze(*args, **kwargs):
        analysis_started.set()
        await release_analysis.wait()
        return await analyze(*args, **kwargs)

    quality_service.analyze_and_rewrite = slow_analyze
    ingestor = SubmissionIngestor(store, pipeline)

    first = asyncio.create_task(
        ingestor.ingest(_fragment("ارتفع مؤشر السوق اليوم بنسبة خمسة بالمئة", force_process=True))
    )
    await analysis_started.wait()
    late = await ingestor.ingest(_fragment("انخفضت أسعار النفط في التداولات المسائية"))
    release_analysis.set()
    first_result = await first

    assert first_result.processed.outcome == PipelineOutcome.PUBLISHED
    assert late.is_first is True
    assert late.submission.id != first_result.submission.id

    (leftover,) = await store.claim_expired()
    assert leftover.message_parts == ["انخفضت أسعار النفط في التداولات المسائية"]
    second_result = await pipeline.process(leftover)

    assert second_result.outcome == PipelineOutcome.PUBLISHED
    assert len(articles.articles) == 2
    assert await store.stats() == {"accumulating": 0, "processing": 0}
