import pytest

from app.config import PublishingPolicy
from app.container import PublishingContainer, build_pending_store
from app.features.publishing.repository import (
    InMemoryPendingSubmissionStore,
    PostgresPendingSubmissionStore,
)
from app.services.cache import MemoryCache


def test_build_pending_store_backends():
    assert isinstance(build_pending_store("postgres", 5), PostgresPendingSubmissionStore)
    assert isinstance(build_pending_store(" Memory ", 5), InMemoryPendingSubmissionStore)

    with pytest.raises(ValueError, match="Unknown pending store backend"):
        build_pending_store("redis", 5)


@pytest.fixture
def fake_container(
    store, senders, articles, webhook_logs, quality_service, media_store, media_downloader, notifier, broadcaster, cache
):
    return PublishingContainer.build(
        PublishingPolicy(aggregator_interval_seconds=0.01),
        store=store,
        senders=senders,
        articles=articles,
        webhook_logs=webhook_logs,
        quality_service=quality_service,
        media_store=media_store,
        media_downloader=media_downloader,
        notifier=notifier,
        broadcaster=broadcaster,
        cache=cache,
    )


def test_build_wires_overrides_through(fake_container, store, cache):
    assert fake_container.store is store
    assert fake_container.pipeline.store is store
    assert fake_container.pipeline.cache is cache
    assert fake_container.ingestor.pipeline is fake_container.pipeline
    assert fake_container.aggregator.pipeline is fake_container.pipeline
    assert fake_container.aggregator.interval_seconds == 0.01


@pytest.mark.asyncio
async def test_start_and_dispose(fake_container):
    fake_container.start(run_aggregator=True)
    subscriber = fake_container.broadcaster.subscribe()
    assert fake_container.aggregator.started is True
    assert fake_container.cache.stats()["sweeping"] is True

    await fake_container.dispose()

    assert fake_container.aggregator.started is False
    assert fake_container.cache.stats()["sweeping"] is False
    assert subscriber.closed is True
    assert fake_container.broadcaster.subscriber_count == 0


@pytest.mark.asyncio
async def test_start_without_aggregator(fake_container):
    fake_container.start(run_aggregator=False)
    try:
        assert fake_container.aggregator.started is False
    finally:
        await fake_container.dispose()


def test_cache_override_shares_its_broadcaster(cache, broadcaster):
    container = PublishingContainer.build(PublishingPolicy(), cache=cache)
    subscriber = container.broadcaster.subscribe()

    cache.set("homepage:main", 1)
    cache.invalidate_patterns(["^homepage:"])

    assert container.broadcaster is broadcaster
    assert subscriber.queue.get_nowait() == {"type": "cache_invalidated", "patterns": ["homepage"]}


def test_cache_override_without_broadcaster_gets_the_container_one():
    cache = MemoryCache()
    container = PublishingContainer.build(PublishingPolicy(), cache=cache)

    assert cache.broadcaster is container.broadcaster
