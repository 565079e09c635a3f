"""
Service wiring for the publishing feature.

Builds the pending store, repositories, external services, cache and the
pipeline/aggregator pair from settings. Tests build a container with
fakes through the keyword overrides.
"""

from dataclasses import dataclass
from typing import Any

from app.config import PublishingPolicy, settings
from app.features.publishing.jobs import AggregatorJob
from app.features.publishing.pipeline.ingestion import SubmissionIngestor
from app.features.publishing.pipeline.publisher import PublishingPipeline
from app.features.publishing.repository import (
    ArticleRepository,
    InMemoryPendingSubmissionStore,
    PendingSubmissionStore,
    PostgresPendingSubmissionStore,
    TrustedSenderRepository,
    WebhookLogRepository,
)
from app.infrastructure.observability.logging import get_logger
from app.services.cache import CacheEventBroadcaster, MemoryCache
from app.services.content_quality_service import ContentQualityService
from app.services.media_store import MediaStore, TwilioMediaDownloader
from app.services.notifier import EmailNotifier, OutboundNotifier, WhatsAppNotifier

logger = get_logger(__name__)

STORE_BACKENDS = ("postgres", "memory")


def build_pending_store(backend: str, window_seconds: float) -> PendingSubmissionStore:
    backend = (backend or "postgres").strip().lower()
    if backend == "postgres":
        return PostgresPendingSubmissionStore(window_seconds)
    if backend == "memory":
        return InMemoryPendingSubmissionStore(window_seconds)
    raise ValueError(f"Unknown pending store backend '{backend}'. Available: {', '.join(STORE_BACKENDS)}")


@dataclass
class PublishingContainer:
    policy: PublishingPolicy
    store: PendingSubmissionStore
    senders: TrustedSenderRepository
    articles: ArticleRepository
    webhook_logs: WebhookLogRepository
    quality_service: ContentQualityService
    media_store: MediaStore
    media_downloader: TwilioMediaDownloader
    notifier: OutboundNotifier
    broadcaster: CacheEventBroadcaster
    cache: MemoryCache
    pipeline: PublishingPipeline
    ingestor: SubmissionIngestor
    aggregator: AggregatorJob

    @classmethod
    def build(cls, policy: PublishingPolicy | None = None, **overrides: Any) -> "PublishingContainer":
        """Create every collaborator, using ``overrides`` where supplied."""
        policy = policy or settings.get_publishing_policy()

        store = overrides.get("store") or build_pending_store(
            settings.PENDING_STORE_BACKEND, policy.aggregation_window_seconds
        )
        senders = overrides.get("senders") or TrustedSenderRepository()
        articles = overrides.get("articles") or ArticleRepository()
        webhook_logs = overrides.get("webhook_logs") or WebhookLogRepository()
        quality_service = overrides.get("quality_service") or ContentQualityService()
        media_store = overrides.get("media_store") or MediaStore()
        media_downloader = overrides.get("media_downloader") or TwilioMediaDownloader()
        notifier = overrides.get("notifier") or OutboundNotifier(WhatsAppNotifier(), EmailNotifier())
        cache = overrides.get("cache")
        # The SSE route subscribes to this broadcaster, so it must be the one the cache publishes to
        broadcaster = (
            overrides.get("broadcaster")
            or (cache.broadcaster if cache is not None else None)
            or CacheEventBroadcaster()
        )
        if cache is None:
            cache = MemoryCache(
                default_ttl_seconds=settings.CACHE_DEFAULT_TTL_SECONDS,
                sweep_interval_seconds=settings.CACHE_SWEEP_INTERVAL_SECONDS,
                broadcaster=broadcaster,
            )
        elif cache.broadcaster is None:
            cache.broadcaster = broadcaster

        pipeline = PublishingPipeline(
            store=store,
            senders=senders,
            articles=articles,
            webhook_logs=webhook_logs,
            quality_service=quality_service,
            notifier=notifier,
            cache=cache,
            policy=policy,
        )
        ingestor = SubmissionIngestor(store, pipeline)
        aggregator = AggregatorJob(
            store,
            pipeline,
            interval_seconds=policy.aggregator_interval_seconds,
            batch_limit=settings.AGGREGATOR_BATCH_LIMIT,
        )

        logger.info(
            "Publishing container built",
            store_backend=type(store).__name__,
            window_seconds=policy.aggregation_window_seconds,
            ai_configured=quality_service.configured,
            media_configured=media_store.configured,
            notifier=notifier.status(),
        )

        return cls(
            policy=policy,
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
            pipeline=pipeline,
            ingestor=ingestor,
            aggregator=aggregator,
        )

    def start(self, run_aggregator: bool = True) -> None:
        self.cache.start()
        if run_aggregator:
            self.aggregator.start()

    async def dispose(self) -> None:
        """Stop background work in reverse start order."""
        await self.aggregator.stop()
        self.broadcaster.close()
        await self.cache.dispose()
