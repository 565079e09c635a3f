import itertools

import pytest

from app.config import PublishingPolicy
from app.features.publishing.domain import (
    Article,
    ArticleCreate,
    Category,
    MediaLinkRequest,
    OptimizedContent,
    QualityAnalysis,
    RejectionReason,
    TrustedSender,
    WebhookLog,
    WebhookLogStatus,
)
from app.features.publishing.pipeline.publisher import PublishingPipeline
from app.features.publishing.repository import InMemoryPendingSubmissionStore
from app.services.cache import CacheEventBroadcaster, MemoryCache
from app.services.media_store import DownloadedMedia, StoredMedia, is_image
from app.services.notifier import SendResult

_ids = itertools.count(1)


def _next_id(prefix: str) -> str:
    return f"{prefix}-{next(_ids)}"


class FakeSenders:
    def __init__(self):
        self.by_token: dict[str, TrustedSender] = {}
        self.usage: dict[str, int] = {}

    def add(self, token: str = "ABC123", **overrides) -> TrustedSender:
        fields = {
            "id": _next_id("sender"),
            "token": token,
            "owner_user_id": "user-1",
            "is_active": True,
            "auto_publish": True,
            "phone_number": "+966500000001",
        }
        fields.update(overrides)
        sender = TrustedSender(**fields)
        self.by_token[token.upper()] = sender
        return sender

    async def get_by_token(self, token: str) -> TrustedSender | None:
        return self.by_token.get((token or "").upper())

    async def increment_usage(self, sender_id: str) -> None:
        self.usage[sender_id] = self.usage.get(sender_id, 0) + 1


class FakeArticles:
    """In-memory articles, tags and media with the same conflict rules as the tables."""

    def __init__(self):
        self.categories = [
            Category(id="cat-economy", name_ar="اقتصاد", name_en="Economy", slug="economy"),
            Category(id="cat-sports", name_ar="رياضة", name_en="Sports", slug="sports"),
        ]
        self.articles: dict[str, ArticleCreate] = {}
        self.tags: dict[str, str] = {}
        self.article_tags: set[tuple[str, str]] = set()
        self.media: list[tuple[str, MediaLinkRequest]] = []
        self.failing_tag_slugs: set[str] = set()
        self.failing_media_orders: set[int] = set()

    async def list_categories(self) -> list[Category]:
        return list(self.categories)

    async def create_article(self, payload: ArticleCreate) -> Article:
        article_id = _next_id("article")
        self.articles[article_id] = payload
        return Article(id=article_id, slug=payload.slug, title=payload.title, status=payload.status)

    async def find_or_create_tag(self, name: str, slug: str) -> str:
        if slug in self.failing_tag_slugs:
            raise RuntimeError(f"tag insert failed for {slug}")
        if slug not in self.tags:
            self.tags[slug] = _next_id("tag")
        return self.tags[slug]

    async def link_tag(self, article_id: str, tag_id: str) -> bool:
        key = (article_id, tag_id)
        if key in self.article_tags:
            return False
        self.article_tags.add(key)
        return True

    async def link_media(self, article_id: str, request: MediaLinkRequest) -> str:
        if request.display_order in self.failing_media_orders:
            raise RuntimeError("media insert failed")
        self.media.append((article_id, request))
        return _next_id("media")

    def tags_for(self, article_id: str) -> list[str]:
        return [tag_id for a_id, tag_id in self.article_tags if a_id == article_id]


class FakeWebhookLogs:
    """Keeps the received -> rejected|processed rules of the real repository."""

    def __init__(self):
        self.logs: dict[str, WebhookLog] = {}

    async def create(self, *, channel, sender_address, message, token=None, token_id=None, user_id=None, media_urls=None):
        log = WebhookLog(
            id=_next_id("log"),
            channel=channel,
            sender_address=sender_address,
            message=message,
            token=token,
            token_id=token_id,
            user_id=user_id,
            media_urls=list(media_urls or []),
        )
        self.logs[log.id] = log
        return log

    async def mark_rejected(self, log_id, reason, *, quality_score=None, ai_analysis=None, processing_time_ms=None):
        log = self.logs[log_id]
        assert log.status == WebhookLogStatus.RECEIVED
        assert isinstance(reason, RejectionReason)
        log.status = WebhookLogStatus.REJECTED
        log.reason = reason
        log.quality_score = quality_score
        log.ai_analysis = ai_analysis
        log.processing_time_ms = processing_time_ms

    async def mark_processed(
        self,
        log_id,
        *,
        article_id,
        article_link,
        publish_status,
        quality_score=None,
        ai_analysis=None,
        processing_time_ms=None,
    ):
        log = self.logs[log_id]
        assert log.status == WebhookLogStatus.RECEIVED
        assert article_id
        log.status = WebhookLogStatus.PROCESSED
        log.article_id = article_id
        log.article_link = article_link
        log.publish_status = publish_status
        log.quality_score = quality_score
        log.ai_analysis = ai_analysis
        log.processing_time_ms = processing_time_ms

    def by_status(self, status: WebhookLogStatus) -> list[WebhookLog]:
        return [log for log in self.logs.values() if log.status == status]


class FakeQualityService:
    configured = True

    def __init__(self, analysis: QualityAnalysis | None = None, error: Exception | None = None):
        self.analysis = analysis or build_analysis()
        self.error = error
        self.calls: list[tuple[str, str, list[Category]]] = []

    async def analyze_and_rewrite(self, text, language="ar", categories=()):
        self.calls.append((text, language, list(categories)))
        if self.error:
            raise self.error
        return self.analysis


class FakeNotifier:
    def __init__(self, success: bool = True, error: Exception | None = None):
        self.success = success
        self.error = error
        self.sent: list[tuple[str, str]] = []

    async def send_reply(self, address: str, body: str) -> SendResult:
        if self.error:
            raise self.error
        self.sent.append((address, body))
        return SendResult(success=self.success, provider="fake", attempts=1)

    def status(self) -> dict[str, bool]:
        return {"whatsapp": True, "email": True}


class FakeMediaStore:
    configured = True

    def __init__(self):
        self.uploads: list[tuple[str, str, int]] = []

    async def upload(self, data, file_name, content_type, *, prefix="inbound"):
        self.uploads.append((file_name, content_type, len(data)))
        public = is_image(content_type)
        return StoredMedia(
            path=f"{prefix}/{file_name}",
            bucket="public-media" if public else "private-media",
            url=f"https://cdn.example.com/{prefix}/{file_name}",
            content_type=content_type,
            is_public=public,
            size=len(data),
        )


class FakeMediaDownloader:
    def __init__(self, content_type: str = "image/jpeg"):
        self.content_type = content_type
        self.requested: list[str] = []

    async def download(self, url, index, content_type=None):
        self.requested.append(url)
        resolved = content_type or self.content_type
        return DownloadedMedia(data=b"bytes", content_type=resolved, file_name=f"whatsapp-media-{index + 1}.jpg")


def build_analysis(
    score: int = 85,
    has_news_value: bool = True,
    title: str = "ارتفاع السوق",
    lead: str = "ارتفع مؤشر السوق اليوم بنسبة خمسة بالمئة",
    content: str = "ارتفع مؤشر السوق اليوم بنسبة خمسة بالمئة وسط تداولات نشطة.",
    keywords: list[str] | None = None,
    category: str = "اقتصاد",
    issues: list[str] | None = None,
) -> QualityAnalysis:
    return QualityAnalysis(
        quality_score=score,
        language="ar",
        detected_category=category,
        has_news_value=has_news_value,
        issues=issues or [],
        optimized=OptimizedContent(
            title=title,
            lead=lead,
            content=content,
            seo_keywords=keywords if keywords is not None else ["السوق", "اقتصاد", "تداول"],
        ),
    )


@pytest.fixture
def make_analysis():
    return build_analysis


@pytest.fixture
def policy():
    return PublishingPolicy()


@pytest.fixture
def store():
    return InMemoryPendingSubmissionStore(window_seconds=0)


@pytest.fixture
def senders():
    return FakeSenders()


@pytest.fixture
def articles():
    return FakeArticles()


@pytest.fixture
def webhook_logs():
    return FakeWebhookLogs()


@pytest.fixture
def quality_service():
    return FakeQualityService()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def broadcaster():
    return CacheEventBroadcaster()


@pytest.fixture
def cache(broadcaster):
    return MemoryCache(broadcaster=broadcaster)


@pytest.fixture
def pipeline(store, senders, articles, webhook_logs, quality_service, notifier, cache, policy):
    return PublishingPipeline(
        store=store,
        senders=senders,
        articles=articles,
        webhook_logs=webhook_logs,
        quality_service=quality_service,
        notifier=notifier,
        cache=cache,
        policy=policy,
    )


@pytest.fixture
def media_store():
    return FakeMediaStore()


@pytest.fixture
def media_downloader():
    return FakeMediaDownloader()
