"""
Publishing pipeline.

Turns one claimed PendingSubmission into an Article. Gates run strictly in
order and each one can end the run:

    log inbound -> token check -> content floor -> AI quality/rewrite
    -> slug + category -> article insert -> tags -> media links
    -> cache invalidation -> usage + final log -> sender reply

Whatever happens, the submission is deleted at the end of ``process``.
"""

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from app.config import PublishingPolicy, settings
from app.features.publishing.domain import (
    Article,
    ArticleCreate,
    ArticleStatus,
    Category,
    Channel,
    MediaLinkRequest,
    PendingSubmission,
    QualityAnalysis,
    RejectionReason,
    SourceMetadata,
    TrustedSender,
    WebhookLog,
)
from app.features.publishing.pipeline import replies
from app.features.publishing.pipeline.text import (
    build_alt_text,
    file_name_from_url,
    media_title,
    normalize_email,
    normalize_phone,
    remove_token,
    slugify,
    unique_slug,
)
from app.features.publishing.repository import (
    ArticleRepository,
    PendingSubmissionStore,
    TrustedSenderRepository,
    WebhookLogRepository,
)
from app.infrastructure.observability.logging import get_logger, mask_address
from app.services.cache import PUBLISHING_INVALIDATION_PATTERNS, MemoryCache
from app.services.content_quality_service import ContentQualityError, ContentQualityService
from app.services.notifier import NotifierError, OutboundNotifier

logger = get_logger(__name__)

SOURCE_NAMES = {
    Channel.WHATSAPP: "WhatsApp (Aggregated)",
    Channel.EMAIL: "Email",
}


class PublishingPipelineError(Exception):
    """Raised inside the pipeline when a required step cannot complete."""

    def __init__(
        self,
        message: str,
        submission_id: str | None = None,
        operation: str | None = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.submission_id = submission_id
        self.operation = operation
        self.recoverable = recoverable


class PipelineOutcome(str, Enum):
    PUBLISHED = "published"
    DRAFTED = "drafted"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(slots=True)
class PipelineResult:
    submission_id: str
    outcome: PipelineOutcome
    webhook_log_id: str | None = None
    article_id: str | None = None
    article_url: str | None = None
    reason: RejectionReason | None = None
    tags_linked: int = 0
    media_linked: int = 0
    reply_sent: bool = False
    duration_ms: int = 0


@dataclass
class PipelineMetrics:
    """Running counters across every submission this pipeline handled."""

    processed: int = 0
    published: int = 0
    drafted: int = 0
    failures: int = 0
    reply_failures: int = 0
    enrichment_failures: int = 0
    rejections: dict[str, int] = field(default_factory=dict)
    last_error: str | None = None

    def record(self, result: PipelineResult) -> None:
        self.processed += 1
        if result.outcome == PipelineOutcome.PUBLISHED:
            self.published += 1
        elif result.outcome == PipelineOutcome.DRAFTED:
            self.drafted += 1
        elif result.outcome == PipelineOutcome.REJECTED and result.reason:
            self.rejections[result.reason.value] = self.rejections.get(result.reason.value, 0) + 1
        elif result.outcome == PipelineOutcome.FAILED:
            self.failures += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "published": self.published,
            "drafted": self.drafted,
            "rejected": sum(self.rejections.values()),
            "rejections": dict(self.rejections),
            "failures": self.failures,
            "reply_failures": self.reply_failures,
            "enrichment_failures": self.enrichment_failures,
            "last_error": self.last_error,
        }


class PublishingPipeline:
    """Sequential state machine from pending submission to published article."""

    def __init__(
        self,
        *,
        store: PendingSubmissionStore,
        senders: TrustedSenderRepository,
        articles: ArticleRepository,
        webhook_logs: WebhookLogRepository,
        quality_service: ContentQualityService,
        notifier: OutboundNotifier,
        cache: MemoryCache,
        policy: PublishingPolicy | None = None,
    ):
        self.store = store
        self.senders = senders
        self.articles = articles
        self.webhook_logs = webhook_logs
        self.quality_service = quality_service
        self.notifier = notifier
        self.cache = cache
        self.policy = policy or settings.get_publishing_policy()
        self.metrics = PipelineMetrics()

    async def process(self, submission: PendingSubmission) -> PipelineResult:
        """
        Run every gate for a claimed submission.

        Never raises: unexpected errors are logged, answered with the generic
        failure reply and counted. The submission is deleted in all cases.
        """
        started = time.monotonic()
        log = logger.bind(submission_id=submission.id, sender=mask_address(submission.sender_address))
        log.info(
            "Processing submission",
            parts=submission.part_count,
            media=len(submission.media_urls),
            channel=submission.channel.value,
        )

        try:
            result = await self._run(submission, started)
        except Exception as e:
            log.exception("Publishing pipeline failed", error_type=type(e).__name__)
            self.metrics.last_error = f"{type(e).__name__}: {e}"
            reply_sent = await self._send_reply(submission.sender_address, replies.failure_reply())
            result = PipelineResult(
                submission_id=submission.id,
                outcome=PipelineOutcome.FAILED,
                reply_sent=reply_sent,
            )
        finally:
            await self._cleanup(submission)

        result.duration_ms = self._elapsed_ms(started)
        self.metrics.record(result)
        log.info(
            "Submission finished",
            outcome=result.outcome.value,
            reason=result.reason.value if result.reason else None,
            article_id=result.article_id,
            duration_ms=result.duration_ms,
        )
        return result

    async def _run(self, submission: PendingSubmission, started: float) -> PipelineResult:
        combined_text = submission.combined_text()
        media_urls = list(submission.media_urls)

        webhook_log = await self.webhook_logs.create(
            channel=submission.channel,
            sender_address=submission.sender_address,
            message=combined_text,
            token=submission.token,
            token_id=submission.token_id,
            user_id=submission.user_id,
            media_urls=media_urls,
        )

        sender = await self.senders.get_by_token(submission.token)
        auth_failure = self._authorization_failure(sender, submission)
        if auth_failure is not None:
            return await self._reject(submission, webhook_log, auth_failure, started)

        clean_text = remove_token(combined_text)
        if not media_urls and len(clean_text.strip()) < self.policy.min_text_length:
            return await self._reject(submission, webhook_log, RejectionReason.TEXT_TOO_SHORT, started)

        categories = await self.articles.list_categories()
        try:
            analysis = await self.quality_service.analyze_and_rewrite(
                clean_text, self.policy.target_language, categories
            )
        except ContentQualityError as e:
            raise PublishingPipelineError(
                f"Content analysis failed: {e}",
                submission_id=submission.id,
                operation="content_quality",
                recoverable=e.recoverable,
            ) from e

        if (
            analysis.quality_score < self.policy.min_quality_score
            or not analysis.has_news_value
        ):
            result = await self._reject(
                submission, webhook_log, RejectionReason.LOW_QUALITY, started, analysis=analysis
            )
            result.reply_sent = await self._send_reply(
                submission.sender_address, replies.low_quality_reply(analysis.issues)
            )
            return result

        article = await self._create_article(submission, webhook_log, sender, analysis, categories, clean_text)
        article_url = settings.article_url(article.slug)

        tags_linked = await self._link_tags(article, analysis.optimized.seo_keywords)
        media_linked = await self._link_media(article, submission, sender, analysis)

        groups = self.cache.invalidate_patterns(PUBLISHING_INVALIDATION_PATTERNS)
        logger.debug("Cache invalidated for new article", article_id=article.id, groups=groups)

        await self._record_usage(sender)
        await self.webhook_logs.mark_processed(
            webhook_log.id,
            article_id=article.id,
            article_link=article_url,
            publish_status=article.status,
            quality_score=analysis.quality_score,
            ai_analysis=analysis.snapshot(),
            processing_time_ms=self._elapsed_ms(started),
        )

        if article.status == ArticleStatus.PUBLISHED:
            body = replies.published_reply(article_url, submission.part_count)
            outcome = PipelineOutcome.PUBLISHED
        else:
            body = replies.draft_reply(submission.part_count)
            outcome = PipelineOutcome.DRAFTED

        reply_sent = await self._send_reply(submission.sender_address, body)

        return PipelineResult(
            submission_id=submission.id,
            outcome=outcome,
            webhook_log_id=webhook_log.id,
            article_id=article.id,
            article_url=article_url,
            tags_linked=tags_linked,
            media_linked=media_linked,
            reply_sent=reply_sent,
        )

    def _authorization_failure(
        self, sender: TrustedSender | None, submission: PendingSubmission
    ) -> RejectionReason | None:
        if sender is None:
            return RejectionReason.INVALID_TOKEN
        if not sender.is_active:
            return RejectionReason.TOKEN_INACTIVE
        if sender.expires_at is not None and sender.expires_at <= datetime.now(UTC):
            return RejectionReason.TOKEN_EXPIRED

        if submission.channel == Channel.EMAIL:
            bound = normalize_email(sender.email)
            incoming = normalize_email(submission.sender_address)
        else:
            bound = normalize_phone(sender.phone_number)
            incoming = normalize_phone(submission.sender_address)

        # Tokens without a bound address accept any sender
        if bound and bound != incoming:
            return RejectionReason.SENDER_MISMATCH
        return None

    async def _reject(
        self,
        submission: PendingSubmission,
        webhook_log: WebhookLog,
        reason: RejectionReason,
        started: float,
        *,
        analysis: QualityAnalysis | None = None,
    ) -> PipelineResult:
        await self.webhook_logs.mark_rejected(
            webhook_log.id,
            reason,
            quality_score=analysis.quality_score if analysis else None,
            ai_analysis=analysis.snapshot() if analysis else None,
            processing_time_ms=self._elapsed_ms(started),
        )
        logger.info(
            "Submission rejected",
            submission_id=submission.id,
            webhook_log_id=webhook_log.id,
            reason=reason.value,
            token=submission.token,
        )
        return PipelineResult(
            submission_id=submission.id,
            outcome=PipelineOutcome.REJECTED,
            webhook_log_id=webhook_log.id,
            reason=reason,
        )

    @staticmethod
    def _resolve_category(detected: str, categories: list[Category]) -> str | None:
        """Category whose Arabic or English name matches the AI label, else none."""
        if not detected:
            return None
        for category in categories:
            if detected in (category.name_ar, category.name_en):
                return category.id
        return None

    async def _create_article(
        self,
        submission: PendingSubmission,
        webhook_log: WebhookLog,
        sender: TrustedSender,
        analysis: QualityAnalysis,
        categories: list[Category],
        clean_text: str,
    ) -> Article:
        optimized = analysis.optimized
        title = optimized.title.strip() or _fallback_title(clean_text)
        status = ArticleStatus.PUBLISHED if sender.auto_publish else ArticleStatus.DRAFT

        payload = ArticleCreate(
            title=title,
            slug=unique_slug(title),
            content=optimized.content or clean_text,
            excerpt=optimized.lead or None,
            image_url=submission.media_urls[0] if submission.media_urls else None,
            category_id=self._resolve_category(analysis.detected_category, categories),
            author_id=sender.owner_user_id,
            status=status,
            published_at=datetime.now(UTC) if status == ArticleStatus.PUBLISHED else None,
            source=submission.channel,
            source_metadata=SourceMetadata(
                type=f"{submission.channel.value}_aggregated",
                sender=submission.sender_address,
                token=submission.token,
                parts_count=max(1, submission.part_count),
                webhook_log_id=webhook_log.id,
            ),
            seo_keywords=optimized.seo_keywords,
        )
        return await self.articles.create_article(payload)

    async def _link_tags(self, article: Article, keywords: list[str]) -> int:
        linked = 0
        for keyword in keywords[: self.policy.max_tag_keywords]:
            name = keyword.strip()
            if len(name) < 2:
                continue
            slug = slugify(name)
            if not slug:
                continue

            try:
                tag_id = await self.articles.find_or_create_tag(name, slug)
                await self.articles.link_tag(article.id, tag_id)
                linked += 1
            except Exception as e:
                self.metrics.enrichment_failures += 1
                logger.warning(
                    "Failed to link tag",
                    article_id=article.id,
                    keyword=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return linked

    async def _link_media(
        self,
        article: Article,
        submission: PendingSubmission,
        sender: TrustedSender,
        analysis: QualityAnalysis,
    ) -> int:
        linked = 0
        title = article.title
        lead = analysis.optimized.lead
        for index, url in enumerate(submission.media_urls):
            request = MediaLinkRequest(
                url=url,
                file_name=file_name_from_url(url, index),
                display_order=index,
                alt_text=build_alt_text(title, lead, index, self.policy.max_alt_text_length),
                title=media_title(title, index),
                locale=self.policy.target_language,
                uploaded_by=sender.owner_user_id,
                source_name=SOURCE_NAMES.get(submission.channel, submission.channel.value),
            )
            try:
                await self.articles.link_media(article.id, request)
                linked += 1
            except Exception as e:
                self.metrics.enrichment_failures += 1
                logger.warning(
                    "Failed to link media",
                    article_id=article.id,
                    display_order=index,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return linked

    async def _record_usage(self, sender: TrustedSender) -> None:
        try:
            await self.senders.increment_usage(sender.id)
        except Exception as e:
            logger.warning("Failed to update sender usage", sender_id=sender.id, error=str(e))

    async def _send_reply(self, address: str, body: str) -> bool:
        """Best-effort reply. Failures are logged and counted, never raised."""
        try:
            result = await self.notifier.send_reply(address, body)
        except NotifierError as e:
            self.metrics.reply_failures += 1
            logger.warning(
                "Reply not sent, notifier unavailable",
                to=mask_address(address),
                provider=e.provider,
                error=str(e),
            )
            return False
        except Exception as e:
            self.metrics.reply_failures += 1
            logger.exception("Reply delivery raised", to=mask_address(address), error=str(e))
            return False

        if not result.success:
            self.metrics.reply_failures += 1
            logger.warning(
                "Reply delivery failed",
                to=mask_address(address),
                provider=result.provider,
                error_code=result.error_code,
                requires_template=result.requires_template,
            )
        return result.success

    async def _cleanup(self, submission: PendingSubmission) -> None:
        try:
            await self.store.delete(submission.id)
        except Exception:
            logger.exception("Failed to delete pending submission", submission_id=submission.id)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def _fallback_title(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:120]
    return "خبر جديد"
