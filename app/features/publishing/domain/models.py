"""
Domain models for the inbound publishing feature.

Dataclasses describe rows the repositories hand back; pydantic models are
used where input has to be validated before it is written (article
creation, inbound fragments, AI output).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class SubmissionStatus(str, Enum):
    ACCUMULATING = "accumulating"
    PROCESSING = "processing"


class WebhookLogStatus(str, Enum):
    RECEIVED = "received"
    REJECTED = "rejected"
    PROCESSED = "processed"


class RejectionReason(str, Enum):
    INVALID_TOKEN = "invalid_token"
    TOKEN_INACTIVE = "token_inactive"
    TOKEN_EXPIRED = "token_expired"
    SENDER_MISMATCH = "sender_mismatch"
    TEXT_TOO_SHORT = "text_too_short"
    LOW_QUALITY = "low_quality"


class ArticleStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"


@dataclass(slots=True)
class PendingSubmission:
    """One in-flight submission per (sender_address, token) pair."""

    id: str
    sender_address: str
    token: str
    expires_at: datetime
    channel: Channel = Channel.WHATSAPP
    status: SubmissionStatus = SubmissionStatus.ACCUMULATING
    token_id: str | None = None
    user_id: str | None = None
    message_parts: list[str] = field(default_factory=list)
    media_urls: list[str] = field(default_factory=list)
    created_at: datetime | None = None

    @property
    def part_count(self) -> int:
        return len(self.message_parts)

    def combined_text(self, separator: str = "\n\n") -> str:
        """Rebuild the full message in arrival order."""
        return separator.join(self.message_parts)


@dataclass(slots=True)
class TrustedSender:
    """A registered sender token and its publishing policy."""

    id: str
    token: str
    owner_user_id: str
    is_active: bool
    auto_publish: bool
    default_category_id: str | None = None
    phone_number: str | None = None
    email: str | None = None
    expires_at: datetime | None = None
    usage_count: int = 0


@dataclass(slots=True)
class Category:
    id: str
    name_ar: str
    name_en: str
    slug: str | None = None


@dataclass(slots=True)
class Article:
    id: str
    slug: str
    title: str
    status: ArticleStatus


@dataclass(slots=True)
class WebhookLog:
    """Audit row for one inbound submission."""

    id: str
    channel: Channel
    sender_address: str
    message: str
    status: WebhookLogStatus = WebhookLogStatus.RECEIVED
    token: str | None = None
    token_id: str | None = None
    user_id: str | None = None
    media_urls: list[str] = field(default_factory=list)
    reason: RejectionReason | None = None
    quality_score: int | None = None
    ai_analysis: dict[str, Any] | None = None
    article_id: str | None = None
    article_link: str | None = None
    publish_status: ArticleStatus | None = None
    processing_time_ms: int | None = None


@dataclass(slots=True)
class MediaLinkRequest:
    """One stored attachment to be registered as a media file and linked to an article."""

    url: str
    file_name: str
    display_order: int
    alt_text: str
    title: str
    mime_type: str = "image/jpeg"
    locale: str = "ar"
    uploaded_by: str | None = None
    source_name: str = "WhatsApp"


class OptimizedContent(BaseModel):
    title: str = ""
    lead: str = ""
    content: str = ""
    seo_keywords: list[str] = Field(default_factory=list)


class QualityAnalysis(BaseModel):
    """Result of the content quality service: score, detection and rewrite."""

    quality_score: int = Field(default=0, ge=0, le=100)
    language: str = "ar"
    detected_category: str = ""
    has_news_value: bool = True
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    optimized: OptimizedContent = Field(default_factory=OptimizedContent)

    @field_validator("quality_score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> int:
        try:
            score = int(round(float(value)))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, score))

    def snapshot(self) -> dict[str, Any]:
        """The subset stored on the webhook log."""
        return {
            "detectedLanguage": self.language,
            "detectedCategory": self.detected_category,
            "hasNewsValue": self.has_news_value,
            "issues": list(self.issues),
        }


class SourceMetadata(BaseModel):
    """Provenance stored with an article created from an inbound submission."""

    type: str
    sender: str
    token: str
    parts_count: int = Field(ge=1)
    webhook_log_id: str


class ArticleCreate(BaseModel):
    """Validated payload for inserting an article."""

    title: str = Field(min_length=1)
    slug: str = Field(min_length=1)
    content: str = Field(min_length=1)
    excerpt: str | None = None
    image_url: str | None = None
    category_id: str | None = None
    author_id: str
    status: ArticleStatus
    published_at: datetime | None = None
    source: Channel
    source_metadata: SourceMetadata
    seo_keywords: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _published_at_matches_status(self) -> "ArticleCreate":
        if self.status == ArticleStatus.PUBLISHED and self.published_at is None:
            raise ValueError("published articles require published_at")
        if self.status == ArticleStatus.DRAFT and self.published_at is not None:
            raise ValueError("draft articles must not carry published_at")
        return self


class InboundFragment(BaseModel):
    """One parsed inbound message part, ready to be appended to a submission."""

    sender_address: str = Field(min_length=1)
    token: str = Field(min_length=1)
    message_part: str
    channel: Channel = Channel.WHATSAPP
    token_id: str | None = None
    user_id: str | None = None
    media_urls: list[str] = Field(default_factory=list)
    force_process: bool = False
