"""
Domain subpackage for the publishing feature.
"""

from .models import (
    Article,
    ArticleCreate,
    ArticleStatus,
    Category,
    Channel,
    InboundFragment,
    MediaLinkRequest,
    OptimizedContent,
    PendingSubmission,
    QualityAnalysis,
    RejectionReason,
    SourceMetadata,
    SubmissionStatus,
    TrustedSender,
    WebhookLog,
    WebhookLogStatus,
)

__all__ = [
    "Article",
    "ArticleCreate",
    "ArticleStatus",
    "Category",
    "Channel",
    "InboundFragment",
    "MediaLinkRequest",
    "OptimizedContent",
    "PendingSubmission",
    "QualityAnalysis",
    "RejectionReason",
    "SourceMetadata",
    "SubmissionStatus",
    "TrustedSender",
    "WebhookLog",
    "WebhookLogStatus",
]
