from .articles import ArticleRepository
from .senders import TrustedSenderRepository
from .submissions import (
    InMemoryPendingSubmissionStore,
    PendingSubmissionError,
    PendingSubmissionStore,
    PostgresPendingSubmissionStore,
    SubmissionBusyError,
)
from .webhook_logs import WebhookLogRepository

__all__ = [
    "ArticleRepository",
    "InMemoryPendingSubmissionStore",
    "PendingSubmissionError",
    "PendingSubmissionStore",
    "PostgresPendingSubmissionStore",
    "SubmissionBusyError",
    "TrustedSenderRepository",
    "WebhookLogRepository",
]
