"""
Webhook log persistence.

Rows move ``received -> rejected | processed`` once. A rejected row always
carries a reason; a processed row always carries the article id.
"""

from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_one
from app.features.publishing.domain import (
    ArticleStatus,
    Channel,
    RejectionReason,
    WebhookLog,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class WebhookLogRepository:
    async def create(
        self,
        *,
        channel: Channel,
        sender_address: str,
        message: str,
        token: str | None = None,
        token_id: str | None = None,
        user_id: str | None = None,
        media_urls: list[str] | None = None,
    ) -> WebhookLog:
        query = """
            INSERT INTO webhook_logs (
                channel, sender_address, message, token, token_id, user_id,
                media_urls, status
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, 'received')
            RETURNING id
        """
        row = await fetch_one(
            query,
            (
                channel.value,
                sender_address,
                message,
                token,
                token_id,
                user_id,
                list(media_urls or []),
            ),
        )
        if not row:
            raise DatabaseError("Webhook log insert returned no row", operation="create_webhook_log")

        return WebhookLog(
            id=str(row["id"]),
            channel=channel,
            sender_address=sender_address,
            message=message,
            token=token,
            token_id=token_id,
            user_id=user_id,
            media_urls=list(media_urls or []),
        )

    async def mark_rejected(
        self,
        log_id: str,
        reason: RejectionReason,
        *,
        quality_score: int | None = None,
        ai_analysis: dict[str, Any] | None = None,
        processing_time_ms: int | None = None,
    ) -> None:
        query = """
            UPDATE webhook_logs
            SET status = 'rejected',
                reason = %s,
                quality_score = %s,
                ai_analysis = %s,
                processing_time_ms = %s,
                updated_at = NOW()
            WHERE id = %s
              AND status = 'received'
        """
        updated = await execute_query(
            query,
            (
                reason.value,
                quality_score,
                Jsonb(ai_analysis) if ai_analysis is not None else None,
                processing_time_ms,
                log_id,
            ),
        )
        if not updated:
            logger.warning(
                "Webhook log not in received state, rejection not recorded",
                webhook_log_id=log_id,
                reason=reason.value,
            )

    async def mark_processed(
        self,
        log_id: str,
        *,
        article_id: str,
        article_link: str,
        publish_status: ArticleStatus,
        quality_score: int | None,
        ai_analysis: dict[str, Any] | None,
        processing_time_ms: int,
    ) -> None:
        query = """
            UPDATE webhook_logs
            SET status = 'processed',
                article_id = %s,
                article_link = %s,
                publish_status = %s,
                quality_score = %s,
                ai_analysis = %s,
                processing_time_ms = %s,
                updated_at = NOW()
            WHERE id = %s
              AND status = 'received'
        """
        updated = await execute_query(
            query,
            (
                article_id,
                article_link,
                publish_status.value,
                quality_score,
                Jsonb(ai_analysis) if ai_analysis is not None else None,
                processing_time_ms,
                log_id,
            ),
        )
        if not updated:
            logger.warning(
                "Webhook log not in received state, completion not recorded",
                webhook_log_id=log_id,
                article_id=article_id,
            )
