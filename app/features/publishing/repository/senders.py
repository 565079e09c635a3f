"""Trusted sender lookups and usage accounting."""

from app.db.helpers import execute_query, fetch_one, with_db_retry
from app.features.publishing.domain import TrustedSender
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class TrustedSenderRepository:
    """Read access to ``trusted_senders`` plus the usage counter."""

    SELECT_COLUMNS = """
        id, token, owner_user_id, is_active, auto_publish, default_category_id,
        phone_number, email, expires_at, usage_count
    """

    @staticmethod
    def _row_to_sender(row: dict | None) -> TrustedSender | None:
        if not row:
            return None

        return TrustedSender(
            id=str(row["id"]),
            token=row["token"],
            owner_user_id=str(row["owner_user_id"]),
            is_active=bool(row["is_active"]),
            auto_publish=bool(row["auto_publish"]),
            default_category_id=(
                str(row["default_category_id"]) if row.get("default_category_id") else None
            ),
            phone_number=row.get("phone_number"),
            email=row.get("email"),
            expires_at=row.get("expires_at"),
            usage_count=row.get("usage_count") or 0,
        )

    @with_db_retry()
    async def get_by_token(self, token: str) -> TrustedSender | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM trusted_senders WHERE token = %s"
        return self._row_to_sender(await fetch_one(query, (token.upper(),)))

    async def increment_usage(self, sender_id: str) -> None:
        query = """
            UPDATE trusted_senders
            SET usage_count = usage_count + 1,
                last_used_at = NOW()
            WHERE id = %s
        """
        updated = await execute_query(query, (sender_id,))
        if not updated:
            logger.warning("Usage counter not updated, sender row missing", sender_id=sender_id)
