"""
Pending submission store.

At most one ``accumulating`` row per (sender_address, token) collects message
fragments until the aggregation window passes. Claims flip ``accumulating`` to
``processing`` in a single conditional write so a submission is handed to the
pipeline once. A claimed row no longer owns its key: a fragment that arrives
while it is being processed opens a new submission.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.features.publishing.domain import Channel, PendingSubmission, SubmissionStatus
from app.infrastructure.observability.logging import get_logger, mask_address

logger = get_logger(__name__)


class PendingSubmissionError(DatabaseError):
    """Raised when the pending submission store cannot complete an operation."""


class SubmissionBusyError(PendingSubmissionError):
    """
    The open submission was claimed between the conflict check and the append.

    Retrying the append opens a new submission for the late fragment.
    """

    def __init__(self, sender_address: str, token: str):
        super().__init__(
            "Submission is already being processed",
            operation="append_fragment",
            recoverable=True,
        )
        self.sender_address = sender_address
        self.token = token


class PendingSubmissionStore(ABC):
    """Contract shared by the Postgres and in-memory stores."""

    def __init__(self, window_seconds: float = 0.0):
        self.window_seconds = max(0.0, float(window_seconds))

    @abstractmethod
    async def append_fragment(
        self,
        sender_address: str,
        token: str,
        fragment_text: str,
        media_urls: list[str] | None = None,
        *,
        channel: Channel = Channel.WHATSAPP,
        token_id: str | None = None,
        user_id: str | None = None,
    ) -> tuple[PendingSubmission, bool]:
        """Append a fragment, reset the expiry, and report whether the row is new."""

    @abstractmethod
    async def claim_expired(self, limit: int | None = None) -> list[PendingSubmission]:
        """Claim every accumulating submission whose window has passed."""

    @abstractmethod
    async def claim_one(self, submission_id: str) -> PendingSubmission | None:
        """Claim a single submission; None if it is gone or already claimed."""

    @abstractmethod
    async def get(self, submission_id: str) -> PendingSubmission | None:
        """Fetch a submission by id."""

    @abstractmethod
    async def delete(self, submission_id: str) -> bool:
        """Remove a submission. Returns False if it was already gone."""

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Row counts per status."""


class PostgresPendingSubmissionStore(PendingSubmissionStore):
    """Store backed by the ``pending_submissions`` table."""

    SELECT_COLUMNS = """
        id, sender_address, token, channel, token_id, user_id,
        message_parts, media_urls, status, expires_at, created_at
    """

    @staticmethod
    def _row_to_submission(row: dict | None) -> PendingSubmission | None:
        if not row:
            return None

        return PendingSubmission(
            id=str(row["id"]),
            sender_address=row["sender_address"],
            token=row["token"],
            channel=Channel(row.get("channel") or Channel.WHATSAPP.value),
            token_id=str(row["token_id"]) if row.get("token_id") else None,
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            message_parts=list(row.get("message_parts") or []),
            media_urls=list(row.get("media_urls") or []),
            status=SubmissionStatus(row["status"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at"),
        )

    async def append_fragment(
        self,
        sender_address: str,
        token: str,
        fragment_text: str,
        media_urls: list[str] | None = None,
        *,
        channel: Channel = Channel.WHATSAPP,
        token_id: str | None = None,
        user_id: str | None = None,
    ) -> tuple[PendingSubmission, bool]:
        # xmax = 0 only for freshly inserted tuples
        query = f"""
            INSERT INTO pending_submissions (
                sender_address, token, channel, token_id, user_id,
                message_parts, media_urls, status, expires_at
            )
            VALUES (
                %s, %s, %s, %s, %s,
                ARRAY[%s]::text[], %s::text[], 'accumulating',
                NOW() + make_interval(secs => %s)
            )
            ON CONFLICT (sender_address, token) WHERE status = 'accumulating' DO UPDATE SET
                message_parts = pending_submissions.message_parts || EXCLUDED.message_parts,
                media_urls = pending_submissions.media_urls || EXCLUDED.media_urls,
                token_id = COALESCE(EXCLUDED.token_id, pending_submissions.token_id),
                user_id = COALESCE(EXCLUDED.user_id, pending_submissions.user_id),
                expires_at = EXCLUDED.expires_at,
                updated_at = NOW()
            WHERE pending_submissions.status = 'accumulating'
            RETURNING {self.SELECT_COLUMNS}, (xmax = 0) AS inserted
        """

        row = await fetch_one(
            query,
            (
                sender_address,
                token,
                channel.value,
                token_id,
                user_id,
                fragment_text,
                list(media_urls or []),
                self.window_seconds,
            ),
        )

        if not row:
            raise SubmissionBusyError(sender_address, token)

        submission = self._row_to_submission(row)
        is_first = bool(row.get("inserted"))
        logger.debug(
            "Fragment appended to pending submission",
            submission_id=submission.id,
            sender=mask_address(sender_address),
            parts=submission.part_count,
            is_first=is_first,
        )
        return submission, is_first

    async def claim_expired(self, limit: int | None = None) -> list[PendingSubmission]:
        query = f"""
            UPDATE pending_submissions
            SET status = 'processing',
                updated_at = NOW()
            WHERE id IN (
                SELECT id FROM pending_submissions
                WHERE status = 'accumulating'
                  AND expires_at <= NOW()
                ORDER BY expires_at
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            AND status = 'accumulating'
            RETURNING {self.SELECT_COLUMNS}
        """

        rows = await fetch_all(query, (limit,))
        claimed = [self._row_to_submission(row) for row in rows]
        claimed.sort(key=lambda submission: submission.expires_at)

        if claimed:
            logger.info("Claimed expired submissions", count=len(claimed))
        return claimed

    async def claim_one(self, submission_id: str) -> PendingSubmission | None:
        query = f"""
            UPDATE pending_submissions
            SET status = 'processing',
                updated_at = NOW()
            WHERE id = %s
              AND status = 'accumulating'
            RETURNING {self.SELECT_COLUMNS}
        """

        row = await fetch_one(query, (submission_id,))
        return self._row_to_submission(row)

    async def get(self, submission_id: str) -> PendingSubmission | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM pending_submissions WHERE id = %s"
        return self._row_to_submission(await fetch_one(query, (submission_id,)))

    async def delete(self, submission_id: str) -> bool:
        deleted = await execute_query(
            "DELETE FROM pending_submissions WHERE id = %s", (submission_id,)
        )
        return deleted > 0

    async def stats(self) -> dict[str, int]:
        rows = await fetch_all(
            "SELECT status, COUNT(*) AS total FROM pending_submissions GROUP BY status"
        )
        counts = {status.value: 0 for status in SubmissionStatus}
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts


class InMemoryPendingSubmissionStore(PendingSubmissionStore):
    """
    Process-local store for single-process deployments and tests.

    Every mutation runs under one asyncio.Lock, which makes the
    status check and the flip to ``processing`` a single step. ``_open``
    only indexes accumulating submissions.
    """

    def __init__(
        self,
        window_seconds: float = 0.0,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(window_seconds)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = asyncio.Lock()
        self._by_id: dict[str, PendingSubmission] = {}
        self._open: dict[tuple[str, str], str] = {}

    def _copy(self, submission: PendingSubmission) -> PendingSubmission:
        return PendingSubmission(
            id=submission.id,
            sender_address=submission.sender_address,
            token=submission.token,
            expires_at=submission.expires_at,
            channel=submission.channel,
            status=submission.status,
            token_id=submission.token_id,
            user_id=submission.user_id,
            message_parts=list(submission.message_parts),
            media_urls=list(submission.media_urls),
            created_at=submission.created_at,
        )

    def _release_key(self, submission: PendingSubmission) -> None:
        key = (submission.sender_address, submission.token)
        if self._open.get(key) == submission.id:
            del self._open[key]

    def _mark_processing(self, submission: PendingSubmission) -> None:
        submission.status = SubmissionStatus.PROCESSING
        self._release_key(submission)

    async def append_fragment(
        self,
        sender_address: str,
        token: str,
        fragment_text: str,
        media_urls: list[str] | None = None,
        *,
        channel: Channel = Channel.WHATSAPP,
        token_id: str | None = None,
        user_id: str | None = None,
    ) -> tuple[PendingSubmission, bool]:
        async with self._lock:
            now = self._clock()
            expires_at = now + timedelta(seconds=self.window_seconds)
            existing_id = self._open.get((sender_address, token))
            existing = self._by_id.get(existing_id) if existing_id else None

            if existing is None:
                submission = PendingSubmission(
                    id=str(uuid.uuid4()),
                    sender_address=sender_address,
                    token=token,
                    expires_at=expires_at,
                    channel=channel,
                    token_id=token_id,
                    user_id=user_id,
                    message_parts=[fragment_text],
                    media_urls=list(media_urls or []),
                    created_at=now,
                )
                self._by_id[submission.id] = submission
                self._open[(sender_address, token)] = submission.id
                return self._copy(submission), True

            existing.message_parts.append(fragment_text)
            existing.media_urls.extend(media_urls or [])
            existing.token_id = token_id or existing.token_id
            existing.user_id = user_id or existing.user_id
            existing.expires_at = expires_at
            return self._copy(existing), False

    async def claim_expired(self, limit: int | None = None) -> list[PendingSubmission]:
        async with self._lock:
            now = self._clock()
            due = sorted(
                (
                    submission
                    for submission in self._by_id.values()
                    if submission.status == SubmissionStatus.ACCUMULATING
                    and submission.expires_at <= now
                ),
                key=lambda submission: submission.expires_at,
            )
            if limit is not None:
                due = due[:limit]

            for submission in due:
                self._mark_processing(submission)
            return [self._copy(submission) for submission in due]

    async def claim_one(self, submission_id: str) -> PendingSubmission | None:
        async with self._lock:
            submission = self._by_id.get(submission_id)
            if submission is None or submission.status != SubmissionStatus.ACCUMULATING:
                return None
            self._mark_processing(submission)
            return self._copy(submission)

    async def get(self, submission_id: str) -> PendingSubmission | None:
        async with self._lock:
            submission = self._by_id.get(submission_id)
            return self._copy(submission) if submission else None

    async def delete(self, submission_id: str) -> bool:
        async with self._lock:
            submission = self._by_id.pop(submission_id, None)
            if submission is None:
                return False
            self._release_key(submission)
            return True

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            counts = {status.value: 0 for status in SubmissionStatus}
            for submission in self._by_id.values():
                counts[submission.status.value] += 1
            return counts
