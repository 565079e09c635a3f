"""
Tests for the pending submission stores.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.features.publishing.domain import Channel, SubmissionStatus
from app.features.publishing.repository import (
    InMemoryPendingSubmissionStore,
    PostgresPendingSubmissionStore,
    SubmissionBusyError,
)

SENDER = "+966500000001"


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.mark.asyncio
async def test_fragments_are_joined_in_arrival_order(store):
    for part in ("A", "B", "C"):
        submission, _ = await store.append_fragment(SENDER, "ABC123", part)

    assert submission.combined_text() == "A\n\nB\n\nC"
    assert submission.part_count == 3


@pytest.mark.asyncio
async def test_first_fragment_is_reported(store):
    first, is_first = await store.append_fragment(SENDER, "ABC123", "one", ["https://x/1.jpg"])
    second, is_second_first = await store.append_fragment(SENDER, "ABC123", "two", ["https://x/2.jpg"])

    assert is_first is True
    assert is_second_first is False
    assert first.id == second.id
    assert second.media_urls == ["https://x/1.jpg", "https://x/2.jpg"]


@pytest.mark.asyncio
async def test_different_tokens_are_separate_submissions(store):
    a, _ = await store.append_fragment(SENDER, "TOKEN1", "a")
    b, _ = await store.append_fragment(SENDER, "TOKEN2", "b")

    assert a.id != b.id


@pytest.mark.asyncio
async def test_concurrent_claims_return_submission_once(store):
    submission, _ = await store.append_fragment(SENDER, "ABC123", "text")

    results = await asyncio.gather(*(store.claim_one(submission.id) for _ in range(10)))

    claimed = [result for result in results if result is not None]
    assert len(claimed) == 1
    assert claimed[0].status == SubmissionStatus.PROCESSING
    assert await store.claim_one(submission.id) is None


@pytest.mark.asyncio
async def test_claim_expired_and_claim_one_never_share(store):
    submission, _ = await store.append_fragment(SENDER, "ABC123", "text")

    expired, single = await asyncio.gather(store.claim_expired(), store.claim_one(submission.id))

    winners = len(expired) + (1 if single else 0)
    assert winners == 1
    assert await store.claim_expired() == []


@pytest.mark.asyncio
async def test_window_delays_claim_until_expiry():
    clock = FakeClock()
    store = InMemoryPendingSubmissionStore(window_seconds=30, clock=clock)
    await store.append_fragment(SENDER, "ABC123", "first")

    clock.advance(20)
    await store.append_fragment(SENDER, "ABC123", "second")
    clock.advance(20)
    # Expiry was reset by the second fragment
    assert await store.claim_expired() == []

    clock.advance(11)
    claimed = await store.claim_expired()
    assert len(claimed) == 1
    assert claimed[0].message_parts == ["first", "second"]


@pytest.mark.asyncio
async def test_claim_expired_respects_limit_and_order():
    clock = FakeClock()
    store = InMemoryPendingSubmissionStore(window_seconds=0, clock=clock)
    for index in range(3):
        await store.append_fragment(f"+96650000000{index}", "ABC123", f"text {index}")
        clock.advance(1)

    first_batch = await store.claim_expired(limit=2)
    second_batch = await store.claim_expired()

    assert [s.sender_address for s in first_batch] == ["+966500000000", "+966500000001"]
    assert [s.sender_address for s in second_batch] == ["+966500000002"]


@pytest.mark.asyncio
async def test_delete_is_idempotent(store):
    submission, _ = await store.append_fragment(SENDER, "ABC123", "text")
    await store.claim_one(submission.id)

    assert await store.delete(submission.id) is True
    assert await store.delete(submission.id) is False
    assert await store.get(submission.id) is None
    assert await store.claim_one(submission.id) is None


@pytest.mark.asyncio
async def test_delete_frees_key_for_new_submission(store):
    submission, _ = await store.append_fragment(SENDER, "ABC123", "old")
    await store.delete(submission.id)

    fresh, is_first = await store.append_fragment(SENDER, "ABC123", "new")

    assert is_first is True
    assert fresh.id != submission.id
    assert fresh.message_parts == ["new"]


@pytest.mark.asyncio
async def test_append_after_claim_opens_new_submission(store):
    submission, _ = await store.append_fragment(SENDER, "ABC123", "text")
    await store.claim_one(submission.id)

    late, is_first = await store.append_fragment(SENDER, "ABC123", "late")

    assert is_first is True
    assert late.id != submission.id
    assert late.message_parts == ["late"]
    assert (await store.get(submission.id)).message_parts == ["text"]
    assert await store.stats() == {"accumulating": 1, "processing": 1}


@pytest.mark.asyncio
async def test_deleting_claimed_submission_keeps_new_open_one(store):
    await store.append_fragment(SENDER, "ABC123", "first")
    (claimed,) = await store.claim_expired()
    late, _ = await store.append_fragment(SENDER, "ABC123", "second")

    await store.delete(claimed.id)
    again, is_first = await store.append_fragment(SENDER, "ABC123", "third")

    assert is_first is False
    assert again.id == late.id
    assert again.message_parts == ["second", "third"]


@pytest.mark.asyncio
async def test_returned_submissions_are_copies(store):
    submission, _ = await store.append_fragment(SENDER, "ABC123", "text")
    submission.message_parts.append("mutated")

    stored = await store.get(submission.id)
    assert stored.message_parts == ["text"]


@pytest.mark.asyncio
async def test_stats_counts_by_status(store):
    a, _ = await store.append_fragment(SENDER, "T1", "a")
    await store.append_fragment(SENDER, "T2", "b")
    await store.claim_one(a.id)

    assert await store.stats() == {"accumulating": 1, "processing": 1}


def _row(**overrides):
    row = {
        "id": "11111111-1111-1111-1111-111111111111",
        "sender_address": SENDER,
        "token": "ABC123",
        "channel": "whatsapp",
        "token_id": None,
        "user_id": None,
        "message_parts": ["A", "B"],
        "media_urls": [],
        "status": "processing",
        "expires_at": datetime(2026, 1, 1, tzinfo=UTC),
        "created_at": datetime(2026, 1, 1, tzinfo=UTC),
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_postgres_claim_one_is_single_guarded_update(monkeypatch):
    fetch_one = AsyncMock(return_value=_row())
    monkeypatch.setattr("app.features.publishing.repository.submissions.fetch_one", fetch_one)

    claimed = await PostgresPendingSubmissionStore().claim_one("11111111-1111-1111-1111-111111111111")

    query, params = fetch_one.await_args.args
    normalized = " ".join(query.split())
    assert normalized.startswith("UPDATE pending_submissions SET status = 'processing'")
    assert "AND status = 'accumulating'" in normalized
    assert "RETURNING" in normalized
    assert params == ("11111111-1111-1111-1111-111111111111",)
    assert claimed.status == SubmissionStatus.PROCESSING
    assert claimed.combined_text() == "A\n\nB"


@pytest.mark.asyncio
async def test_postgres_claim_one_returns_none_when_already_claimed(monkeypatch):
    monkeypatch.setattr(
        "app.features.publishing.repository.submissions.fetch_one", AsyncMock(return_value=None)
    )

    assert await PostgresPendingSubmissionStore().claim_one("missing") is None


@pytest.mark.asyncio
async def test_postgres_claim_expired_skips_locked_rows(monkeypatch):
    fetch_all = AsyncMock(return_value=[_row()])
    monkeypatch.setattr("app.features.publishing.repository.submissions.fetch_all", fetch_all)

    claimed = await PostgresPendingSubmissionStore().claim_expired(limit=5)

    query, params = fetch_all.await_args.args
    normalized = " ".join(query.split())
    assert "expires_at <= NOW()" in normalized
    assert "FOR UPDATE SKIP LOCKED" in normalized
    assert normalized.count("status = 'accumulating'") == 2
    assert params == (5,)
    assert len(claimed) == 1


@pytest.mark.asyncio
async def test_postgres_append_upserts_only_accumulating_rows(monkeypatch):
    fetch_one = AsyncMock(return_value={**_row(status="accumulating", message_parts=["A"]), "inserted": True})
    monkeypatch.setattr("app.features.publishing.repository.submissions.fetch_one", fetch_one)

    store = PostgresPendingSubmissionStore(window_seconds=15)
    submission, is_first = await store.append_fragment(
        SENDER, "ABC123", "A", channel=Channel.EMAIL, user_id="user-1"
    )

    query, params = fetch_one.await_args.args
    normalized = " ".join(query.split())
    assert "ON CONFLICT (sender_address, token) WHERE status = 'accumulating' DO UPDATE" in normalized
    assert "WHERE pending_submissions.status = 'accumulating'" in normalized
    assert params[2] == "email"
    assert params[-1] == 15
    assert is_first is True
    assert submission.status == SubmissionStatus.ACCUMULATING


@pytest.mark.asyncio
async def test_postgres_append_without_row_is_busy(monkeypatch):
    monkeypatch.setattr(
        "app.features.publishing.repository.submissions.fetch_one", AsyncMock(return_value=None)
    )

    with pytest.raises(SubmissionBusyError):
        await PostgresPendingSubmissionStore().append_fragment(SENDER, "ABC123", "late")


@pytest.mark.asyncio
async def test_postgres_delete_reports_missing_rows(monkeypatch):
    execute = AsyncMock(side_effect=[1, 0])
    monkeypatch.setattr("app.features.publishing.repository.submissions.execute_query", execute)

    store = PostgresPendingSubmissionStore()
    assert await store.delete("id-1") is True
    assert await store.delete("id-1") is False
