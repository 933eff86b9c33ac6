"""
Tests for the outbox event store (SQLite backend).
"""

import asyncio
import pytest
from datetime import timedelta

from src.core.outbox.models import EventFilter, OutboxStatus
from src.core.outbox.store import MAX_ERROR_LENGTH


class TestInsert:
    """Test EventStore.insert."""

    @pytest.mark.asyncio
    async def test_insert_new_event(self, store, clock):
        event = await store.insert("BOOKING_CONFIRMED", {"booking_id": 42}, max_retries=3, now=clock())

        assert event.event_id > 0
        assert event.type == "BOOKING_CONFIRMED"
        assert event.payload == {"booking_id": 42}
        assert event.status == OutboxStatus.NEW
        assert event.retry_count == 0
        assert event.max_retries == 3
        assert event.last_error is None
        assert event.sent_at is None
        assert event.created_at == clock()

    @pytest.mark.asyncio
    async def test_ids_increase(self, store):
        first = await store.insert("A", {}, max_retries=1)
        second = await store.insert("A", {}, max_retries=1)
        assert second.event_id > first.event_id

    @pytest.mark.asyncio
    async def test_rejects_bad_input(self, store):
        with pytest.raises(ValueError):
            await store.insert("", {}, max_retries=1)
        with pytest.raises(ValueError):
            await store.insert("A", {}, max_retries=-1)
        with pytest.raises(ValueError):
            await store.insert("A", {"bad": object()}, max_retries=1)
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_insert_rolls_back_with_transaction(self, db, store):
        """An event written inside a failed transaction never becomes visible."""
        with pytest.raises(RuntimeError):
            async with db.transaction():
                await store.insert("BOOKING_CONFIRMED", {"booking_id": 1}, max_retries=3)
                raise RuntimeError("business write failed")

        assert await store.count() == 0


class TestClaim:
    """Test EventStore.claim_batch."""

    @pytest.mark.asyncio
    async def test_claim_moves_to_processing(self, store, clock):
        created = await store.insert("A", {"n": 1}, max_retries=3, now=clock())

        claimed = await store.claim_batch(10, clock.advance(1))

        assert [e.event_id for e in claimed] == [created.event_id]
        assert claimed[0].status == OutboxStatus.PROCESSING
        assert claimed[0].updated_at == clock()

    @pytest.mark.asyncio
    async def test_processing_rows_are_not_reclaimed(self, store):
        await store.insert("A", {}, max_retries=3)
        assert len(await store.claim_batch(10)) == 1
        assert await store.claim_batch(10) == []

    @pytest.mark.asyncio
    async def test_respects_limit_and_age_order(self, store, clock):
        ids = []
        for i in range(5):
            event = await store.insert("A", {"n": i}, max_retries=3, now=clock.advance(1))
            ids.append(event.event_id)

        claimed = await store.claim_batch(2, clock.advance(1))

        assert [e.event_id for e in claimed] == ids[:2]

    @pytest.mark.asyncio
    async def test_failed_event_waits_for_backoff(self, store, clock):
        event = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())
        await store.mark_failed(event.event_id, "boom", clock() + timedelta(seconds=30), clock())

        assert await store.claim_batch(10, clock.advance(29)) == []
        reclaimed = await store.claim_batch(10, clock.advance(1))
        assert [e.event_id for e in reclaimed] == [event.event_id]

    @pytest.mark.asyncio
    async def test_exhausted_event_is_never_claimed(self, store, clock):
        event = await store.insert("A", {}, max_retries=1, now=clock())
        await store.claim_batch(10, clock())
        failed = await store.mark_failed(event.event_id, "boom", None, clock())

        assert failed.retry_count == 1
        assert await store.claim_batch(10, clock.advance(86400)) == []

    @pytest.mark.asyncio
    async def test_concurrent_claimers_never_share_an_event(self, store):
        """N concurrent claimers over M events: every event claimed exactly once."""
        for i in range(50):
            await store.insert("A", {"n": i}, max_retries=3)

        batches = await asyncio.gather(*(store.claim_batch(7) for _ in range(10)))

        claimed_ids = [e.event_id for batch in batches for e in batch]
        assert len(claimed_ids) == len(set(claimed_ids))
        assert len(claimed_ids) == 50


class TestTransitions:
    """Test mark_sent / mark_failed and the row invariants."""

    @pytest.mark.asyncio
    async def test_mark_sent_sets_sent_at(self, store, clock):
        event = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())

        sent = await store.mark_sent(event.event_id, clock.advance(2))

        assert sent.status == OutboxStatus.SENT
        assert sent.sent_at == clock()
        assert sent.updated_at == clock()

    @pytest.mark.asyncio
    async def test_mark_sent_requires_processing(self, store):
        event = await store.insert("A", {}, max_retries=3)
        assert await store.mark_sent(event.event_id) is None
        assert (await store.get(event.event_id)).status == OutboxStatus.NEW

    @pytest.mark.asyncio
    async def test_mark_failed_counts_and_truncates(self, store, clock):
        event = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())

        failed = await store.mark_failed(event.event_id, "x" * 5000, None, clock())

        assert failed.status == OutboxStatus.FAILED
        assert failed.retry_count == 1
        assert len(failed.last_error) == MAX_ERROR_LENGTH
        assert failed.sent_at is None

    @pytest.mark.asyncio
    async def test_retry_count_saturates_at_max(self, store, clock):
        """A failure after an operator retry of an exhausted event keeps retry_count at the cap."""
        event = await store.insert("A", {}, max_retries=1, now=clock())
        await store.claim_batch(10, clock())
        await store.mark_failed(event.event_id, "first", None, clock())
        await store.requeue_failed(event.event_id, clock())
        await store.claim_batch(10, clock())

        failed = await store.mark_failed(event.event_id, "second", None, clock())

        assert failed.retry_count == 1
        assert failed.last_error == "second"

    @pytest.mark.asyncio
    async def test_last_error_survives_success(self, store, clock):
        event = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())
        await store.mark_failed(event.event_id, "timeout", None, clock())
        await store.claim_batch(10, clock())

        sent = await store.mark_sent(event.event_id, clock())

        assert sent.last_error == "timeout"
        assert sent.retry_count == 1


class TestQueries:
    """Test get, list, count and stats."""

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get(999) is None

    @pytest.mark.asyncio
    async def test_list_newest_first_with_filters(self, store, clock):
        a = await store.insert("A", {}, max_retries=3, now=clock.advance(1))
        b = await store.insert("B", {}, max_retries=3, now=clock.advance(1))
        c = await store.insert("A", {}, max_retries=3, now=clock.advance(1))
        await store.claim_batch(1, clock())

        everything = await store.list()
        assert [e.event_id for e in everything] == [c.event_id, b.event_id, a.event_id]

        only_a = await store.list(EventFilter(type="A"))
        assert [e.event_id for e in only_a] == [c.event_id, a.event_id]

        processing = await store.list(EventFilter(status=OutboxStatus.PROCESSING))
        assert [e.event_id for e in processing] == [a.event_id]

        assert await store.count(EventFilter(status=OutboxStatus.NEW, type="A")) == 1

    @pytest.mark.asyncio
    async def test_list_paging(self, store, clock):
        for i in range(5):
            await store.insert("A", {"n": i}, max_retries=3, now=clock.advance(1))

        page = await store.list(limit=2, offset=2)

        assert [e.payload["n"] for e in page] == [2, 1]

    @pytest.mark.asyncio
    async def test_stats(self, store, clock):
        await store.insert("A", {}, max_retries=3, now=clock())
        await store.insert("B", {}, max_retries=3, now=clock())
        await store.insert("B", {}, max_retries=3, now=clock())
        await store.claim_batch(1, clock())

        stats = await store.stats(stale_before=clock.advance(600))

        assert stats["by_status"] == {"NEW": 2, "PROCESSING": 1, "SENT": 0, "FAILED": 0}
        assert stats["by_type"] == {"B": 2, "A": 1}
        assert stats["total"] == 3
        assert stats["stuck"] == 1


class TestOperatorTransitions:
    """Test delete, requeue_failed and requeue_stale."""

    @pytest.mark.asyncio
    async def test_delete_only_settled_events(self, store):
        event = await store.insert("A", {}, max_retries=3)
        assert await store.delete(event.event_id) is False

        await store.claim_batch(10)
        assert await store.delete(event.event_id) is False
        assert (await store.get(event.event_id)).status == OutboxStatus.PROCESSING

        await store.mark_sent(event.event_id)
        assert await store.delete(event.event_id) is True
        assert await store.get(event.event_id) is None

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        assert await store.delete(12345) is False

    @pytest.mark.asyncio
    async def test_requeue_failed_keeps_history(self, store, clock):
        event = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())
        await store.mark_failed(event.event_id, "boom", clock() + timedelta(seconds=60), clock())

        requeued = await store.requeue_failed(event.event_id, clock.advance(1))

        assert requeued.status == OutboxStatus.NEW
        assert requeued.retry_count == 1
        assert requeued.last_error == "boom"
        assert requeued.next_attempt_at is None

    @pytest.mark.asyncio
    async def test_requeue_failed_rejects_other_states(self, store):
        event = await store.insert("A", {}, max_retries=3)
        assert await store.requeue_failed(event.event_id) is None

    @pytest.mark.asyncio
    async def test_requeue_stale(self, store, clock):
        old = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())
        fresh = await store.insert("A", {}, max_retries=3, now=clock.advance(600))
        await store.claim_batch(10, clock())

        requeued = await store.requeue_stale(clock() - timedelta(seconds=300), clock())

        assert [e.event_id for e in requeued] == [old.event_id]
        assert requeued[0].status == OutboxStatus.NEW
        assert (await store.get(fresh.event_id)).status == OutboxStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_requeue_stale_single_event(self, store, clock):
        first = await store.insert("A", {}, max_retries=3, now=clock())
        second = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())
        clock.advance(600)

        requeued = await store.requeue_stale(clock(), clock(), event_id=second.event_id)

        assert [e.event_id for e in requeued] == [second.event_id]
        assert (await store.get(first.event_id)).status == OutboxStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_requeue_stale_skips_excluded(self, store, clock):
        busy = await store.insert("A", {}, max_retries=3, now=clock())
        idle = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())
        clock.advance(600)

        requeued = await store.requeue_stale(clock(), clock(), exclude={busy.event_id})

        assert [e.event_id for e in requeued] == [idle.event_id]
        assert (await store.get(busy.event_id)).status == OutboxStatus.PROCESSING


class TestClaimFencing:
    """Test that results are only recorded against the claim that produced them."""

    @pytest.mark.asyncio
    async def test_superseded_claim_cannot_resolve(self, store, clock):
        event = await store.insert("A", {}, max_retries=3, now=clock())
        [first_claim] = await store.claim_batch(10, clock())
        await store.requeue_stale(clock.advance(600), clock())
        [second_claim] = await store.claim_batch(10, clock.advance(1))
        assert second_claim.updated_at != first_claim.updated_at

        assert await store.mark_sent(event.event_id, clock(), claimed_at=first_claim.updated_at) is None
        assert await store.mark_failed(
            event.event_id, "late", None, clock(), claimed_at=first_claim.updated_at
        ) is None
        unchanged = await store.get(event.event_id)
        assert unchanged.status == OutboxStatus.PROCESSING
        assert unchanged.retry_count == 0
        assert unchanged.last_error is None

        sent = await store.mark_sent(event.event_id, clock(), claimed_at=second_claim.updated_at)
        assert sent.status == OutboxStatus.SENT

    @pytest.mark.asyncio
    async def test_current_claim_can_fail(self, store, clock):
        event = await store.insert("A", {}, max_retries=3, now=clock())
        [claimed] = await store.claim_batch(10, clock())

        failed = await store.mark_failed(
            event.event_id, "boom", None, clock.advance(1), claimed_at=claimed.updated_at
        )

        assert failed.status == OutboxStatus.FAILED
        assert failed.retry_count == 1
