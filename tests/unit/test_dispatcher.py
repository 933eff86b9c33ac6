"""
Tests for the outbox dispatcher.

Most tests drive dispatch_once() by hand with a FakeClock so backoff windows
can be stepped through deterministically.
"""

import asyncio
import time
import pytest
from datetime import timedelta

from src.core.outbox.delivery import DeliveryError
from src.core.outbox.dispatcher import OutboxDispatcher
from src.core.outbox.models import OutboxStatus
from src.core.outbox.store import EventStore
from tests.fakes import AlwaysFailingClient, ScriptedClient


def make_dispatcher(store, client, config, clock):
    return OutboxDispatcher(store, client, config, clock=clock)


class TestDispatchOnce:
    """Test a single claim-deliver-resolve pass."""

    @pytest.mark.asyncio
    async def test_empty_outbox(self, store, config, clock):
        dispatcher = make_dispatcher(store, ScriptedClient(), config, clock)
        result = await dispatcher.dispatch_once()
        assert result.claimed == 0

    @pytest.mark.asyncio
    async def test_success_marks_sent(self, store, config, clock):
        client = ScriptedClient()
        event = await store.insert("BOOKING_CONFIRMED", {"booking_id": 42}, max_retries=3, now=clock())

        result = await make_dispatcher(store, client, config, clock).dispatch_once()

        assert (result.claimed, result.sent, result.failed) == (1, 1, 0)
        assert client.calls == [("BOOKING_CONFIRMED", {"booking_id": 42})]
        sent = await store.get(event.event_id)
        assert sent.status == OutboxStatus.SENT
        assert sent.sent_at == clock()
        assert sent.retry_count == 0

    @pytest.mark.asyncio
    async def test_failure_records_error_and_backoff(self, store, config, clock):
        client = ScriptedClient([DeliveryError("HTTP 500: boom")])
        event = await store.insert("A", {}, max_retries=3, now=clock())

        result = await make_dispatcher(store, client, config, clock).dispatch_once()

        assert (result.claimed, result.sent, result.failed, result.dead) == (1, 0, 1, 0)
        failed = await store.get(event.event_id)
        assert failed.status == OutboxStatus.FAILED
        assert failed.retry_count == 1
        assert failed.last_error == "HTTP 500: boom"
        assert failed.next_attempt_at == clock() + timedelta(seconds=config.backoff_base)

    @pytest.mark.asyncio
    async def test_empty_exception_message_uses_class_name(self, store, config, clock):
        client = ScriptedClient([RuntimeError()])
        event = await store.insert("A", {}, max_retries=3, now=clock())

        await make_dispatcher(store, client, config, clock).dispatch_once()

        assert (await store.get(event.event_id)).last_error == "RuntimeError"


class TestRetryLifecycle:
    """Test events across several polls."""

    @pytest.mark.asyncio
    async def test_booking_confirmed_fails_twice_then_succeeds(self, store, config, clock):
        client = ScriptedClient([
            DeliveryError("HTTP 500: first"),
            DeliveryError("HTTP 502: second"),
            None,
        ])
        dispatcher = make_dispatcher(store, client, config, clock)
        event = await store.insert("BOOKING_CONFIRMED", {"booking_id": 7}, max_retries=3, now=clock())

        await dispatcher.dispatch_once()
        clock.advance(1)
        assert (await dispatcher.dispatch_once()).claimed == 0

        clock.advance(4)
        await dispatcher.dispatch_once()
        clock.advance(10)
        result = await dispatcher.dispatch_once()

        assert result.sent == 1
        final = await store.get(event.event_id)
        assert final.status == OutboxStatus.SENT
        assert final.retry_count == 2
        assert final.last_error == "HTTP 502: second"
        assert final.sent_at == clock()
        assert len(client.calls) == 3

    @pytest.mark.asyncio
    async def test_retry_exhaustion(self, store, config, clock):
        """max_retries=2: after two failed attempts the event rests in FAILED."""
        client = AlwaysFailingClient()
        dispatcher = make_dispatcher(store, client, config, clock)
        event = await store.insert("A", {}, max_retries=2, now=clock())

        await dispatcher.dispatch_once()
        clock.advance(config.backoff_base)
        result = await dispatcher.dispatch_once()

        assert result.dead == 1
        exhausted = await store.get(event.event_id)
        assert exhausted.status == OutboxStatus.FAILED
        assert exhausted.retry_count == 2
        assert exhausted.next_attempt_at is None

        clock.advance(86400)
        assert (await dispatcher.dispatch_once()).claimed == 0
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_manual_retry_of_exhausted_event(self, store, config, clock):
        """An operator retry gets one more attempt; a further failure re-exhausts."""
        client = ScriptedClient([DeliveryError("down"), DeliveryError("still down")])
        dispatcher = make_dispatcher(store, client, config, clock)
        event = await store.insert("A", {}, max_retries=1, now=clock())
        await dispatcher.dispatch_once()

        await store.requeue_failed(event.event_id, clock())
        result = await dispatcher.dispatch_once()

        assert result.dead == 1
        again = await store.get(event.event_id)
        assert again.status == OutboxStatus.FAILED
        assert again.retry_count == 1
        assert again.last_error == "still down"

        await store.requeue_failed(event.event_id, clock())
        await dispatcher.dispatch_once()
        sent = await store.get(event.event_id)
        assert sent.status == OutboxStatus.SENT
        assert sent.retry_count == 1

    @pytest.mark.asyncio
    async def test_zero_max_retries_fails_once_and_stays(self, store, config, clock):
        client = AlwaysFailingClient()
        dispatcher = make_dispatcher(store, client, config, clock)
        event = await store.insert("A", {}, max_retries=0, now=clock())

        result = await dispatcher.dispatch_once()

        assert result.dead == 1
        failed = await store.get(event.event_id)
        assert failed.retry_count == 0
        assert failed.status == OutboxStatus.FAILED


class TestConcurrency:
    """Test timeouts and concurrent dispatchers."""

    @pytest.mark.asyncio
    async def test_timeout_does_not_stall_batch(self, store, config, clock):
        config.delivery_timeout = 0.05
        client = ScriptedClient([1.0, None])
        slow = await store.insert("SLOW", {}, max_retries=3, now=clock())
        fast = await store.insert("FAST", {}, max_retries=3, now=clock.advance(1))

        started = time.monotonic()
        result = await make_dispatcher(store, client, config, clock).dispatch_once()
        elapsed = time.monotonic() - started

        assert elapsed < 0.9
        assert (result.sent, result.failed) == (1, 1)
        timed_out = await store.get(slow.event_id)
        assert timed_out.status == OutboxStatus.FAILED
        assert timed_out.last_error == "delivery timed out after 0.05s"
        assert (await store.get(fast.event_id)).status == OutboxStatus.SENT

    @pytest.mark.asyncio
    async def test_concurrent_dispatchers_deliver_each_event_once(self, store, config, clock):
        config.batch_size = 5
        client = ScriptedClient()
        for i in range(30):
            await store.insert("A", {"n": i}, max_retries=3, now=clock())

        dispatchers = [make_dispatcher(store, client, config, clock) for _ in range(4)]
        while True:
            results = await asyncio.gather(*(d.dispatch_once() for d in dispatchers))
            if sum(r.claimed for r in results) == 0:
                break

        delivered = sorted(payload["n"] for _, payload in client.calls)
        assert delivered == list(range(30))
        assert await store.count() == 30
        stats = await store.stats()
        assert stats["by_status"]["SENT"] == 30

    @pytest.mark.asyncio
    async def test_reclaims_abandoned_claims_when_enabled(self, store, config, clock):
        config.reclaim_after = 60.0
        client = ScriptedClient()
        event = await store.insert("A", {}, max_retries=3, now=clock())
        await store.claim_batch(10, clock())

        dispatcher = make_dispatcher(store, client, config, clock)
        assert (await dispatcher.dispatch_once()).claimed == 0

        clock.advance(120)
        result = await dispatcher.dispatch_once()

        assert result.sent == 1
        assert (await store.get(event.event_id)).status == OutboxStatus.SENT


class TrackingClient:
    """Succeeds after a delay and records how many sends overlap."""

    def __init__(self, delay: float):
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def send(self, event_type, payload):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1


class TestReclaimSafety:
    """Test that reclaim never hands an in-flight event to a second worker."""

    @pytest.mark.asyncio
    async def test_in_flight_claim_is_not_reclaimed(self, store, config, clock):
        config.reclaim_after = 60.0
        client = TrackingClient(delay=0.3)
        event = await store.insert("BOOKING_CONFIRMED", {"booking_id": 42}, max_retries=3, now=clock())
        first = make_dispatcher(store, client, config, clock)
        second = make_dispatcher(store, client, config, clock)

        delivering = asyncio.create_task(first.dispatch_once())
        for _ in range(100):
            if client.active:
                break
            await asyncio.sleep(0.01)
        assert client.active == 1

        clock.advance(120)
        result = await second.dispatch_once()
        assert result.claimed == 0

        assert (await delivering).sent == 1
        assert client.calls == 1
        assert client.max_active == 1
        assert (await store.get(event.event_id)).status == OutboxStatus.SENT
        assert store.in_flight == set()

    @pytest.mark.asyncio
    async def test_late_result_from_superseded_claim_is_dropped(self, db, config, clock):
        # Two stores on one database stand in for two processes
        config.reclaim_after = 60.0
        slow_store, other_store = EventStore(db), EventStore(db)
        event = await slow_store.insert("A", {}, max_retries=3, now=clock())
        slow = make_dispatcher(slow_store, TrackingClient(delay=0.3), config, clock)
        other_client = TrackingClient(delay=0.6)
        other = make_dispatcher(other_store, other_client, config, clock)

        delivering = asyncio.create_task(slow.dispatch_once())
        await asyncio.sleep(0.05)
        clock.advance(120)
        taking_over = asyncio.create_task(other.dispatch_once())

        # The slow worker finishes while the row is held by the newer claim
        slow_result = await delivering
        assert slow_result.sent == 0
        assert (await slow_store.get(event.event_id)).status == OutboxStatus.PROCESSING

        assert (await taking_over).sent == 1
        final = await slow_store.get(event.event_id)
        assert final.status == OutboxStatus.SENT
        assert final.retry_count == 0


class TestWorkerLoop:
    """Test start/stop of the background workers."""

    @pytest.mark.asyncio
    async def test_start_delivers_then_stops(self, store, config):
        config.worker_count = 2
        client = ScriptedClient()
        for i in range(3):
            await store.insert("A", {"n": i}, max_retries=3)

        dispatcher = OutboxDispatcher(store, client, config)
        await dispatcher.start()
        assert dispatcher.running
        try:
            for _ in range(200):
                if len(client.calls) == 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            await dispatcher.stop()

        assert not dispatcher.running
        assert len(client.calls) == 3
        assert (await store.stats())["by_status"]["SENT"] == 3

    @pytest.mark.asyncio
    async def test_stop_without_start(self, store, config):
        dispatcher = OutboxDispatcher(store, ScriptedClient(), config)
        await dispatcher.stop()
        assert not dispatcher.running
