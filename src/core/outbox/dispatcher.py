"""
Outbox Dispatcher

Background worker that polls the outbox and delivers events with bounded
retries and exponential backoff.

Each poll:
1. claims due events (NEW, or FAILED with retries left and backoff elapsed)
2. sends them through the DeliveryClient, concurrently and each under its
   own timeout
3. marks each one SENT or FAILED

Workers keep no state between polls; everything they coordinate on lives in
the EventStore, so any number of dispatchers can run against one table.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from ..observability import create_span, record_counter, record_histogram
from .config import OutboxConfig
from .delivery import DeliveryClient
from .models import BatchResult, OutboxEvent
from .retry_policy import RetryPolicy
from .store import EventStore

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
DEAD = "dead"
LOST = "lost"


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxDispatcher:
    """
    Delivers outbox events.

    Features:
    - Atomic claim, so concurrent workers never deliver the same event at once
    - Per-attempt timeout; a stalled destination only costs its own events
    - Bounded concurrency within a batch
    - Backoff and dead-lettering through RetryPolicy
    - Optional reclaim of claims abandoned by a crashed worker; results are
      written only while the row still carries this worker's claim
    """

    def __init__(
        self,
        store: EventStore,
        client: DeliveryClient,
        config: Optional[OutboxConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.client = client
        self.config = config or OutboxConfig()
        self.retry_policy = retry_policy or self.config.retry_policy()
        self._clock = clock
        self._running = False
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the polling workers."""
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"outbox-dispatcher-{i}")
            for i in range(self.config.worker_count)
        ]
        logger.info(
            "OutboxDispatcher started",
            extra={"workers": self.config.worker_count, "batch_size": self.config.batch_size}
        )

    async def stop(self, drain_timeout: Optional[float] = None):
        """
        Stop the workers.

        Workers finish the batch in hand if they can do so within
        drain_timeout (default: one delivery timeout); anything still running
        after that is cancelled and its rows stay PROCESSING until requeued.
        """
        if not self._tasks:
            self._running = False
            return

        self._running = False
        self._stop_event.set()
        timeout = self.config.delivery_timeout if drain_timeout is None else drain_timeout

        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("OutboxDispatcher cancelled %d busy worker(s)", len(pending))

        self._tasks = []
        logger.info("OutboxDispatcher stopped")

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run(self, worker: int):
        """Main processing loop for one worker."""
        while self._running:
            try:
                result = await self.dispatch_once()
                if result.claimed == 0:
                    await self._sleep(self.config.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"OutboxDispatcher worker {worker} error: {e}", exc_info=True)
                await self._sleep(self.config.poll_interval)

    async def dispatch_once(self) -> BatchResult:
        """
        Claim and deliver one batch.

        Delivery failures are recorded on the events; storage errors propagate.
        """
        now = self._clock()

        if self.config.reclaim_after is not None:
            await self._reclaim_stale(now)

        events = await self.store.claim_batch(self.config.batch_size, now)
        if not events:
            return BatchResult()

        record_counter("outbox_claimed_total", len(events))
        claimed_ids = [event.event_id for event in events]
        self.store.in_flight.update(claimed_ids)
        semaphore = asyncio.Semaphore(self.config.delivery_concurrency)
        try:
            outcomes = await asyncio.gather(
                *(self._deliver(event, semaphore) for event in events),
                return_exceptions=True,
            )
        finally:
            self.store.in_flight.difference_update(claimed_ids)

        result = BatchResult(claimed=len(events))
        errors = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                errors.append(outcome)
            elif outcome == SENT:
                result.sent += 1
            elif outcome in (FAILED, DEAD):
                result.failed += 1
                if outcome == DEAD:
                    result.dead += 1

        if errors:
            # Every delivery in the batch has settled; surface the first storage error
            raise errors[0]

        logger.debug(
            "Outbox batch done: claimed=%d sent=%d failed=%d dead=%d",
            result.claimed, result.sent, result.failed, result.dead
        )
        return result

    async def _reclaim_stale(self, now: datetime):
        older_than = now - timedelta(seconds=self.config.reclaim_after)
        reclaimed = await self.store.requeue_stale(older_than, now, exclude=self.store.in_flight)
        for event in reclaimed:
            logger.warning(
                f"Reclaimed outbox event {event.event_id} stuck in PROCESSING",
                extra={"event_id": event.event_id, "event_type": event.type}
            )

    async def _attempt(self, event: OutboxEvent) -> Optional[str]:
        """Send one event. Returns None on success, else the failure detail."""
        timeout = self.config.delivery_timeout
        try:
            await asyncio.wait_for(
                self.client.send(event.type, event.payload),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return f"delivery timed out after {timeout:g}s"
        except Exception as e:
            return str(e) or type(e).__name__
        return None

    async def _deliver(self, event: OutboxEvent, semaphore: asyncio.Semaphore) -> str:
        """Deliver a single claimed event and persist the outcome."""
        async with semaphore:
            attributes = {
                "outbox.event_id": event.event_id,
                "outbox.event_type": event.type,
                "outbox.retry_count": event.retry_count,
            }
            with create_span("outbox.deliver", attributes) as span:
                started = time.monotonic()
                error = await self._attempt(event)
                record_histogram(
                    "outbox_delivery_duration_seconds",
                    time.monotonic() - started,
                    {"event_type": event.type},
                )

                if error is None:
                    outcome = await self._mark_sent(event)
                else:
                    outcome = await self._mark_failed(event, error)
                span.set_attribute("outbox.outcome", outcome)
                return outcome

    async def _mark_sent(self, event: OutboxEvent) -> str:
        sent = await self.store.mark_sent(event.event_id, self._clock(), claimed_at=event.updated_at)
        if sent is None:
            logger.warning(
                f"Outbox event {event.event_id} delivered but its claim was taken over",
                extra={"event_id": event.event_id}
            )
            return LOST

        record_counter("outbox_delivered_total", 1, {"event_type": event.type})
        logger.debug(f"Delivered outbox event {event.event_id}")
        return SENT

    async def _mark_failed(self, event: OutboxEvent, error: str) -> str:
        now = self._clock()
        retry_count = min(event.retry_count + 1, event.max_retries)
        decision = self.retry_policy.decide(retry_count, event.max_retries, now, now)
        next_attempt_at = None if decision.dead else decision.retry_at

        failed = await self.store.mark_failed(
            event.event_id, error, next_attempt_at, now, claimed_at=event.updated_at
        )
        if failed is None:
            logger.warning(
                f"Outbox event {event.event_id} failed but its claim was taken over: {error}",
                extra={"event_id": event.event_id}
            )
            return LOST

        record_counter("outbox_failed_total", 1, {"event_type": event.type})

        if decision.dead:
            record_counter("outbox_dead_total", 1, {"event_type": event.type})
            logger.error(
                f"Outbox event {event.event_id} exhausted {failed.max_retries} retries: {error}",
                extra={"event_id": event.event_id, "event_type": event.type, "retry_count": failed.retry_count}
            )
            return DEAD

        logger.warning(
            f"Outbox event {event.event_id} failed (retry {failed.retry_count}/{failed.max_retries}), "
            f"retry at {next_attempt_at.isoformat()}: {error}",
            extra={"event_id": event.event_id, "event_type": event.type}
        )
        return FAILED


# Global dispatcher instance
_dispatcher: Optional[OutboxDispatcher] = None


async def start_outbox_dispatcher(
    store: EventStore,
    client: DeliveryClient,
    config: Optional[OutboxConfig] = None,
) -> OutboxDispatcher:
    """Start the global outbox dispatcher."""
    global _dispatcher

    if _dispatcher is None:
        _dispatcher = OutboxDispatcher(store, client, config)

    await _dispatcher.start()
    return _dispatcher


async def stop_outbox_dispatcher():
    """Stop the global outbox dispatcher."""
    global _dispatcher
    if _dispatcher:
        await _dispatcher.stop()
        _dispatcher = None


def get_outbox_dispatcher() -> Optional[OutboxDispatcher]:
    """Get the global outbox dispatcher instance."""
    return _dispatcher
