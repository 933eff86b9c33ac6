"""
Outbox Administration

Operator-facing operations on outbox events. Every mutation goes through a
conditional store update, so an operator can never move an event along an
edge the state machine does not have, even while dispatchers are running.
The row is read and locked in the same transaction, so a rejection reports
the status the update actually saw.

Legal operations:
- retry:   FAILED -> NEW (retry_count is kept; works past max_retries)
- requeue: PROCESSING -> NEW, only for claims idle longer than the stale threshold
- delete:  SENT or FAILED only
"""

import csv
import io
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..observability import record_counter
from .errors import EventNotFoundError, IllegalOperationError
from .models import (
    BulkItemResult,
    BulkResult,
    EventFilter,
    EventPage,
    OutboxEvent,
    OutboxStatus,
)
from .store import EventStore

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("outbox.audit")

MAX_PAGE_SIZE = 1000
EXPORT_COLUMNS = ["ID", "Type", "Status", "Retry Count", "Error", "Created At", "Sent At"]


class AdminAction(str, Enum):
    """Audited operator actions."""
    RETRY = "OUTBOX_EVENT_RETRIED"
    REQUEUE = "OUTBOX_EVENT_REQUEUED"
    DELETE = "OUTBOX_EVENT_DELETED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


class OutboxAdminService:
    """
    Admin operations for the outbox.

    Responsibilities:
    - List and inspect events
    - Retry failed events and requeue abandoned claims
    - Delete settled events
    - Bulk variants with per-id results
    - Statistics and CSV export
    """

    def __init__(
        self,
        store: EventStore,
        stale_after: float = 300.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.stale_after = stale_after
        self._clock = clock

    async def list(
        self,
        status: Optional[OutboxStatus] = None,
        event_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> EventPage:
        """One page of events, newest first. Read-only."""
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        event_filter = EventFilter(status=status, type=event_type)
        total = await self.store.count(event_filter)
        events = await self.store.list(event_filter, limit=limit, offset=(page - 1) * limit)
        return EventPage(events=events, total=total, page=page, limit=limit)

    async def get(self, event_id: int) -> OutboxEvent:
        event = await self.store.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def _get_locked(self, event_id: int) -> OutboxEvent:
        """Current row, held until the surrounding transaction ends."""
        event = await self.store.get_for_update(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    async def retry(self, event_id: int, operator_id: Optional[str] = None) -> OutboxEvent:
        """
        Requeue a FAILED event for delivery.

        Allowed whether or not retries are exhausted; retry_count is not reset,
        so an exhausted event that fails again is immediately exhausted again.
        """
        async with self.store.db.transaction():
            current = await self._get_locked(event_id)
            event = await self.store.requeue_failed(event_id, self._clock())
            if event is None:
                raise IllegalOperationError(
                    event_id, "retry", current.status.value,
                    "only FAILED events can be retried"
                )

        self._audit(AdminAction.RETRY, event_id, operator_id, retry_count=event.retry_count)
        return event

    async def requeue(
        self,
        event_id: int,
        operator_id: Optional[str] = None,
        older_than_seconds: Optional[float] = None,
    ) -> OutboxEvent:
        """
        Return an abandoned PROCESSING claim to NEW.

        This is the recovery path for rows left behind by a crashed worker.
        A claim touched within the threshold is assumed to be in flight.
        """
        threshold = self.stale_after if older_than_seconds is None else older_than_seconds
        now = self._clock()
        async with self.store.db.transaction():
            current = await self._get_locked(event_id)
            requeued = await self.store.requeue_stale(
                now - timedelta(seconds=threshold), now, event_id=event_id
            )
            if not requeued:
                reason = "only PROCESSING events can be requeued"
                if current.status == OutboxStatus.PROCESSING:
                    reason = f"claim is younger than {threshold:g}s and may still be in flight"
                raise IllegalOperationError(event_id, "requeue", current.status.value, reason)

        self._audit(AdminAction.REQUEUE, event_id, operator_id)
        return requeued[0]

    async def delete(self, event_id: int, operator_id: Optional[str] = None) -> None:
        """Delete a SENT or FAILED event. NEW and PROCESSING rows are undelivered work."""
        async with self.store.db.transaction():
            current = await self._get_locked(event_id)
            deleted = await self.store.delete(event_id)
            if not deleted:
                raise IllegalOperationError(
                    event_id, "delete", current.status.value,
                    "only SENT or FAILED events can be deleted"
                )

        self._audit(AdminAction.DELETE, event_id, operator_id)

    async def bulk_retry(self, event_ids: Iterable[int], operator_id: Optional[str] = None) -> BulkResult:
        result = BulkResult(operation="retry")
        for event_id in _unique(event_ids):
            result.results.append(
                await self._bulk_item(event_id, self.retry(event_id, operator_id))
            )
        logger.info(
            f"Bulk retry: {result.succeeded} succeeded, {result.failed} failed",
            extra={"operator_id": operator_id}
        )
        return result

    async def bulk_delete(self, event_ids: Iterable[int], operator_id: Optional[str] = None) -> BulkResult:
        result = BulkResult(operation="delete")
        for event_id in _unique(event_ids):
            result.results.append(
                await self._bulk_item(event_id, self.delete(event_id, operator_id))
            )
        logger.info(
            f"Bulk delete: {result.succeeded} succeeded, {result.failed} failed",
            extra={"operator_id": operator_id}
        )
        return result

    async def _bulk_item(self, event_id: int, operation) -> BulkItemResult:
        try:
            event = await operation
        except EventNotFoundError as e:
            return BulkItemResult(event_id=event_id, ok=False, error_code="OUTBOX_EVENT_NOT_FOUND", message=str(e))
        except IllegalOperationError as e:
            return BulkItemResult(
                event_id=event_id,
                ok=False,
                status=OutboxStatus(e.status),
                error_code="ILLEGAL_OUTBOX_OPERATION",
                message=str(e),
            )
        status = event.status if isinstance(event, OutboxEvent) else None
        return BulkItemResult(event_id=event_id, ok=True, status=status)

    async def stats(self) -> Dict[str, Any]:
        """Counts by status and type, and how many claims look abandoned."""
        stale_before = self._clock() - timedelta(seconds=self.stale_after)
        stats = await self.store.stats(stale_before=stale_before)
        stats["exhausted"] = await self.store.count_exhausted()
        stats["healthy"] = stats["stuck"] == 0
        return stats

    async def export_csv(
        self,
        status: Optional[OutboxStatus] = None,
        event_type: Optional[str] = None,
    ) -> str:
        """All matching events as CSV, newest first."""
        event_filter = EventFilter(status=status, type=event_type)
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(EXPORT_COLUMNS)

        offset = 0
        while True:
            events = await self.store.list(event_filter, limit=MAX_PAGE_SIZE, offset=offset)
            for e in events:
                writer.writerow([
                    e.event_id,
                    e.type,
                    e.status.value,
                    f"{e.retry_count}/{e.max_retries}",
                    e.last_error or "",
                    _isoformat(e.created_at),
                    _isoformat(e.sent_at),
                ])
            if len(events) < MAX_PAGE_SIZE:
                break
            offset += MAX_PAGE_SIZE

        return buffer.getvalue()

    def _audit(self, action: AdminAction, event_id: int, operator_id: Optional[str], **details):
        """Log an operator action for audit."""
        record_counter("outbox_admin_actions_total", 1, {"action": action.value})
        audit_logger.info(
            f"{action.value} on {event_id} by {operator_id or 'unknown'}",
            extra={
                "action": action.value,
                "target_type": "OUTBOX_EVENT",
                "target_id": event_id,
                "operator_id": operator_id,
                **details,
            }
        )


def _unique(event_ids: Iterable[int]) -> List[int]:
    seen = set()
    ordered = []
    for event_id in event_ids:
        if event_id not in seen:
            seen.add(event_id)
            ordered.append(event_id)
    return ordered

