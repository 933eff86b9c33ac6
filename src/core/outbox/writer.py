"""
Outbox Writer

Writes events to the outbox table within the same transaction as your
business logic for guaranteed delivery.
"""

import logging
from typing import Optional, Any, List, Tuple, Union
from contextlib import asynccontextmanager

from ..database.adapter import DatabaseAdapter, get_database
from .config import OutboxConfig
from .models import OutboxEvent
from .store import EventStore

logger = logging.getLogger(__name__)


class OutboxWriter:
    """
    Writes events to the outbox for reliable delivery.

    Usage:
        writer = OutboxWriter(db)
        async with db.transaction():
            await db.execute("UPDATE bookings SET status = 'CONFIRMED' ...")
            await writer.write("BOOKING_CONFIRMED", {"booking_id": 42}, max_retries=3)
        # Both rows commit together or neither does
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        config: Optional[OutboxConfig] = None,
    ):
        self._db = db
        self._config = config or OutboxConfig()

    async def _get_store(self) -> EventStore:
        if self._db is None:
            self._db = await get_database()
        return EventStore(self._db)

    async def write(
        self,
        event_type: str,
        payload: Any,
        max_retries: Optional[int] = None,
    ) -> OutboxEvent:
        """
        Write an event to the outbox.

        Args:
            event_type: Routing tag for the destination (e.g., "BOOKING_CONFIRMED")
            payload: JSON-serializable event body, opaque to the dispatcher
            max_retries: Automatic retry cap; defaults to OUTBOX_DEFAULT_MAX_RETRIES

        Returns:
            The created OutboxEvent in status NEW
        """
        store = await self._get_store()
        if max_retries is None:
            max_retries = self._config.default_max_retries

        event = await store.insert(event_type, payload, max_retries)

        logger.debug(
            "Wrote event to outbox: id=%s type=%s max_retries=%s",
            event.event_id, event.type, event.max_retries
        )
        return event

    async def write_batch(
        self,
        entries: List[Union[Tuple[str, Any], Tuple[str, Any, Optional[int]]]]
    ) -> List[OutboxEvent]:
        """
        Write multiple events to the outbox.

        Args:
            entries: (event_type, payload) or (event_type, payload, max_retries)
                tuples; a missing or None max_retries uses the configured default

        Returns:
            List of created OutboxEvent objects
        """
        results = []
        for entry in entries:
            if len(entry) not in (2, 3):
                raise ValueError(f"expected (type, payload[, max_retries]), got {len(entry)} items")
            event = await self.write(*entry)
            results.append(event)
        return results


class TransactionalOutbox:
    """
    A database transaction that can also emit outbox events.

    Usage:
        async with transactional_outbox(db) as txn:
            await txn.db.execute("INSERT INTO bookings ...")
            await txn.emit("BOOKING_CONFIRMED", {"booking_id": 42})
        # Commit: business rows and events persist together.
        # Exception: everything rolls back and emitted_events is emptied.
    """

    def __init__(self, db: DatabaseAdapter, config: Optional[OutboxConfig] = None):
        self.db = db
        self._writer = OutboxWriter(db, config)
        self._events: List[OutboxEvent] = []

    async def emit(
        self,
        event_type: str,
        payload: Any,
        max_retries: Optional[int] = None,
    ) -> OutboxEvent:
        """Emit an event (written to the outbox in the current transaction)."""
        event = await self._writer.write(event_type, payload, max_retries)
        self._events.append(event)
        return event

    @property
    def emitted_events(self) -> List[OutboxEvent]:
        """Get list of events emitted in this transaction."""
        return self._events.copy()


@asynccontextmanager
async def transactional_outbox(
    db: Optional[DatabaseAdapter] = None,
    config: Optional[OutboxConfig] = None,
):
    """
    Open a transaction and yield a TransactionalOutbox bound to it.
    """
    db = db or await get_database()
    txn = TransactionalOutbox(db, config)
    try:
        async with db.transaction():
            yield txn
    except BaseException:
        txn._events = []
        raise
