"""
Outbox Event Store

Durable outbox_events table: the single source of truth for event state.

Every state change is a single conditional UPDATE ... RETURNING, so the
status read and the status write cannot be separated by another writer:
- claim_batch() moves eligible NEW/FAILED rows to PROCESSING
- mark_sent()/mark_failed() only resolve rows still held by the same claim
- requeue_*() and delete() only touch rows in the states that allow them

On PostgreSQL the claim's candidate subquery also takes row locks with
SKIP LOCKED so concurrent dispatchers split the work instead of queueing
behind each other.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..database.adapter import DatabaseAdapter, DatabaseBackend
from .models import DELETABLE_STATUSES, EventFilter, OutboxEvent, OutboxStatus

logger = logging.getLogger(__name__)

TABLE = "outbox_events"
MAX_ERROR_LENGTH = 1000

SQLITE_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    event_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    type            TEXT NOT NULL,
    payload         TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'NEW'
                    CHECK (status IN ('NEW', 'PROCESSING', 'SENT', 'FAILED')),
    retry_count     INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
    max_retries     INTEGER NOT NULL CHECK (max_retries >= 0),
    last_error      TEXT,
    next_attempt_at TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    sent_at         TEXT,
    CHECK (retry_count <= max_retries),
    CHECK ((status = 'SENT') = (sent_at IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS ix_outbox_events_status_due
    ON {TABLE} (status, next_attempt_at, created_at);
CREATE INDEX IF NOT EXISTS ix_outbox_events_type ON {TABLE} (type);
"""

POSTGRES_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE} (
    event_id        BIGSERIAL PRIMARY KEY,
    type            TEXT NOT NULL,
    payload         JSONB NOT NULL,
    status          TEXT NOT NULL DEFAULT 'NEW'
                    CHECK (status IN ('NEW', 'PROCESSING', 'SENT', 'FAILED')),
    retry_count     INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
    max_retries     INTEGER NOT NULL CHECK (max_retries >= 0),
    last_error      TEXT,
    next_attempt_at TIMESTAMPTZ,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    sent_at         TIMESTAMPTZ,
    CONSTRAINT ck_outbox_events_retry_cap CHECK (retry_count <= max_retries),
    CONSTRAINT ck_outbox_events_sent_at CHECK ((status = 'SENT') = (sent_at IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS ix_outbox_events_status_due
    ON {TABLE} (status, next_attempt_at, created_at);
CREATE INDEX IF NOT EXISTS ix_outbox_events_type ON {TABLE} (type);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _truncate_error(error: str) -> str:
    return error[:MAX_ERROR_LENGTH]


class EventStore:
    """
    Persistence for outbox events.

    Usage:
        store = EventStore(db)
        await store.ensure_schema()

        event = await store.insert("BOOKING_CONFIRMED", {"booking_id": 42}, max_retries=3)
        claimed = await store.claim_batch(limit=100)
    """

    def __init__(self, db: DatabaseAdapter):
        self._db = db
        # Claims being delivered by dispatchers in this process
        self.in_flight: Set[int] = set()

    @property
    def db(self) -> DatabaseAdapter:
        return self._db

    async def ensure_schema(self) -> None:
        """Create the outbox table and indexes if they do not exist."""
        if self._db.backend == DatabaseBackend.POSTGRESQL:
            await self._db.executescript(POSTGRES_SCHEMA)
        else:
            await self._db.executescript(SQLITE_SCHEMA)

    async def insert(
        self,
        event_type: str,
        payload: Any,
        max_retries: int,
        now: Optional[datetime] = None,
    ) -> OutboxEvent:
        """Append a NEW event and return it with its assigned event_id."""
        if not event_type:
            raise ValueError("event type must be a non-empty string")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        try:
            payload_json = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"payload must be JSON-serializable: {e}") from e

        now = now or _utcnow()
        row = await self._db.fetchrow(
            f"""
            INSERT INTO {TABLE} (
                type, payload, status, retry_count, max_retries,
                created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            event_type,
            payload_json,
            OutboxStatus.NEW.value,
            0,
            max_retries,
            now,
            now,
        )
        event = OutboxEvent.from_row(row)
        logger.debug("Inserted outbox event %s type=%s", event.event_id, event.type)
        return event

    async def claim_batch(self, limit: int, now: Optional[datetime] = None) -> List[OutboxEvent]:
        """
        Atomically claim up to ``limit`` due events and move them to PROCESSING.

        Due means NEW, or FAILED with retries left and its backoff window
        elapsed. Rows already PROCESSING are never returned.
        """
        if limit < 1:
            return []
        now = now or _utcnow()

        lock_clause = ""
        if self._db.backend == DatabaseBackend.POSTGRESQL:
            lock_clause = "FOR UPDATE SKIP LOCKED"

        rows = await self._db.fetch(
            f"""
            UPDATE {TABLE}
            SET status = $1, updated_at = $2
            WHERE event_id IN (
                SELECT event_id FROM {TABLE}
                WHERE status = $3
                   OR (status = $4
                       AND retry_count < max_retries
                       AND (next_attempt_at IS NULL OR next_attempt_at <= $5))
                ORDER BY created_at ASC, event_id ASC
                LIMIT $6
                {lock_clause}
            )
            AND status IN ($7, $8)
            RETURNING *
            """,
            OutboxStatus.PROCESSING.value,
            now,
            OutboxStatus.NEW.value,
            OutboxStatus.FAILED.value,
            now,
            limit,
            OutboxStatus.NEW.value,
            OutboxStatus.FAILED.value,
        )
        events = sorted((OutboxEvent.from_row(r) for r in rows), key=lambda e: e.event_id)
        if events:
            logger.debug("Claimed %d outbox events", len(events))
        return events

    async def mark_sent(
        self,
        event_id: int,
        now: Optional[datetime] = None,
        claimed_at: Optional[datetime] = None,
    ) -> Optional[OutboxEvent]:
        """
        PROCESSING -> SENT. Returns None if the row is no longer PROCESSING.

        With ``claimed_at`` (the updated_at returned by claim_batch) the row
        must still belong to that claim; a claim that was requeued and taken
        by another worker in the meantime is left alone.
        """
        now = now or _utcnow()
        params: List[Any] = [
            OutboxStatus.SENT.value,
            now,
            now,
            event_id,
            OutboxStatus.PROCESSING.value,
        ]
        fence = ""
        if claimed_at is not None:
            params.append(claimed_at)
            fence = "AND updated_at = $6"
        row = await self._db.fetchrow(
            f"""
            UPDATE {TABLE}
            SET status = $1, sent_at = $2, updated_at = $3
            WHERE event_id = $4 AND status = $5 {fence}
            RETURNING *
            """,
            *params,
        )
        return OutboxEvent.from_row(row) if row else None

    async def mark_failed(
        self,
        event_id: int,
        error: str,
        next_attempt_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
        claimed_at: Optional[datetime] = None,
    ) -> Optional[OutboxEvent]:
        """
        PROCESSING -> FAILED, counting the attempt.

        retry_count saturates at max_retries, so an operator-forced retry of an
        exhausted event that fails again stays exhausted instead of overflowing.
        ``claimed_at`` fences the update to one claim, as in mark_sent().
        """
        now = now or _utcnow()
        params: List[Any] = [
            OutboxStatus.FAILED.value,
            _truncate_error(error),
            next_attempt_at,
            now,
            event_id,
            OutboxStatus.PROCESSING.value,
        ]
        fence = ""
        if claimed_at is not None:
            params.append(claimed_at)
            fence = "AND updated_at = $7"
        row = await self._db.fetchrow(
            f"""
            UPDATE {TABLE}
            SET status = $1,
                retry_count = CASE WHEN retry_count < max_retries
                                   THEN retry_count + 1 ELSE retry_count END,
                last_error = $2,
                next_attempt_at = $3,
                updated_at = $4
            WHERE event_id = $5 AND status = $6 {fence}
            RETURNING *
            """,
            *params,
        )
        return OutboxEvent.from_row(row) if row else None

    async def get(self, event_id: int) -> Optional[OutboxEvent]:
        row = await self._db.fetchrow(
            f"SELECT * FROM {TABLE} WHERE event_id = $1",
            event_id,
        )
        return OutboxEvent.from_row(row) if row else None

    async def get_for_update(self, event_id: int) -> Optional[OutboxEvent]:
        """
        Read an event and hold its row until the surrounding transaction ends.

        Must run inside ``db.transaction()``; SQLite transactions already hold
        the write lock, PostgreSQL takes a row lock.
        """
        lock_clause = ""
        if self._db.backend == DatabaseBackend.POSTGRESQL:
            lock_clause = " FOR UPDATE"
        row = await self._db.fetchrow(
            f"SELECT * FROM {TABLE} WHERE event_id = $1{lock_clause}",
            event_id,
        )
        return OutboxEvent.from_row(row) if row else None

    def _where(self, event_filter: Optional[EventFilter]) -> Tuple[str, List[Any]]:
        filters = []
        params: List[Any] = []
        if event_filter and event_filter.status is not None:
            params.append(OutboxStatus(event_filter.status).value)
            filters.append(f"status = ${len(params)}")
        if event_filter and event_filter.type:
            params.append(event_filter.type)
            filters.append(f"type = ${len(params)}")
        where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""
        return where_clause, params

    async def list(
        self,
        event_filter: Optional[EventFilter] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[OutboxEvent]:
        """List events, newest first."""
        where_clause, params = self._where(event_filter)
        params.extend([limit, offset])
        rows = await self._db.fetch(
            f"""
            SELECT * FROM {TABLE}
            {where_clause}
            ORDER BY created_at DESC, event_id DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params,
        )
        return [OutboxEvent.from_row(r) for r in rows]

    async def count(self, event_filter: Optional[EventFilter] = None) -> int:
        where_clause, params = self._where(event_filter)
        value = await self._db.fetchval(
            f"SELECT COUNT(*) AS count FROM {TABLE} {where_clause}",
            *params,
        )
        return int(value or 0)

    async def count_exhausted(self) -> int:
        """FAILED events with no automatic retries left (the dead-letter set)."""
        value = await self._db.fetchval(
            f"""
            SELECT COUNT(*) AS count FROM {TABLE}
            WHERE status = $1 AND retry_count >= max_retries
            """,
            OutboxStatus.FAILED.value,
        )
        return int(value or 0)

    async def delete(self, event_id: int) -> bool:
        """Delete a SENT or FAILED event. False if missing or in another state."""
        statuses = sorted(s.value for s in DELETABLE_STATUSES)
        row = await self._db.fetchrow(
            f"""
            DELETE FROM {TABLE}
            WHERE event_id = $1 AND status IN ($2, $3)
            RETURNING event_id
            """,
            event_id,
            *statuses,
        )
        return row is not None

    async def requeue_failed(self, event_id: int, now: Optional[datetime] = None) -> Optional[OutboxEvent]:
        """
        FAILED -> NEW for an operator retry.

        retry_count and last_error are kept; only the backoff window is cleared.
        """
        now = now or _utcnow()
        row = await self._db.fetchrow(
            f"""
            UPDATE {TABLE}
            SET status = $1, next_attempt_at = NULL, updated_at = $2
            WHERE event_id = $3 AND status = $4
            RETURNING *
            """,
            OutboxStatus.NEW.value,
            now,
            event_id,
            OutboxStatus.FAILED.value,
        )
        return OutboxEvent.from_row(row) if row else None

    async def requeue_stale(
        self,
        older_than: datetime,
        now: Optional[datetime] = None,
        event_id: Optional[int] = None,
        exclude: Iterable[int] = (),
    ) -> List[OutboxEvent]:
        """
        PROCESSING -> NEW for claims not updated since ``older_than``.

        Ids in ``exclude`` are skipped; dispatchers pass the claims they are
        still delivering.
        """
        now = now or _utcnow()
        params: List[Any] = [
            OutboxStatus.NEW.value,
            now,
            OutboxStatus.PROCESSING.value,
            older_than,
        ]
        clauses = []
        if event_id is not None:
            params.append(event_id)
            clauses.append(f"AND event_id = ${len(params)}")
        skipped = sorted(set(exclude))
        if skipped:
            placeholders = []
            for skipped_id in skipped:
                params.append(skipped_id)
                placeholders.append(f"${len(params)}")
            clauses.append(f"AND event_id NOT IN ({', '.join(placeholders)})")
        rows = await self._db.fetch(
            f"""
            UPDATE {TABLE}
            SET status = $1, updated_at = $2
            WHERE status = $3 AND updated_at < $4 {' '.join(clauses)}
            RETURNING *
            """,
            *params,
        )
        return sorted((OutboxEvent.from_row(r) for r in rows), key=lambda e: e.event_id)

    async def stats(self, stale_before: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts by status and by type, plus PROCESSING rows older than ``stale_before``."""
        by_status = await self._db.fetch(
            f"SELECT status, COUNT(*) AS count FROM {TABLE} GROUP BY status"
        )
        by_type = await self._db.fetch(
            f"""
            SELECT type, COUNT(*) AS count FROM {TABLE}
            GROUP BY type
            ORDER BY count DESC, type ASC
            """
        )
        stuck = 0
        if stale_before is not None:
            stuck = await self._db.fetchval(
                f"SELECT COUNT(*) AS count FROM {TABLE} WHERE status = $1 AND updated_at < $2",
                OutboxStatus.PROCESSING.value,
                stale_before,
            ) or 0

        counts = {status.value: 0 for status in OutboxStatus}
        for row in by_status:
            counts[row["status"]] = int(row["count"])

        return {
            "by_status": counts,
            "by_type": {row["type"]: int(row["count"]) for row in by_type},
            "total": sum(counts.values()),
            "stuck": int(stuck),
        }
