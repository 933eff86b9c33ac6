"""
Outbox Models

Row model for the outbox_events table plus the value objects the store,
dispatcher and admin service pass around.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, field_validator


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxStatus(str, Enum):
    """Status of an outbox event."""
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


# Operator deletes are limited to rows nothing will touch again automatically
DELETABLE_STATUSES = frozenset({OutboxStatus.SENT, OutboxStatus.FAILED})


class OutboxEvent(BaseModel):
    """An event row in the outbox."""

    model_config = ConfigDict(from_attributes=True)

    event_id: int
    type: str
    payload: Any = None
    status: OutboxStatus = OutboxStatus.NEW
    retry_count: int = 0
    max_retries: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    sent_at: Optional[datetime] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: Any) -> Any:
        # JSON text on SQLite, JSONB text on asyncpg without a codec
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value

    @field_validator("created_at", "updated_at", "sent_at", "next_attempt_at")
    @classmethod
    def _ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxEvent":
        return cls.model_validate(row)

    @property
    def is_exhausted(self) -> bool:
        """True when automatic retries are used up."""
        return self.retry_count >= self.max_retries


@dataclass
class EventFilter:
    """Filter for listing events. None means no constraint."""
    status: Optional[OutboxStatus] = None
    type: Optional[str] = None


@dataclass
class EventPage:
    """One page of events plus pagination metadata."""
    events: List[OutboxEvent]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.limit - 1) // self.limit

    @property
    def has_more(self) -> bool:
        return self.page < self.total_pages


@dataclass
class BulkItemResult:
    """Outcome of a bulk operation for a single event id."""
    event_id: int
    ok: bool
    status: Optional[OutboxStatus] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class BulkResult:
    """Per-id outcomes of a bulk operation. Never atomic across ids."""
    operation: str
    results: List[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)


@dataclass
class BatchResult:
    """Counts from one dispatcher poll."""
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    dead: int = 0
