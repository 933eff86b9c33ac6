"""
Outbox Pattern Implementation

Events are written in the same transaction as the business change that
produced them and delivered afterwards by a dispatcher, at least once.

Usage:
    from src.core.outbox import transactional_outbox

    async with transactional_outbox(db) as txn:
        await txn.db.execute("UPDATE bookings SET status = 'CONFIRMED' WHERE id = $1", booking_id)
        await txn.emit("BOOKING_CONFIRMED", {"booking_id": booking_id}, max_retries=3)
"""

from .models import (
    OutboxEvent,
    OutboxStatus,
    EventFilter,
    EventPage,
    BulkItemResult,
    BulkResult,
    BatchResult,
)
from .errors import OutboxError, EventNotFoundError, IllegalOperationError
from .config import OutboxConfig, is_outbox_enabled, is_outbox_processor_enabled
from .retry_policy import RetryPolicy, RetryDecision, RetryOutcome
from .store import EventStore
from .delivery import (
    DeliveryClient,
    DeliveryError,
    HttpDeliveryClient,
    LoggingDeliveryClient,
    build_delivery_client,
)
from .writer import OutboxWriter, TransactionalOutbox, transactional_outbox
from .dispatcher import (
    OutboxDispatcher,
    start_outbox_dispatcher,
    stop_outbox_dispatcher,
    get_outbox_dispatcher,
)
from .admin import OutboxAdminService, AdminAction
from .lifecycle import outbox_lifespan

__all__ = [
    "OutboxEvent",
    "OutboxStatus",
    "EventFilter",
    "EventPage",
    "BulkItemResult",
    "BulkResult",
    "BatchResult",
    "OutboxError",
    "EventNotFoundError",
    "IllegalOperationError",
    "OutboxConfig",
    "is_outbox_enabled",
    "is_outbox_processor_enabled",
    "RetryPolicy",
    "RetryDecision",
    "RetryOutcome",
    "EventStore",
    "DeliveryClient",
    "DeliveryError",
    "HttpDeliveryClient",
    "LoggingDeliveryClient",
    "build_delivery_client",
    "OutboxWriter",
    "TransactionalOutbox",
    "transactional_outbox",
    "OutboxDispatcher",
    "start_outbox_dispatcher",
    "stop_outbox_dispatcher",
    "get_outbox_dispatcher",
    "OutboxAdminService",
    "AdminAction",
    "outbox_lifespan",
]
