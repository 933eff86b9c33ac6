"""
Outbox Errors

Raised by the store and admin service. Delivery failures are not here: the
dispatcher converts them into FAILED transitions instead of raising.
"""

from typing import Optional


class OutboxError(Exception):
    """Base class for outbox errors."""


class EventNotFoundError(OutboxError):
    """No outbox event with the given id."""

    def __init__(self, event_id: int):
        self.event_id = event_id
        super().__init__(f"outbox event {event_id} not found")


class IllegalOperationError(OutboxError):
    """An operator verb is not legal for the event's current status."""

    def __init__(self, event_id: int, operation: str, status: str, reason: Optional[str] = None):
        self.event_id = event_id
        self.operation = operation
        self.status = status
        message = f"cannot {operation} event {event_id} in status {status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
