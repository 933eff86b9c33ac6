"""
Test doubles for the dispatcher: a controllable clock and delivery clients
that follow a script.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

from src.core.outbox.delivery import DeliveryError


class FakeClock:
    """Manually advanced clock for backoff tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 19, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class ScriptedClient:
    """
    Delivery client that replays a script of outcomes.

    Each entry is None (succeed), an exception instance (raise it), or a
    float (sleep that many seconds, then succeed). When the script runs out,
    ``default`` is used.
    """

    def __init__(self, script: Optional[List[Any]] = None, default: Any = None):
        self.script = list(script or [])
        self.default = default
        self.calls: List[Tuple[str, Any]] = []

    async def send(self, event_type: str, payload: Any) -> None:
        self.calls.append((event_type, payload))
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, (int, float)):
            await asyncio.sleep(outcome)


class AlwaysFailingClient(ScriptedClient):
    def __init__(self, detail: str = "HTTP 503: unavailable"):
        super().__init__(default=DeliveryError(detail))

