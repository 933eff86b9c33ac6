"""
Delivery Clients

The dispatcher hands each claimed event to a DeliveryClient. The only
contract is: return on success, raise on failure. The exception text becomes
the event's last_error verbatim, so implementations should raise with a
message an operator can act on.
"""

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from .config import OutboxConfig

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Destination rejected the event or could not be reached."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


@runtime_checkable
class DeliveryClient(Protocol):
    """Transport-agnostic delivery contract."""

    async def send(self, event_type: str, payload: Any) -> None:
        """Deliver one event. Raise on any failure."""


class LoggingDeliveryClient:
    """
    Delivery client that only logs.

    For local development only, selected with OUTBOX_DELIVERY_MODE=log:
    every event is acknowledged and ends up SENT without leaving the process.
    """

    def __init__(self, level: int = logging.INFO):
        self.level = level
        self.delivered = 0

    async def send(self, event_type: str, payload: Any) -> None:
        self.delivered += 1
        logger.log(self.level, "Delivered outbox event type=%s", event_type)


class HttpDeliveryClient:
    """
    POSTs each event as JSON to the URL routed for its type.

    Usage:
        async with HttpDeliveryClient(routes={"BOOKING_CONFIRMED": "http://crm/hooks"}) as client:
            await client.send("BOOKING_CONFIRMED", {"booking_id": 42})

    Any non-2xx response or transport error raises DeliveryError. Timeouts are
    enforced by the dispatcher; the client timeout here is only a backstop.
    """

    def __init__(
        self,
        routes: Optional[Dict[str, str]] = None,
        default_url: Optional[str] = None,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.routes = dict(routes or {})
        self.default_url = default_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    @classmethod
    def from_config(cls, config: OutboxConfig) -> "HttpDeliveryClient":
        return cls(
            routes=config.delivery_routes,
            default_url=config.delivery_url,
            timeout=config.delivery_timeout,
        )

    def resolve_url(self, event_type: str) -> str:
        url = self.routes.get(event_type) or self.default_url
        if not url:
            raise DeliveryError(f"no route for event type {event_type!r}")
        return url

    async def send(self, event_type: str, payload: Any) -> None:
        url = self.resolve_url(event_type)
        try:
            response = await self._client.post(
                url,
                json=payload,
                headers={"X-Event-Type": event_type},
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise DeliveryError(f"HTTP {response.status_code}: {response.text[:200]}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpDeliveryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False


def build_delivery_client(config: OutboxConfig) -> DeliveryClient:
    """
    Build the client selected by OUTBOX_DELIVERY_MODE.

    HTTP mode is the default even with no destination configured; every
    delivery then fails with "no route for event type ..." and backs off.
    """
    if config.delivery_mode == "log":
        logger.warning("OUTBOX_DELIVERY_MODE=log: events are acknowledged without being sent")
        return LoggingDeliveryClient()

    if not (config.delivery_url or config.delivery_routes):
        logger.error(
            "No OUTBOX_DELIVERY_URL or OUTBOX_DELIVERY_ROUTES set; deliveries will fail until one is configured"
        )
    return HttpDeliveryClient.from_config(config)
