"""
Outbox Lifecycle Management

Integrates the outbox dispatcher with the FastAPI application lifecycle.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from ..database.adapter import DatabaseAdapter
from .config import OutboxConfig, is_outbox_enabled, is_outbox_processor_enabled
from .delivery import DeliveryClient, build_delivery_client
from .dispatcher import start_outbox_dispatcher, stop_outbox_dispatcher
from .store import EventStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def outbox_lifespan(
    db: DatabaseAdapter,
    client: Optional[DeliveryClient] = None,
    config: Optional[OutboxConfig] = None,
):
    """
    Lifespan context manager for the outbox dispatcher.

    Usage in FastAPI:
        from src.core.outbox.lifecycle import outbox_lifespan

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with outbox_lifespan(db):
                yield

        app = FastAPI(lifespan=lifespan)
    """
    config = config or OutboxConfig()
    store = EventStore(db)
    await store.ensure_schema()

    if is_outbox_enabled() and is_outbox_processor_enabled():
        logger.info("Starting outbox dispatcher...")
        owns_client = client is None
        client = client or build_delivery_client(config)
        dispatcher = await start_outbox_dispatcher(store, client, config)
        try:
            yield dispatcher
        finally:
            logger.info("Stopping outbox dispatcher...")
            await stop_outbox_dispatcher()
            if owns_client and hasattr(client, "aclose"):
                await client.aclose()
    else:
        reason = []
        if not is_outbox_enabled():
            reason.append("OUTBOX_ENABLED=false")
        if not is_outbox_processor_enabled():
            reason.append("OUTBOX_PROCESSOR_ENABLED=false")
        logger.info(f"Outbox dispatcher disabled: {', '.join(reason)}")
        yield None
