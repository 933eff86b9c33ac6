#!/usr/bin/env python3
"""
Outbox Admin API
================

FastAPI application exposing the outbox admin endpoints. Unless
OUTBOX_PROCESSOR_ENABLED=false, the same process also runs the dispatcher.

Usage:
    python -m src.api.admin.main
    uvicorn src.api.admin.main:app
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ..shared.middleware import register_error_handlers, TraceMiddleware
from ..shared.routers.health import router as health_router
from .routers.outbox import router as outbox_router
from ...core.database.adapter import DatabaseAdapter, close_database, get_database, set_database
from ...core.observability import configure_logging, init_metrics, init_tracing
from ...core.outbox.admin import OutboxAdminService
from ...core.outbox.config import OutboxConfig
from ...core.outbox.delivery import DeliveryClient
from ...core.outbox.lifecycle import outbox_lifespan
from ...core.outbox.store import EventStore

# Configuration
API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "9200"))

logger = logging.getLogger(__name__)


def init_observability():
    """Configure logging, and OpenTelemetry export when an endpoint is set."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true",
        service_name="outbox-admin-api",
    )
    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint:
        init_tracing(service_name="outbox-admin-api", otlp_endpoint=otlp_endpoint)
        init_metrics(service_name="outbox-admin-api", otlp_endpoint=otlp_endpoint)


def create_app(
    db: Optional[DatabaseAdapter] = None,
    client: Optional[DeliveryClient] = None,
    config: Optional[OutboxConfig] = None,
    configure_observability: bool = True,
) -> FastAPI:
    """
    Build the admin application.

    Args:
        db: Database to use; defaults to the global adapter from the environment
        client: Delivery client for the in-process dispatcher
        config: Outbox settings; defaults to the environment
        configure_observability: Install logging and OTel handlers on startup
    """
    config = config or OutboxConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown."""
        if configure_observability:
            init_observability()

        owns_db = db is None
        database = db or await get_database()
        if not database.is_connected:
            await database.connect()
        set_database(database)

        app.state.outbox_admin = OutboxAdminService(
            EventStore(database), stale_after=config.stale_after
        )

        try:
            async with outbox_lifespan(database, client, config):
                logger.info("Outbox admin API started")
                yield
        finally:
            app.state.outbox_admin = None
            if owns_db:
                await close_database()
            else:
                set_database(None)
            logger.info("Outbox admin API stopped")

    app = FastAPI(
        title="Outbox Admin API",
        description="Inspect, retry and clean up transactional outbox events",
        version="1.0.0",
        lifespan=lifespan
    )

    register_error_handlers(app)
    app.add_middleware(TraceMiddleware)

    app.include_router(health_router)
    app.include_router(outbox_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.api.admin.main:app",
        host=API_HOST,
        port=API_PORT,
    )
