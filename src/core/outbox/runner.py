"""
Outbox Dispatcher Runner

Standalone script to run the outbox dispatcher as a background service.
Designed to be run in a separate container for production deployments;
several runners can share one database.

Usage:
    python -m src.core.outbox.runner

Environment Variables:
    DATABASE_BACKEND: sqlite or postgresql (default: sqlite)
    DATABASE_URL: PostgreSQL connection string
    SQLITE_PATH: SQLite database file (default: outbox.db)
    OUTBOX_*: see src.core.outbox.config
    LOG_LEVEL: Logging level (default: INFO)
    LOG_STRUCTURED: JSON log lines (default: true)
    OTEL_EXPORTER_OTLP_ENDPOINT: Enables tracing and metrics export when set
"""

import os
import sys
import signal
import asyncio
import logging
from typing import Optional

from ..database.adapter import DatabaseAdapter, DatabaseConfig
from ..observability import configure_logging, init_metrics, init_tracing
from .config import OutboxConfig
from .delivery import DeliveryClient, build_delivery_client
from .dispatcher import OutboxDispatcher
from .store import EventStore

logger = logging.getLogger(__name__)


class OutboxRunner:
    """
    Manages the outbox dispatcher lifecycle with graceful shutdown.
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        client: Optional[DeliveryClient] = None,
        config: Optional[OutboxConfig] = None,
    ):
        self.config = config or OutboxConfig()
        self.db = db or DatabaseAdapter()
        self.client = client
        self.dispatcher: Optional[OutboxDispatcher] = None
        self._shutdown_event = asyncio.Event()
        self._shutdown_requested = False

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)

    def _handle_shutdown_signal(self, sig: signal.Signals):
        """Handle shutdown signal."""
        if self._shutdown_requested:
            logger.warning(f"Received {sig.name} again, forcing exit")
            sys.exit(1)

        logger.info(f"Received {sig.name}, initiating graceful shutdown")
        self.request_shutdown()

    def request_shutdown(self):
        self._shutdown_requested = True
        self._shutdown_event.set()

    async def run(self, install_signal_handlers: bool = True):
        """Run the outbox dispatcher until shutdown is requested."""
        logger.info("Starting Outbox Dispatcher Runner")
        logger.info(f"  Config: {self.config!r}")

        if install_signal_handlers:
            self._setup_signal_handlers()

        owns_client = self.client is None
        try:
            if not self.db.is_connected:
                await self.db.connect()
            store = EventStore(self.db)
            await store.ensure_schema()

            self.client = self.client or build_delivery_client(self.config)
            self.dispatcher = OutboxDispatcher(store, self.client, self.config)
            await self.dispatcher.start()
            logger.info("Outbox Dispatcher is running")

            # Wait for shutdown signal
            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Outbox Dispatcher error: {e}", exc_info=True)
            raise
        finally:
            # Graceful shutdown
            logger.info("Stopping Outbox Dispatcher")
            if self.dispatcher:
                await self.dispatcher.stop()
            if owns_client and self.client is not None and hasattr(self.client, "aclose"):
                await self.client.aclose()
            await self.db.disconnect()
            logger.info("Outbox Dispatcher stopped")


async def main():
    """Main entry point."""
    configure_logging(
        level=os.getenv("LOG_LEVEL", "INFO"),
        structured=os.getenv("LOG_STRUCTURED", "true").lower() == "true",
    )

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint:
        init_tracing(otlp_endpoint=otlp_endpoint)
        init_metrics(otlp_endpoint=otlp_endpoint)

    if os.getenv("DATABASE_BACKEND", "sqlite").lower() == "postgresql" and not os.getenv("DATABASE_URL"):
        logger.error("DATABASE_URL environment variable is required for postgresql")
        sys.exit(1)

    runner = OutboxRunner(db=DatabaseAdapter(DatabaseConfig()))
    await runner.run()


if __name__ == "__main__":
    asyncio.run(main())
