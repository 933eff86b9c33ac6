"""
Database abstraction layer supporting SQLite and PostgreSQL.

This module provides a unified async interface for database operations that
works with both SQLite (embedded deployments, tests) and PostgreSQL.

Usage:
    from src.core.database import get_database, DatabaseAdapter

    # Get the global database instance
    db = await get_database()

    # Execute queries (works with both backends)
    rows = await db.fetch("SELECT * FROM outbox_events WHERE status = $1", "FAILED")
    await db.execute("DELETE FROM outbox_events WHERE event_id = $1", event_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    get_database,
    set_database,
    close_database,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "get_database",
    "set_database",
    "close_database",
]
