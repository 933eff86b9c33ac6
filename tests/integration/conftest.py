"""
Integration Test Fixtures

Runs the admin app in-process against a temporary SQLite database. The
in-process dispatcher is switched off so tests control every transition.
"""

import pytest
from httpx import AsyncClient, ASGITransport

from src.api.admin.main import create_app


@pytest.fixture
async def app(db, config, monkeypatch):
    """Admin app with its lifespan running."""
    monkeypatch.setenv("OUTBOX_PROCESSOR_ENABLED", "false")

    app = create_app(db=db, config=config, configure_observability=False)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app):
    """Create async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
