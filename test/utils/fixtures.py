"""
Reusable pytest fixtures for event-stream tests

Provides fixtures for:
- A mock APScheduler instance
- A fresh SSEManager wired to that scheduler
- Routing the FastAPI app's manager dependency to the fresh manager
"""

import pytest

from app.services.sse_manager import SSEManager, get_sse_manager

from .mocks import create_mock_scheduler


@pytest.fixture
def mock_scheduler():
    """Fixture providing a scheduler that never runs jobs"""
    return create_mock_scheduler()


@pytest.fixture
def manager(mock_scheduler):
    """Fixture providing an isolated SSEManager"""
    return SSEManager(heartbeat_interval=25, scheduler=mock_scheduler, max_queue_size=10)


@pytest.fixture
def override_sse_manager(manager):
    """Fixture that makes the app's routes use the isolated manager"""
    from main import app

    app.dependency_overrides[get_sse_manager] = lambda: manager
    yield manager
    app.dependency_overrides.pop(get_sse_manager, None)
