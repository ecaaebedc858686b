from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from api.src.db.database import get_store
from api.src.main import app
from controller.src.services.state_store import MemoryRunStateStore


@pytest.fixture
def store():
    return MemoryRunStateStore()


@pytest.fixture
def queue(monkeypatch):
    """Redis-facing calls replaced by mocks."""
    mocks = {
        "enqueue_run": AsyncMock(),
        "request_abort": AsyncMock(),
        "publish_agent_event": AsyncMock(),
    }
    monkeypatch.setattr("api.src.services.triggers.enqueue_run", mocks["enqueue_run"])
    monkeypatch.setattr("api.src.routes.runs.request_abort", mocks["request_abort"])
    monkeypatch.setattr("api.src.routes.agents.publish_agent_event", mocks["publish_agent_event"])
    return mocks


@pytest.fixture
def client(store, queue):
    app.dependency_overrides[get_store] = lambda: store
    # Not used as a context manager: startup would create tables in the real database
    yield TestClient(app)
    app.dependency_overrides.clear()
