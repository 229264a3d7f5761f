"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from relay.chat.manager import manager
from relay.chat.store import InMemoryStore, set_store
from relay.main import app


@pytest.fixture
def api_client():
    """TestClient for the relay app, with startup/shutdown run around the test."""
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def memory_store():
    """Give every test its own empty in-memory store and room registry."""
    store = InMemoryStore()
    set_store(store)
    yield store
    set_store(None)
    manager.clear()
