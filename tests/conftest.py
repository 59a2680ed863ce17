"""
Shared fixtures for the MiSub local server tests.
"""

import pytest
from fastapi.testclient import TestClient

from misub.config import build_config
from misub.main import create_app
from misub.store import MemoryKeyValueStore


ADMIN_PASSWORD = "admin123"
TEST_ENV = {"ADMIN_PASSWORD": ADMIN_PASSWORD, "COOKIE_SECRET": "test-cookie-secret"}


class InterleavingStore(MemoryKeyValueStore):
    """
    Memory store that runs queued callbacks right before a compare_and_swap.

    Lets a test slip a second writer in between another writer's read and
    its write, the window where lost updates happen.
    """

    def __init__(self):
        super().__init__()
        self.before_swap = []

    def compare_and_swap(self, key, expected_version, value):
        if self.before_swap:
            self.before_swap.pop(0)()
        return super().compare_and_swap(key, expected_version, value)


class FakeClock:
    """Deterministic timestamps: 2026-10-18T08:00:00.000Z, then +1s per call."""

    def __init__(self):
        self.calls = 0

    def __call__(self) -> str:
        stamp = f"2026-10-18T08:00:{self.calls:02d}.000Z"
        self.calls += 1
        return stamp


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def make_app(tmp_path, store):
    """Factory for apps sharing the test store; accepts config overrides."""

    def _make(overrides=None, environ=None, **kwargs):
        kwargs.setdefault("store", store)
        config = build_config({"kv": {"backend": "memory"}, **(overrides or {})})
        return create_app(
            project_dir=str(tmp_path),
            config=config,
            environ=TEST_ENV if environ is None else environ,
            **kwargs,
        )

    return _make


@pytest.fixture
def client(make_app):
    with TestClient(make_app()) as test_client:
        yield test_client


@pytest.fixture
def auth_client(client):
    """Client holding a valid session cookie."""
    resp = client.post("/api/login", json={"password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    return client


@pytest.fixture
def interleaving_store():
    return InterleavingStore()


@pytest.fixture
def clock():
    return FakeClock()
