"""Pytest configuration and shared fixtures."""
import os

# Must be set before main is imported anywhere
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest
from datetime import datetime, timedelta, timezone
from fastapi.testclient import TestClient

from timeout_app.core.auth import create_access_token
from timeout_app.core.config import Settings
from timeout_app.infrastructure.store import InMemoryDocumentStore
from timeout_app.services.classrooms import ClassroomManager
from timeout_app.services.profiles import ProfileService
from timeout_app.services.rooms import RoomManager

WEBHOOK_KEY = "test-webhook-key"


class FakeClock:
    """Manually advanced clock handed to the managers."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings():
    """Test settings; no .env lookup."""
    return Settings(_env_file=None, environment="test", store_backend="memory", webhook_api_keys=[WEBHOOK_KEY])


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def profiles(store, settings, clock):
    return ProfileService(store, settings, clock=clock)


@pytest.fixture
def rooms(store, settings, clock):
    return RoomManager(store, settings, clock=clock)


@pytest.fixture
def classrooms(store, settings, clock):
    return ClassroomManager(store, settings, clock=clock)


@pytest.fixture
def make_user(profiles, clock):
    """Factory creating a stored profile, optionally with a role.

    Each user joins one second after the previous one so that join order
    is unambiguous.
    """
    def _make(user_id: str, first_name: str = "Test", last_name: str = "User", role: str = None):
        result = profiles.sync_identity({
            "id": user_id,
            "email": f"{user_id}@example.com",
            "firstName": first_name,
            "lastName": last_name,
        })
        assert result.success, result.error_message
        if role:
            assert profiles.set_role(user_id, role).success
        clock.advance(seconds=1)
        return user_id
    return _make


@pytest.fixture
def teacher(make_user):
    return make_user("teacher_1", "Grace", "Hopper", role="teacher")


@pytest.fixture
def test_client(store, settings):
    """FastAPI test client wired to the in-memory store."""
    # Import after the environment is set up
    from main import create_app
    return TestClient(create_app(store=store, settings=settings))


@pytest.fixture
def auth_headers(settings):
    """Factory for bearer headers of a given user id."""
    def _headers(user_id: str):
        return {"Authorization": f"Bearer {create_access_token(user_id, settings)}"}
    return _headers
