"""
Shared fixtures: an in-memory record store, identity provider and service.
"""
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from config import Settings
from database import connect
from identity import IdentityProvider
from schemas import Suggestion, Viewer
from services import SuggestionService


class TickingClock:
    """Returns a strictly increasing ISO timestamp on every call."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, tzinfo=timezone.utc)):
        self._ticks = itertools.count()
        self.start = start
        self.last = None

    def __call__(self) -> str:
        moment = self.start + timedelta(seconds=next(self._ticks))
        self.last = moment.isoformat().replace("+00:00", "Z")
        return self.last


@pytest.fixture
def settings():
    return Settings(
        database_url="memory://",
        database_name="testdb",
        app_id="test-app",
        gemini_api_key="",
        session_secret="test-secret",
    )


@pytest.fixture
def store(settings):
    return connect(settings)


@pytest.fixture
def identity(store, settings):
    return IdentityProvider(store, settings)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def service(store, identity, settings, clock):
    return SuggestionService(store, identity, settings, summarizer=None, clock=clock)


@pytest.fixture
def student(identity):
    """A registered student and their resolved Viewer."""
    reg = identity.register("prn001", "12345")
    session = identity.authenticate(reg.prn, reg.password)
    return identity.resolve(session.token)


@pytest.fixture
def other_student(identity):
    reg = identity.register("prn002", "54321")
    return identity.resolve(identity.authenticate(reg.prn, reg.password).token)


@pytest.fixture
def moderator(identity):
    return identity.resolve(identity.admin_login("admin", "admin").token)


@pytest.fixture
def viewer():
    return Viewer(logged_in=True, owner_id="owner-1", public_id="pub-1")


def make_suggestion(**overrides) -> Suggestion:
    data = {
        "id": "s1",
        "title": "More microwaves",
        "description": "The cafeteria needs more microwaves at lunch.",
        "category": "Food & Dining",
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-01-01T00:00:00Z",
        "user_id": "pub-1",
    }
    data.update(overrides)
    return Suggestion(**data)
