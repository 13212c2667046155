"""Shared pytest fixtures for AniMatch tests."""
from datetime import datetime, timedelta, timezone

import pytest

from animatch.config import Settings
from animatch.services.cooldown_gate import CooldownGate
from animatch.services.interest_index import InterestIndex
from animatch.services.matching_service import MatchingService
from animatch.services.profile_repository import USERS_COLLECTION
from animatch.store.memory import MemoryDocumentStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def make_settings(**overrides):
    values = {
        "STORE_BACKEND": "memory",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "MATCH_THRESHOLD": 3,
        "FREE_MATCH_QUOTA": 2,
        "COOLDOWN_SECONDS": 3600,
        "INDEX_SCAN_BATCH_SIZE": 10,
        "MAX_BATCH_OPERATIONS": 100,
        "STORE_RETRY_ATTEMPTS": 2,
        "STORE_RETRY_WAIT_MIN_SECONDS": 0,
        "STORE_RETRY_WAIT_MAX_SECONDS": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store(settings):
    return MemoryDocumentStore(max_batch_operations=settings.MAX_BATCH_OPERATIONS)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate(store, settings, clock):
    return CooldownGate(store, settings, clock=clock)


@pytest.fixture
def service(store, settings, gate):
    return MatchingService(store, settings, gate=gate)


@pytest.fixture
def seed_user(store, settings):
    """Write a ``users`` document and index its interests.

    Usage: ``await seed_user("alice", {"1", "2"}, gender="male")``.
    """
    index = InterestIndex(store, settings)

    async def _seed(user_id, interests=(), **fields):
        doc = {
            "user_id": user_id,
            "display_name": fields.pop("display_name", user_id.title()),
            "photo_url": fields.pop("photo_url", f"https://img.example/{user_id}.jpg"),
            "interests": sorted(str(i) for i in interests),
            "matches": [],
            "matches_data": {},
        }
        doc.update(fields)
        await store.set(USERS_COLLECTION, user_id, doc)
        for item in interests:
            await index.add_interest(user_id, str(item))
        return doc

    return _seed


# End-to-end scenario profiles
@pytest.fixture
def scenario_a():
    return {
        "interests": {"1", "2", "3", "4"},
        "gender": "male",
        "gender_preference": "female",
        "location": "JP",
        "location_preference": "local",
    }


@pytest.fixture
def scenario_b():
    return {
        "interests": {"2", "3", "4", "5"},
        "gender": "female",
        "gender_preference": "male",
        "location_preference": "worldwide",
    }


@pytest.fixture
def settings_factory():
    """Build settings with overrides, e.g. ``settings_factory(MATCH_THRESHOLD=2)``."""
    return make_settings
