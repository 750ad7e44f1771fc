"""
Shared pytest fixtures for entitlements tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from viralforge_entitlements.errors import StorePersistenceError, StoreReadError
from viralforge_entitlements.guard import FeatureGuard
from viralforge_entitlements.loader import load_plan_catalog
from viralforge_entitlements.models import UsageRecord
from viralforge_entitlements.resolver import EntitlementsResolver
from viralforge_entitlements.store import InMemoryUsageStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def make_record(user_id="user-1", plan="free", used=None, bonus=None, comped_until=None, reset_in_days=20):
    return UsageRecord(
        user_id=user_id,
        plan=plan,
        used=used or {},
        bonus=bonus or {},
        usage_reset_at=NOW + timedelta(days=reset_in_days),
        comped_until=comped_until,
    )


class FailingStore(InMemoryUsageStore):
    """In-memory store whose reads and/or writes raise store errors."""

    def __init__(self, *, fail_reads=False, fail_writes=False):
        super().__init__(clock=lambda: NOW)
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    async def fetch_usage_record(self, user_id):
        if self.fail_reads:
            raise StoreReadError(user_id, "connection refused")
        return await super().fetch_usage_record(user_id)

    async def increment_usage(self, user_id, feature, amount=1):
        if self.fail_writes:
            raise StorePersistenceError(user_id, "connection reset")
        await super().increment_usage(user_id, feature, amount)


class RecordingSink:
    """Event sink that keeps every (event_type, payload) pair."""

    def __init__(self):
        self.events = []

    def __call__(self, event_type, payload):
        self.events.append((event_type, payload))

    @property
    def types(self):
        return [event_type for event_type, _ in self.events]


@pytest.fixture
def catalog():
    return load_plan_catalog()


@pytest.fixture
def resolver(catalog):
    return EntitlementsResolver(catalog, clock=lambda: NOW)


@pytest.fixture
def store():
    return InMemoryUsageStore(clock=lambda: NOW)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def guard(store, resolver, sink):
    return FeatureGuard(store=store, resolver=resolver, event_sink=sink)
