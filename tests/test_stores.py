"""
UsageStore implementations: in-memory, Redis (fake async client) and SQL (SQLite).
"""

from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tests.conftest import NOW, make_record
from viralforge_entitlements.errors import StorePersistenceError, StoreReadError
from viralforge_entitlements.guard import FeatureGuard
from viralforge_entitlements.redis_store import RedisUsageStore, _key
from viralforge_entitlements.sql_store import Base, SqlUsageStore, UsageAccount
from viralforge_entitlements.store import InMemoryUsageStore


class _FakeAsyncRedis:
    def __init__(self):
        self.hashes = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping):
        self._check()
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def hsetnx(self, key, field, value):
        self._check()
        h = self.hashes.setdefault(key, {})
        if field in h:
            return 0
        h[field] = str(value)
        return 1

    async def hincrby(self, key, field, amount):
        self._check()
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    async def delete(self, key):
        self._check()
        self.hashes.pop(key, None)


@pytest.fixture
def fake_redis():
    return _FakeAsyncRedis()


@pytest.fixture
def redis_store(fake_redis):
    return RedisUsageStore(fake_redis, clock=lambda: NOW)


@pytest.fixture
def sql_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def sql_store(sql_engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=sql_engine)
    return SqlUsageStore(factory, clock=lambda: NOW)


# ----- In-memory -----

@pytest.mark.asyncio
async def test_memory_store_missing_user_returns_none():
    store = InMemoryUsageStore(clock=lambda: NOW)
    assert await store.fetch_usage_record("nobody") is None


@pytest.mark.asyncio
async def test_memory_store_increment_creates_record():
    store = InMemoryUsageStore(clock=lambda: NOW, reset_interval_days=7)
    await store.increment_usage("user-1", "hooks")
    record = await store.fetch_usage_record("user-1")
    assert record.plan == "free"
    assert record.used_for("hooks") == 1
    assert record.usage_reset_at == NOW + timedelta(days=7)


@pytest.mark.asyncio
async def test_memory_store_reset_keeps_bonus():
    store = InMemoryUsageStore(clock=lambda: NOW)
    store.put(make_record(used={"hooks": 8, "abtest": 2}))
    store.grant_bonus("user-1", "hooks", 5)

    await store.reset_usage("user-1", NOW + timedelta(days=30))

    record = await store.fetch_usage_record("user-1")
    assert record.used_for("hooks") == 0
    assert record.used_for("abtest") == 0
    assert record.bonus_for("hooks") == 5
    assert record.usage_reset_at == NOW + timedelta(days=30)


@pytest.mark.asyncio
async def test_memory_store_reset_of_unknown_user_is_noop():
    store = InMemoryUsageStore(clock=lambda: NOW)
    await store.reset_usage("nobody", NOW)
    assert await store.fetch_usage_record("nobody") is None


# ----- Redis -----

def test_redis_key():
    assert _key("user_123") == "usage:v1:user_123"


@pytest.mark.asyncio
async def test_redis_store_round_trips_record(redis_store):
    record = make_record(
        plan="creator_pro",
        used={"hooks": 4},
        bonus={"brand_kits": 2},
        comped_until=NOW + timedelta(days=1),
    )
    await redis_store.put(record)
    assert await redis_store.fetch_usage_record("user-1") == record


@pytest.mark.asyncio
async def test_redis_store_missing_user_returns_none(redis_store):
    assert await redis_store.fetch_usage_record("nobody") is None


@pytest.mark.asyncio
async def test_redis_store_increment_creates_signup_fields(redis_store, fake_redis):
    await redis_store.increment_usage("user-1", "hooks")
    await redis_store.increment_usage("user-1", "hooks", 2)

    raw = fake_redis.hashes["usage:v1:user-1"]
    assert raw["plan"] == "free"
    assert raw["used:hooks"] == "3"

    record = await redis_store.fetch_usage_record("user-1")
    assert record.used_for("hooks") == 3
    assert record.usage_reset_at == NOW + timedelta(days=30)


@pytest.mark.asyncio
async def test_redis_store_increment_keeps_existing_plan(redis_store):
    await redis_store.put(make_record(plan="business_pro"))
    await redis_store.increment_usage("user-1", "analyses")
    record = await redis_store.fetch_usage_record("user-1")
    assert record.plan == "business_pro"
    assert record.used_for("analyses") == 1


@pytest.mark.asyncio
async def test_redis_store_reset(redis_store):
    await redis_store.put(make_record(used={"hooks": 9}, bonus={"hooks": 3}))
    await redis_store.reset_usage("user-1", NOW + timedelta(days=30))
    record = await redis_store.fetch_usage_record("user-1")
    assert record.used_for("hooks") == 0
    assert record.bonus_for("hooks") == 3
    assert record.usage_reset_at == NOW + timedelta(days=30)


@pytest.mark.asyncio
async def test_redis_store_wraps_read_errors(redis_store, fake_redis):
    fake_redis.fail = True
    with pytest.raises(StoreReadError) as exc:
        await redis_store.fetch_usage_record("user-1")
    assert isinstance(exc.value.cause, RedisConnectionError)


@pytest.mark.asyncio
async def test_redis_store_wraps_write_errors(redis_store, fake_redis):
    fake_redis.fail = True
    with pytest.raises(StorePersistenceError) as exc:
        await redis_store.increment_usage("user-1", "hooks")
    assert exc.value.to_dict()["error"] == "USAGE_STORE_WRITE_FAILED"


# ----- SQL -----

@pytest.mark.asyncio
async def test_sql_store_missing_user_returns_none(sql_store):
    assert await sql_store.fetch_usage_record("nobody") is None


@pytest.mark.asyncio
async def test_sql_store_round_trips_record(sql_store):
    record = make_record(
        plan="creator_pro",
        used={"hooks": 4, "planner": 1},
        bonus={"hooks": 2},
        comped_until=NOW + timedelta(days=1),
    )
    await sql_store.put(record)
    fetched = await sql_store.fetch_usage_record("user-1")
    assert fetched.plan == "creator_pro"
    assert fetched.used_for("hooks") == 4
    assert fetched.used_for("planner") == 1
    assert fetched.bonus_for("hooks") == 2
    assert fetched.usage_reset_at == record.usage_reset_at
    assert fetched.comped_until == record.comped_until


@pytest.mark.asyncio
async def test_sql_store_increment_creates_account_and_counter(sql_store):
    await sql_store.increment_usage("user-1", "captions")
    await sql_store.increment_usage("user-1", "captions")
    record = await sql_store.fetch_usage_record("user-1")
    assert record.plan == "free"
    assert record.used_for("captions") == 2
    assert record.usage_reset_at == NOW + timedelta(days=30)


@pytest.mark.asyncio
async def test_sql_store_reset_keeps_bonus(sql_store):
    await sql_store.put(make_record(used={"hooks": 7}, bonus={"hooks": 1}))
    await sql_store.reset_usage("user-1", NOW + timedelta(days=45))
    record = await sql_store.fetch_usage_record("user-1")
    assert record.used_for("hooks") == 0
    assert record.bonus_for("hooks") == 1
    assert record.usage_reset_at == NOW + timedelta(days=45)


@pytest.mark.asyncio
async def test_sql_store_wraps_read_errors(sql_engine, sql_store):
    Base.metadata.drop_all(sql_engine)
    with pytest.raises(StoreReadError) as exc:
        await sql_store.fetch_usage_record("user-1")
    assert isinstance(exc.value.cause, OperationalError)


@pytest.mark.asyncio
async def test_sql_store_wraps_write_errors(sql_engine, sql_store):
    Base.metadata.drop_all(sql_engine)
    with pytest.raises(StorePersistenceError):
        await sql_store.increment_usage("user-1", "hooks")


@pytest.mark.asyncio
async def test_redis_store_corrupt_counter_is_a_read_error(redis_store, fake_redis):
    await redis_store.put(make_record(used={"hooks": 2}))
    fake_redis.hashes["usage:v1:user-1"]["used:hooks"] = "two"
    with pytest.raises(StoreReadError) as exc:
        await redis_store.fetch_usage_record("user-1")
    assert isinstance(exc.value.cause, ValueError)


@pytest.mark.asyncio
async def test_corrupt_redis_record_applies_read_failure_policy(redis_store, fake_redis, resolver):
    await redis_store.put(make_record())
    fake_redis.hashes["usage:v1:user-1"]["usage_reset_at"] = "not-a-date"
    guard = FeatureGuard(store=redis_store, resolver=resolver)
    check = await guard.check_user("user-1", "hooks")
    assert check.degraded is True
    assert check.allowed is True


class _RacingSqlStore(SqlUsageStore):
    """Another writer commits the user's rows after this store looked for them."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.rival = SqlUsageStore(*args, **kwargs)
        self.raced = False

    def _ensure_account(self, session, user_id):
        if not self.raced:
            self.raced = True
            # our lookup found nothing; the rival's first increment lands now
            self.rival._increment(user_id, "hooks", 1)
            session.add(UsageAccount(user_id=user_id, plan="free", usage_reset_at=NOW))
            session.flush()
            return
        super()._ensure_account(session, user_id)


@pytest.mark.asyncio
async def test_sql_store_concurrent_first_increments_both_count(sql_engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=sql_engine)
    store = _RacingSqlStore(factory, clock=lambda: NOW)

    await store.increment_usage("user-1", "hooks")

    record = await store.fetch_usage_record("user-1")
    assert record.used_for("hooks") == 2
    assert record.usage_reset_at == NOW + timedelta(days=30)


# ----- reset interval -----

@pytest.mark.parametrize("days", [0, -3])
def test_stores_reject_non_positive_reset_interval(days, fake_redis, sql_engine):
    factory = sessionmaker(bind=sql_engine)
    with pytest.raises(ValueError):
        InMemoryUsageStore(reset_interval_days=days)
    with pytest.raises(ValueError):
        RedisUsageStore(fake_redis, reset_interval_days=days)
    with pytest.raises(ValueError):
        SqlUsageStore(factory, reset_interval_days=days)
