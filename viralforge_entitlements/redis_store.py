"""
Redis-backed usage store. One hash per user; counters are incremented with HINCRBY.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Callable, Dict, Optional

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from .errors import StorePersistenceError, StoreReadError
from .models import FeatureKey, UsageRecord, normalize_key
from .resolver import utcnow
from .store import DEFAULT_RESET_INTERVAL_DAYS, UsageStore, reset_interval

logger = logging.getLogger(__name__)

KEY_PREFIX = "usage:v1:"
USED_PREFIX = "used:"
BONUS_PREFIX = "bonus:"


def _key(user_id: str) -> str:
    return f"{KEY_PREFIX}{user_id}"


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw)


def _encode_record(record: UsageRecord) -> Dict[str, str]:
    mapping = {
        "plan": record.plan,
        "usage_reset_at": record.usage_reset_at.isoformat(),
        "comped_until": record.comped_until.isoformat() if record.comped_until else "",
    }
    for feature, value in record.used.items():
        mapping[f"{USED_PREFIX}{feature}"] = str(value)
    for feature, value in record.bonus.items():
        mapping[f"{BONUS_PREFIX}{feature}"] = str(value)
    return mapping


def _decode_record(user_id: str, raw: Dict[str, str]) -> UsageRecord:
    used: Dict[str, int] = {}
    bonus: Dict[str, int] = {}
    for field_name, value in raw.items():
        if field_name.startswith(USED_PREFIX):
            used[field_name[len(USED_PREFIX):]] = int(value)
        elif field_name.startswith(BONUS_PREFIX):
            bonus[field_name[len(BONUS_PREFIX):]] = int(value)
    return UsageRecord(
        user_id=user_id,
        plan=raw.get("plan") or "free",
        used=used,
        bonus=bonus,
        usage_reset_at=_parse_datetime(raw.get("usage_reset_at")),
        comped_until=_parse_datetime(raw.get("comped_until")),
    )


class RedisUsageStore(UsageStore):
    """Usage counters in Redis hashes (``usage:v1:{user_id}``)."""

    def __init__(
        self,
        client=None,
        *,
        redis_url: Optional[str] = None,
        reset_interval_days: int = DEFAULT_RESET_INTERVAL_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if client is None:
            url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
            client = redis_asyncio.from_url(url, decode_responses=True)
        self._redis = client
        self._reset_interval = reset_interval(reset_interval_days)
        self._clock = clock or utcnow

    async def put(self, record: UsageRecord) -> None:
        """Write a full record, replacing whatever the hash held."""
        key = _key(record.user_id)
        try:
            await self._redis.delete(key)
            await self._redis.hset(key, mapping=_encode_record(record))
        except RedisError as e:
            raise StorePersistenceError(record.user_id, "record write failed", cause=e) from e

    async def fetch_usage_record(self, user_id: str) -> Optional[UsageRecord]:
        try:
            raw = await self._redis.hgetall(_key(user_id))
        except RedisError as e:
            logger.warning("Usage store read failed", extra={"user_id": user_id, "error": str(e)})
            raise StoreReadError(user_id, "usage record read failed", cause=e) from e
        if not raw or not raw.get("usage_reset_at"):
            return None
        try:
            return _decode_record(user_id, raw)
        except (TypeError, ValueError) as e:
            logger.warning("Corrupt usage record", extra={"user_id": user_id, "error": str(e)})
            raise StoreReadError(user_id, "usage record is corrupt", cause=e) from e

    async def increment_usage(self, user_id: str, feature: FeatureKey, amount: int = 1) -> None:
        key = _key(user_id)
        feature_key = normalize_key(feature)
        next_reset = (self._clock() + self._reset_interval).isoformat()
        try:
            # first write for a user also creates the signup-state fields
            await self._redis.hsetnx(key, "plan", "free")
            await self._redis.hsetnx(key, "usage_reset_at", next_reset)
            await self._redis.hincrby(key, f"{USED_PREFIX}{feature_key}", amount)
        except RedisError as e:
            raise StorePersistenceError(user_id, f"increment of {feature_key} failed", cause=e) from e

    async def reset_usage(self, user_id: str, next_reset_at: datetime) -> None:
        key = _key(user_id)
        try:
            raw = await self._redis.hgetall(key)
            if not raw:
                return
            mapping = {name: "0" for name in raw if name.startswith(USED_PREFIX)}
            mapping["usage_reset_at"] = next_reset_at.isoformat()
            await self._redis.hset(key, mapping=mapping)
        except RedisError as e:
            raise StorePersistenceError(user_id, "usage reset failed", cause=e) from e
