"""
Usage store interface and in-memory implementation.

The store owns UsageRecords. The core only reads records and increments
counters through this interface; monthly resets are driven by the reset worker.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from threading import RLock
from typing import Callable, Dict, Optional

from .models import FeatureKey, UsageRecord, normalize_key
from .resolver import utcnow

DEFAULT_RESET_INTERVAL_DAYS = 30


def reset_interval(days: int) -> timedelta:
    """Length of a usage period; at least one day."""
    if days < 1:
        raise ValueError(f"reset interval must be at least 1 day, got {days}")
    return timedelta(days=days)


class UsageStore(ABC):
    """Durable per-user usage counters."""

    @abstractmethod
    async def fetch_usage_record(self, user_id: str) -> Optional[UsageRecord]:
        """Return the user's record, or None when the user has none yet.

        Raises StoreReadError when the backend cannot be reached.
        """

    @abstractmethod
    async def increment_usage(self, user_id: str, feature: FeatureKey, amount: int = 1) -> None:
        """Add ``amount`` to the feature's used counter, creating the record if needed.

        Raises StorePersistenceError when the write fails.
        """

    @abstractmethod
    async def reset_usage(self, user_id: str, next_reset_at: datetime) -> None:
        """Zero every used counter and schedule the next reset. Bonus grants are kept."""


class InMemoryUsageStore(UsageStore):
    """Dict-backed store for tests and single-process deployments."""

    def __init__(
        self,
        *,
        reset_interval_days: int = DEFAULT_RESET_INTERVAL_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._records: Dict[str, UsageRecord] = {}
        self._lock = RLock()
        self._reset_interval = reset_interval(reset_interval_days)
        self._clock = clock or utcnow

    def put(self, record: UsageRecord) -> None:
        with self._lock:
            self._records[record.user_id] = record

    def _get_or_create(self, user_id: str) -> UsageRecord:
        record = self._records.get(user_id)
        if record is None:
            record = UsageRecord.blank(user_id, self._clock() + self._reset_interval)
        return record

    def grant_bonus(self, user_id: str, feature: FeatureKey, amount: int) -> None:
        key = normalize_key(feature)
        with self._lock:
            record = self._get_or_create(user_id)
            bonus = dict(record.bonus)
            bonus[key] = bonus.get(key, 0) + amount
            self._records[user_id] = replace(record, bonus=bonus)

    async def fetch_usage_record(self, user_id: str) -> Optional[UsageRecord]:
        with self._lock:
            return self._records.get(user_id)

    async def increment_usage(self, user_id: str, feature: FeatureKey, amount: int = 1) -> None:
        key = normalize_key(feature)
        with self._lock:
            record = self._get_or_create(user_id)
            used = dict(record.used)
            used[key] = used.get(key, 0) + amount
            self._records[user_id] = replace(record, used=used)

    async def reset_usage(self, user_id: str, next_reset_at: datetime) -> None:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return
            self._records[user_id] = replace(
                record,
                used={key: 0 for key in record.used},
                usage_reset_at=next_reset_at,
            )
