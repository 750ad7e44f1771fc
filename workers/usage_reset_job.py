from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from viralforge_entitlements.errors import UsageStoreError
from viralforge_entitlements.models import as_utc
from viralforge_entitlements.store import DEFAULT_RESET_INTERVAL_DAYS, UsageStore, reset_interval

logger = logging.getLogger(__name__)


@dataclass
class ResetStats:
    started_at: str
    completed_at: Optional[str] = None
    checked: int = 0
    reset: int = 0
    errors: int = 0


def next_reset_after(reset_at: datetime, now: datetime, interval: timedelta) -> datetime:
    """Advance ``reset_at`` by whole intervals until it lies after ``now``."""
    if interval <= timedelta(0):
        raise ValueError(f"reset interval must be positive, got {interval}")
    if reset_at > now:
        return reset_at
    periods = (now - reset_at) // interval + 1
    return reset_at + periods * interval


async def run_usage_reset_cycle(
    store: UsageStore,
    user_ids: Iterable[str],
    *,
    now: Optional[datetime] = None,
    interval_days: int = DEFAULT_RESET_INTERVAL_DAYS,
) -> ResetStats:
    """Monthly usage reset.

    Responsibilities:
    - zero the counters of users whose usage_reset_at has passed
    - schedule their next reset
    - keep going when one user's store call fails
    """
    compare_at = as_utc(now) or datetime.now(timezone.utc)
    interval = reset_interval(interval_days)
    stats = ResetStats(started_at=datetime.now(timezone.utc).isoformat())

    for user_id in user_ids:
        stats.checked += 1
        try:
            record = await store.fetch_usage_record(user_id)
            if record is None or record.usage_reset_at > compare_at:
                continue
            next_reset = next_reset_after(record.usage_reset_at, compare_at, interval)
            await store.reset_usage(user_id, next_reset)
            stats.reset += 1
        except UsageStoreError as e:
            stats.errors += 1
            logger.error("Usage reset failed", extra={"user_id": user_id, "error": str(e)})

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info(
        "Usage reset cycle complete",
        extra={"checked": stats.checked, "reset": stats.reset, "errors": stats.errors},
    )
    return stats


async def run_forever(
    store: UsageStore,
    user_ids_provider: Callable[[], Iterable[str]],
    interval_seconds: int = 3600,
) -> None:
    while True:
        await run_usage_reset_cycle(store, user_ids_provider())
        await asyncio.sleep(interval_seconds)
