"""
Feature guard: the entry point calling code uses to gate an action and record its usage.

check -> gated action -> track_usage are separate steps with no reservation or
locking between them. Two concurrent requests at the quota boundary can both
pass the check and both be tracked, overshooting the effective limit; metering
is optimistic and eventually consistent.
"""

import logging
from datetime import datetime
from typing import List, Optional

from .config import EntitlementSettings, ReadFailurePolicy
from .errors import StoreReadError, UnknownFeatureError, UsageStoreError
from .events import (
    BlockAlertMonitor,
    EventSink,
    LifecycleEventType,
    emit_event,
)
from .loader import load_plan_catalog
from .models import (
    FeatureCheck,
    FeatureKey,
    FeatureUsageSnapshot,
    UsageRecord,
    UsageStatus,
    UsageSummary,
    normalize_key,
)
from .resolver import EntitlementsResolver
from .store import DEFAULT_RESET_INTERVAL_DAYS, InMemoryUsageStore, UsageStore, reset_interval

logger = logging.getLogger(__name__)


class FeatureGuard:
    """Stateless facade over the resolver and the usage store."""

    def __init__(
        self,
        *,
        store: UsageStore,
        resolver: Optional[EntitlementsResolver] = None,
        event_sink: Optional[EventSink] = None,
        read_failure_policy: ReadFailurePolicy = ReadFailurePolicy.FAIL_OPEN,
        alert_monitor: Optional[BlockAlertMonitor] = None,
        reset_interval_days: int = DEFAULT_RESET_INTERVAL_DAYS,
    ) -> None:
        self.store = store
        self.resolver = resolver or EntitlementsResolver()
        self.read_failure_policy = read_failure_policy
        self.alert_monitor = alert_monitor or BlockAlertMonitor()
        self._event_sink = event_sink
        self._reset_interval = reset_interval(reset_interval_days)

    @property
    def catalog(self):
        return self.resolver.catalog

    # -- pure decisions over an already-fetched record --

    def check_feature(
        self,
        record: UsageRecord,
        feature: FeatureKey,
        now: Optional[datetime] = None,
    ) -> FeatureCheck:
        usage = self.resolver.snapshot_for(record, feature, now)
        return FeatureCheck(
            allowed=usage.status != UsageStatus.BLOCKED,
            status=usage.status,
            remaining=usage.remaining,
        )

    def get_usage(
        self,
        record: UsageRecord,
        feature: FeatureKey,
        now: Optional[datetime] = None,
    ) -> FeatureUsageSnapshot:
        return self.resolver.snapshot_for(record, feature, now)

    def get_usage_summary(self, record: UsageRecord, now: Optional[datetime] = None) -> UsageSummary:
        return self.resolver.summary_for(record, now)

    def features_near_limit(
        self,
        record: UsageRecord,
        now: Optional[datetime] = None,
    ) -> List[FeatureUsageSnapshot]:
        return self.resolver.features_near_limit(record, now)

    def check_and_log_limit_hit(
        self,
        record: UsageRecord,
        feature: FeatureKey,
        now: Optional[datetime] = None,
    ) -> FeatureCheck:
        """Check and emit feature_blocked / limit_hit lifecycle events."""
        check = self.check_feature(record, feature, now)
        feature_key = normalize_key(feature)

        if check.status == UsageStatus.BLOCKED:
            emit_event(
                self._event_sink,
                LifecycleEventType.FEATURE_BLOCKED,
                user_id=record.user_id,
                feature=feature_key,
                meta={"remaining": check.remaining},
            )
            self.alert_monitor.record_block(record.user_id, feature_key)
        elif check.status in (UsageStatus.WARNING, UsageStatus.CRITICAL):
            emit_event(
                self._event_sink,
                LifecycleEventType.LIMIT_HIT,
                user_id=record.user_id,
                feature=feature_key,
                meta={"status": check.status.value, "remaining": check.remaining},
            )
        return check

    def unavailable_check(self) -> FeatureCheck:
        """Decision used when the usage record could not be read."""
        if self.read_failure_policy == ReadFailurePolicy.FAIL_CLOSED:
            return FeatureCheck(allowed=False, status=UsageStatus.BLOCKED, remaining=0, degraded=True)
        return FeatureCheck(allowed=True, status=UsageStatus.OK, remaining=0, degraded=True)

    # -- store-backed operations --

    async def load_record(self, user_id: str) -> UsageRecord:
        """
        Fetch the user's record; users without one get a zeroed free-plan record.

        Raises:
            StoreReadError: the store could not be read
        """
        record = await self.store.fetch_usage_record(user_id)
        if record is None:
            logger.debug("No usage record, using blank record", extra={"user_id": user_id})
            return UsageRecord.blank(user_id, self.resolver.current_time() + self._reset_interval)
        return record

    async def check_user(self, user_id: str, feature: FeatureKey) -> FeatureCheck:
        try:
            record = await self.load_record(user_id)
        except StoreReadError as e:
            logger.warning(
                "Usage record unavailable, applying read failure policy",
                extra={
                    "user_id": user_id,
                    "feature": normalize_key(feature),
                    "policy": self.read_failure_policy.value,
                    "error": str(e),
                },
            )
            return self.unavailable_check()
        return self.check_and_log_limit_hit(record, feature)

    async def track_usage(self, user_id: str, feature: FeatureKey) -> None:
        """
        Increment the feature's used counter by one.

        Store failures are logged and swallowed: the gated action already
        succeeded and must not be reported as failed because metering lagged.

        Raises:
            UnknownFeatureError: the feature is not defined by the catalog
        """
        feature_key = normalize_key(feature)
        if not self.catalog.is_known_feature(feature_key):
            raise UnknownFeatureError(feature_key)

        try:
            await self.store.increment_usage(user_id, feature_key)
        except UsageStoreError as e:
            logger.error(
                "Failed to persist usage increment",
                extra={"user_id": user_id, "feature": feature_key, "error": str(e)},
            )
            return

        emit_event(
            self._event_sink,
            LifecycleEventType.USAGE_TRACKED,
            user_id=user_id,
            feature=feature_key,
            meta={"action": "increment"},
        )

    async def for_user(self, user_id: str) -> "UserFeatureGuard":
        bound = UserFeatureGuard(self, user_id)
        await bound.refresh()
        return bound


class UserFeatureGuard:
    """A FeatureGuard bound to one user and the record loaded for this request."""

    def __init__(self, guard: FeatureGuard, user_id: str) -> None:
        self.guard = guard
        self.user_id = user_id
        self.record: Optional[UsageRecord] = None
        self.load_error: Optional[StoreReadError] = None

    async def refresh(self) -> Optional[UsageRecord]:
        try:
            self.record = await self.guard.load_record(self.user_id)
            self.load_error = None
        except StoreReadError as e:
            logger.warning("Error loading usage record", extra={"user_id": self.user_id, "error": str(e)})
            self.record = None
            self.load_error = e
        return self.record

    def check_feature(self, feature: FeatureKey) -> FeatureCheck:
        if self.record is None:
            return self.guard.unavailable_check()
        return self.guard.check_feature(self.record, feature)

    def get_usage(self, feature: FeatureKey) -> Optional[FeatureUsageSnapshot]:
        if self.record is None:
            return None
        return self.guard.get_usage(self.record, feature)

    @property
    def usage_summary(self) -> Optional[UsageSummary]:
        if self.record is None:
            return None
        return self.guard.get_usage_summary(self.record)

    async def track_usage(self, feature: FeatureKey) -> None:
        await self.guard.track_usage(self.user_id, feature)
        await self.refresh()


def build_store(settings: EntitlementSettings) -> UsageStore:
    """Pick a store backend from settings: database, then Redis, then in-memory."""
    if settings.database_url:
        from .sql_store import SqlUsageStore

        return SqlUsageStore.from_url(
            settings.database_url, reset_interval_days=settings.reset_interval_days
        )
    if settings.redis_url:
        from .redis_store import RedisUsageStore

        return RedisUsageStore(
            redis_url=settings.redis_url, reset_interval_days=settings.reset_interval_days
        )
    logger.warning("No DATABASE_URL or REDIS_URL configured, usage is kept in memory")
    return InMemoryUsageStore(reset_interval_days=settings.reset_interval_days)


def build_feature_guard(
    settings: Optional[EntitlementSettings] = None,
    *,
    store: Optional[UsageStore] = None,
    event_sink: Optional[EventSink] = None,
) -> FeatureGuard:
    settings = settings or EntitlementSettings.from_env()
    catalog = load_plan_catalog(settings.plans_path, enforce_tier_order=settings.enforce_tier_order)
    return FeatureGuard(
        store=store or build_store(settings),
        resolver=EntitlementsResolver(catalog),
        event_sink=event_sink,
        read_failure_policy=settings.read_failure_policy,
        alert_monitor=BlockAlertMonitor(threshold=settings.block_alert_threshold),
        reset_interval_days=settings.reset_interval_days,
    )
