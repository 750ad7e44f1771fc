"""
Entitlements resolver: plan catalog + stored usage -> per-feature snapshots and summaries.

Pure read/derive; never raises for unknown plans or absent counters.
"""

import math
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .catalog import PlanCatalog
from .classifier import classify
from .loader import default_catalog
from .models import (
    FeatureKey,
    FeatureUsageSnapshot,
    PlanDefinition,
    UsageRecord,
    UsageStatus,
    UsageSummary,
    as_utc,
    normalize_key,
)

SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementsResolver:
    """Combines a UsageRecord with the plan catalog."""

    def __init__(
        self,
        catalog: Optional[PlanCatalog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.catalog = catalog or default_catalog()
        self._clock = clock or utcnow

    def current_time(self) -> datetime:
        return as_utc(self._clock())

    def _now(self, now: Optional[datetime]) -> datetime:
        return as_utc(now) or self.current_time()

    def effective_plan(self, record: UsageRecord, now: Optional[datetime] = None) -> PlanDefinition:
        """Top tier while comped, otherwise the stored plan (unknown -> free)."""
        if record.is_comped(self._now(now)):
            return self.catalog.top_tier()
        return self.catalog.get_plan(record.plan)

    def snapshot_for(
        self,
        record: UsageRecord,
        feature: FeatureKey,
        now: Optional[datetime] = None,
    ) -> FeatureUsageSnapshot:
        feature_key = normalize_key(feature)
        plan = self.effective_plan(record, now)

        limit = plan.limit_for(feature_key)
        bonus = record.bonus_for(feature_key)
        effective_limit = limit + bonus
        used = record.used_for(feature_key)

        return FeatureUsageSnapshot(
            feature=feature_key,
            used=used,
            limit=limit,
            bonus=bonus,
            effective_limit=effective_limit,
            remaining=max(0, effective_limit - used),
            percentage=used / effective_limit if effective_limit > 0 else 1.0,
            status=classify(used, effective_limit),
        )

    def summary_for(self, record: UsageRecord, now: Optional[datetime] = None) -> UsageSummary:
        compare_at = self._now(now)
        plan = self.effective_plan(record, compare_at)

        features: Dict[str, FeatureUsageSnapshot] = {
            key: self.snapshot_for(record, key, compare_at) for key in self.catalog.feature_keys()
        }
        flags = {key: plan.has_feature(key) for key in self.catalog.flag_keys()}

        return UsageSummary(
            user_id=record.user_id,
            plan=plan.plan_id,
            is_comped=record.is_comped(compare_at),
            features=features,
            flags=flags,
            days_until_reset=days_until(record.usage_reset_at, compare_at),
        )

    def features_near_limit(
        self,
        record: UsageRecord,
        now: Optional[datetime] = None,
    ) -> List[FeatureUsageSnapshot]:
        """Metered features past the warning threshold, excluding ones with no quota."""
        summary = self.summary_for(record, now)
        return [
            snap
            for snap in summary.features.values()
            if snap.status != UsageStatus.OK and snap.effective_limit > 0
        ]


def days_until(moment: datetime, now: datetime) -> int:
    seconds = (as_utc(moment) - as_utc(now)).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))
