from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union


class UsageStatus(str, Enum):
    """Usage status derived from the used / effective limit ratio."""

    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKED = "blocked"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    UsageStatus.OK: 0,
    UsageStatus.WARNING: 1,
    UsageStatus.CRITICAL: 2,
    UsageStatus.BLOCKED: 3,
}


class Feature(str, Enum):
    """Metered features of the bundled plan catalog."""

    HOOKS = "hooks"
    ABTEST = "abtest"
    PLANNER = "planner"
    ANALYSES = "analyses"
    BRAND_KITS = "brand_kits"
    DAILY_SUGGESTIONS = "daily_suggestions"
    CAPTIONS = "captions"


class Flag(str, Enum):
    """Boolean capability flags of the bundled plan catalog."""

    PERSONA_LEARNING = "persona_learning"
    PERFORMANCE_TRACKING = "performance_tracking"
    PRIORITY_SUPPORT = "priority_support"
    API_ACCESS = "api_access"
    WEEKLY_INSIGHTS = "weekly_insights"


FeatureKey = Union[str, Feature]
FlagKey = Union[str, Flag]


def normalize_key(key: Union[str, Enum, None]) -> str:
    """Return the plain string form of a feature, flag or plan key."""
    if key is None:
        return ""
    if isinstance(key, Enum):
        return str(key.value).strip()
    return str(key).strip()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _counter(value) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class PlanDefinition:
    """Limits and capability flags for one plan tier."""

    plan_id: str
    limits: Mapping[str, int]
    features: Mapping[str, bool]
    name: Mapping[str, str] = field(default_factory=dict)
    price_monthly: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "plan_id", normalize_key(self.plan_id))
        object.__setattr__(
            self,
            "limits",
            MappingProxyType({normalize_key(k): _counter(v) for k, v in self.limits.items()}),
        )
        object.__setattr__(
            self,
            "features",
            MappingProxyType({normalize_key(k): bool(v) for k, v in self.features.items()}),
        )
        object.__setattr__(self, "name", MappingProxyType(dict(self.name)))

    def limit_for(self, feature: FeatureKey) -> int:
        return self.limits.get(normalize_key(feature), 0)

    def has_feature(self, flag: FlagKey) -> bool:
        return bool(self.features.get(normalize_key(flag), False))

    def display_name(self, locale: str = "en") -> str:
        return self.name.get(locale) or self.name.get("en") or self.plan_id


@dataclass(frozen=True)
class UsageRecord:
    """Stored usage counters for one user within the current billing period."""

    user_id: str
    usage_reset_at: datetime
    plan: str = "free"
    used: Mapping[str, int] = field(default_factory=dict)
    bonus: Mapping[str, int] = field(default_factory=dict)
    comped_until: Optional[datetime] = None

    def __post_init__(self) -> None:
        user_id = str(self.user_id).strip()
        if not user_id:
            raise ValueError("user_id is required")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "plan", normalize_key(self.plan) or "free")
        object.__setattr__(
            self,
            "used",
            MappingProxyType({normalize_key(k): _counter(v) for k, v in self.used.items()}),
        )
        object.__setattr__(
            self,
            "bonus",
            MappingProxyType({normalize_key(k): _counter(v) for k, v in self.bonus.items()}),
        )
        object.__setattr__(self, "usage_reset_at", as_utc(self.usage_reset_at))
        object.__setattr__(self, "comped_until", as_utc(self.comped_until))

    @classmethod
    def blank(cls, user_id: str, usage_reset_at: datetime) -> "UsageRecord":
        """A signup-state record: free plan, every counter zero."""
        return cls(user_id=user_id, usage_reset_at=usage_reset_at)

    def used_for(self, feature: FeatureKey) -> int:
        return self.used.get(normalize_key(feature), 0)

    def bonus_for(self, feature: FeatureKey) -> int:
        return self.bonus.get(normalize_key(feature), 0)

    def is_comped(self, now: Optional[datetime] = None) -> bool:
        if self.comped_until is None:
            return False
        compare_at = as_utc(now) or datetime.now(timezone.utc)
        return compare_at < self.comped_until


@dataclass(frozen=True)
class FeatureUsageSnapshot:
    """Derived usage figures for one feature."""

    feature: str
    used: int
    limit: int
    bonus: int
    effective_limit: int
    remaining: int
    percentage: float
    status: UsageStatus

    def to_dict(self) -> dict:
        return {
            "feature": self.feature,
            "used": self.used,
            "limit": self.limit,
            "bonus": self.bonus,
            "effective_limit": self.effective_limit,
            "remaining": self.remaining,
            "percentage": self.percentage,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class UsageSummary:
    """Per-feature snapshots plus plan flags for one user."""

    user_id: str
    plan: str
    is_comped: bool
    features: Mapping[str, FeatureUsageSnapshot]
    flags: Mapping[str, bool]
    days_until_reset: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "features", MappingProxyType(dict(self.features)))
        object.__setattr__(self, "flags", MappingProxyType(dict(self.flags)))

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "plan": self.plan,
            "is_comped": self.is_comped,
            "features": {key: snap.to_dict() for key, snap in self.features.items()},
            "flags": dict(self.flags),
            "days_until_reset": self.days_until_reset,
        }


@dataclass(frozen=True)
class FeatureCheck:
    """Gate decision for a single feature.

    ``degraded`` is set when the decision was made without a usage record
    because the store read failed.
    """

    allowed: bool
    status: UsageStatus
    remaining: int
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "status": self.status.value,
            "remaining": self.remaining,
            "degraded": self.degraded,
        }
