"""
Plan entitlements and usage-limit evaluation.

This package provides:
- PlanCatalog / PlanCatalogLoader: plan limits and feature flags from plans.json
- classify: used / effective limit -> ok, warning, critical, blocked
- EntitlementsResolver: per-feature usage snapshots and usage summaries
- FeatureGuard: check a feature before an action, track usage after it
- UsageStore: store interface with in-memory, Redis and SQL implementations

Thresholds: warning at 70%, critical at 90%, blocked at 100% of the effective limit.
"""

from viralforge_entitlements.catalog import (
    PlanCatalog,
    find_incomplete_plans,
    find_tier_order_violations,
)
from viralforge_entitlements.classifier import (
    BLOCKED_THRESHOLD,
    CRITICAL_THRESHOLD,
    WARNING_THRESHOLD,
    classify,
)
from viralforge_entitlements.config import EntitlementSettings, ReadFailurePolicy
from viralforge_entitlements.errors import (
    CatalogValidationError,
    EntitlementError,
    StorePersistenceError,
    StoreReadError,
    UnknownFeatureError,
    UsageStoreError,
)
from viralforge_entitlements.events import BlockAlertMonitor, LifecycleEventType
from viralforge_entitlements.guard import (
    FeatureGuard,
    UserFeatureGuard,
    build_feature_guard,
    build_store,
)
from viralforge_entitlements.loader import (
    DEFAULT_PLANS_PATH,
    PlanCatalogLoader,
    default_catalog,
    load_plan_catalog,
)
from viralforge_entitlements.models import (
    Feature,
    FeatureCheck,
    FeatureUsageSnapshot,
    Flag,
    PlanDefinition,
    UsageRecord,
    UsageStatus,
    UsageSummary,
)
from viralforge_entitlements.resolver import EntitlementsResolver
from viralforge_entitlements.store import InMemoryUsageStore, UsageStore

__all__ = [
    # Catalog
    "PlanCatalog",
    "PlanCatalogLoader",
    "DEFAULT_PLANS_PATH",
    "default_catalog",
    "load_plan_catalog",
    "find_incomplete_plans",
    "find_tier_order_violations",
    # Classification
    "classify",
    "WARNING_THRESHOLD",
    "CRITICAL_THRESHOLD",
    "BLOCKED_THRESHOLD",
    # Models
    "Feature",
    "Flag",
    "FeatureCheck",
    "FeatureUsageSnapshot",
    "PlanDefinition",
    "UsageRecord",
    "UsageStatus",
    "UsageSummary",
    # Resolution and gating
    "EntitlementsResolver",
    "FeatureGuard",
    "UserFeatureGuard",
    "build_feature_guard",
    "build_store",
    # Stores
    "UsageStore",
    "InMemoryUsageStore",
    # Settings
    "EntitlementSettings",
    "ReadFailurePolicy",
    # Events
    "BlockAlertMonitor",
    "LifecycleEventType",
    # Errors
    "EntitlementError",
    "CatalogValidationError",
    "UnknownFeatureError",
    "UsageStoreError",
    "StoreReadError",
    "StorePersistenceError",
]
