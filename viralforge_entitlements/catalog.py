from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Optional, Sequence, Tuple

from .models import FeatureKey, FlagKey, PlanDefinition, normalize_key

FREE_PLAN_ID = "free"


@dataclass(frozen=True)
class PlanCatalog:
    """Immutable plan id -> PlanDefinition table.

    ``plan_order`` runs from the lowest to the highest tier; the last entry is
    the top tier granted to comped accounts. Unknown plan ids resolve to
    ``free`` and never raise.
    """

    plans: Mapping[str, PlanDefinition]
    plan_order: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        plans = {normalize_key(key): plan for key, plan in self.plans.items()}
        if FREE_PLAN_ID not in plans:
            raise ValueError("plan catalog must define a 'free' plan")
        order = tuple(normalize_key(p) for p in self.plan_order) or tuple(plans)
        unknown = [p for p in order if p not in plans]
        if unknown:
            raise ValueError(f"plan_order references unknown plans: {unknown}")
        missing = [p for p in plans if p not in order]
        object.__setattr__(self, "plans", MappingProxyType(plans))
        object.__setattr__(self, "plan_order", order + tuple(missing))

    def get_plan(self, plan_id: Optional[str]) -> PlanDefinition:
        plan = self.plans.get(normalize_key(plan_id))
        if plan is None:
            return self.plans[FREE_PLAN_ID]
        return plan

    def limit_for(self, plan_id: Optional[str], feature: FeatureKey) -> int:
        return self.get_plan(plan_id).limit_for(feature)

    def has_feature(self, plan_id: Optional[str], flag: FlagKey) -> bool:
        return self.get_plan(plan_id).has_feature(flag)

    def is_known_plan(self, plan_id: Optional[str]) -> bool:
        return normalize_key(plan_id) in self.plans

    def plan_ids(self) -> Tuple[str, ...]:
        return self.plan_order

    def top_tier(self) -> PlanDefinition:
        return self.plans[self.plan_order[-1]]

    def feature_keys(self) -> Tuple[str, ...]:
        keys: List[str] = []
        for plan_id in self.plan_order:
            for key in self.plans[plan_id].limits:
                if key not in keys:
                    keys.append(key)
        return tuple(keys)

    def flag_keys(self) -> Tuple[str, ...]:
        keys: List[str] = []
        for plan_id in self.plan_order:
            for key in self.plans[plan_id].features:
                if key not in keys:
                    keys.append(key)
        return tuple(keys)

    def is_known_feature(self, feature: FeatureKey) -> bool:
        return normalize_key(feature) in self.feature_keys()

    def recommended_upgrade(
        self,
        plan_id: Optional[str],
        blocked_feature: Optional[FeatureKey] = None,
    ) -> str:
        """Cheapest higher tier that raises the blocked feature's limit.

        Without a blocked feature (or when no tier raises it) the next tier
        up is returned; the top tier recommends itself.
        """
        current = self.get_plan(plan_id)
        position = self.plan_order.index(current.plan_id)
        higher = self.plan_order[position + 1:]
        if not higher:
            return current.plan_id

        if blocked_feature is not None:
            current_limit = current.limit_for(blocked_feature)
            for candidate in higher:
                if self.plans[candidate].limit_for(blocked_feature) > current_limit:
                    return candidate
        return higher[0]


def find_incomplete_plans(catalog: PlanCatalog) -> List[str]:
    """Plans missing a limit or flag key that some other plan defines."""
    violations: List[str] = []
    features: FrozenSet[str] = frozenset(catalog.feature_keys())
    flags: FrozenSet[str] = frozenset(catalog.flag_keys())
    for plan_id in catalog.plan_order:
        plan = catalog.plans[plan_id]
        for key in sorted(features - set(plan.limits)):
            violations.append(f"plan '{plan_id}' is missing limit '{key}'")
        for key in sorted(flags - set(plan.features)):
            violations.append(f"plan '{plan_id}' is missing feature flag '{key}'")
    return violations


def find_tier_order_violations(catalog: PlanCatalog) -> List[str]:
    """Limits that shrink, or flags that switch off, moving up the plan order."""
    violations: List[str] = []
    order: Sequence[str] = catalog.plan_order
    for lower_id, higher_id in zip(order, order[1:]):
        lower = catalog.plans[lower_id]
        higher = catalog.plans[higher_id]
        for key in catalog.feature_keys():
            if higher.limit_for(key) < lower.limit_for(key):
                violations.append(
                    f"limit '{key}' decreases from {lower_id} ({lower.limit_for(key)}) "
                    f"to {higher_id} ({higher.limit_for(key)})"
                )
        for key in catalog.flag_keys():
            if lower.has_feature(key) and not higher.has_feature(key):
                violations.append(f"feature flag '{key}' is lost from {lower_id} to {higher_id}")
    return violations
