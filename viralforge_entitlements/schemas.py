"""
Pydantic schemas for the entitlements HTTP endpoints.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field

from .models import FeatureCheck, FeatureUsageSnapshot, UsageSummary


class FeatureRequest(BaseModel):
    """Body for check and track calls."""

    feature: Optional[str] = Field(None, description="Metered feature key, e.g. hooks")


class FeatureUsageResponse(BaseModel):
    feature: str = Field(..., description="Metered feature key")
    used: int = Field(..., description="Units consumed this period")
    limit: int = Field(..., description="Plan quota before bonus credits")
    bonus: int = Field(..., description="Additional credits granted")
    effective_limit: int = Field(..., description="limit + bonus")
    remaining: int = Field(..., description="Units left this period, never negative")
    percentage: float = Field(..., description="used / effective_limit (1.0 with no quota)")
    status: str = Field(..., description="ok, warning, critical or blocked")

    @classmethod
    def from_snapshot(cls, snap: FeatureUsageSnapshot) -> "FeatureUsageResponse":
        return cls(**snap.to_dict())


class UsageSummaryResponse(BaseModel):
    user_id: str
    plan: str = Field(..., description="Effective plan after comped override")
    is_comped: bool
    features: Dict[str, FeatureUsageResponse]
    flags: Dict[str, bool] = Field(..., description="Boolean capabilities of the effective plan")
    days_until_reset: int

    @classmethod
    def from_summary(cls, summary: UsageSummary) -> "UsageSummaryResponse":
        return cls(
            user_id=summary.user_id,
            plan=summary.plan,
            is_comped=summary.is_comped,
            features={
                key: FeatureUsageResponse.from_snapshot(snap)
                for key, snap in summary.features.items()
            },
            flags=dict(summary.flags),
            days_until_reset=summary.days_until_reset,
        )


class FeatureCheckResponse(BaseModel):
    allowed: bool
    status: str
    remaining: int
    degraded: bool = Field(False, description="Decided without a usage record (store unavailable)")

    @classmethod
    def from_check(cls, check: FeatureCheck) -> "FeatureCheckResponse":
        return cls(**check.to_dict())


class TrackUsageResponse(BaseModel):
    success: bool
