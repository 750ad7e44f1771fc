"""
Usage status classification: used / effective limit -> ok, warning, critical, blocked.

Thresholds are fixed and apply uniformly to every plan and feature.
"""

from typing import Union

from .models import UsageStatus

WARNING_THRESHOLD = 0.7
CRITICAL_THRESHOLD = 0.9
BLOCKED_THRESHOLD = 1.0

Number = Union[int, float]


def _non_negative(value: Number) -> float:
    try:
        return max(0.0, float(value or 0))
    except (TypeError, ValueError):
        return 0.0


def usage_ratio(used: Number, effective_limit: Number) -> float:
    """Fraction of the quota consumed; 1.0 when there is no quota at all."""
    limit = _non_negative(effective_limit)
    if limit == 0:
        return 1.0
    return _non_negative(used) / limit


def classify(used: Number, effective_limit: Number) -> UsageStatus:
    """
    Classify usage against an effective limit.

    A zero limit means the feature is not entitled and is always blocked.
    Boundaries are inclusive: exactly 90% is critical, exactly 100% is blocked.
    """
    if _non_negative(effective_limit) == 0:
        return UsageStatus.BLOCKED

    ratio = usage_ratio(used, effective_limit)
    if ratio >= BLOCKED_THRESHOLD:
        return UsageStatus.BLOCKED
    if ratio >= CRITICAL_THRESHOLD:
        return UsageStatus.CRITICAL
    if ratio >= WARNING_THRESHOLD:
        return UsageStatus.WARNING
    return UsageStatus.OK
