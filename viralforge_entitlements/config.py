"""
Runtime settings for the entitlements service, read from the environment.

ENTITLEMENTS_PLANS_PATH            plan catalog JSON (default: bundled plans.json)
ENTITLEMENTS_ENFORCE_TIER_ORDER    reject catalogs whose limits shrink going up a tier
ENTITLEMENTS_READ_FAILURE_POLICY   fail_open | fail_closed when the usage store is unreachable
ENTITLEMENTS_BLOCK_ALERT_THRESHOLD blocked checks per user per minute before alerting
USAGE_RESET_INTERVAL_DAYS          length of a usage period
REDIS_URL / DATABASE_URL           optional usage store backends
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .events import DEFAULT_BLOCK_ALERT_THRESHOLD
from .store import DEFAULT_RESET_INTERVAL_DAYS

logger = logging.getLogger(__name__)


class ReadFailurePolicy(str, Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid integer setting", extra={"setting": name, "value": raw, "default": default})
        return default
    if minimum is not None and value < minimum:
        logger.warning(
            "Setting below minimum",
            extra={"setting": name, "value": value, "minimum": minimum, "default": default},
        )
        return default
    return value


def _env_policy(name: str, default: ReadFailurePolicy) -> ReadFailurePolicy:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return ReadFailurePolicy(raw.strip().lower())
    except ValueError:
        logger.warning(
            "Invalid read failure policy",
            extra={"setting": name, "value": raw, "default": default.value},
        )
        return default


@dataclass(frozen=True)
class EntitlementSettings:
    plans_path: Optional[str] = None
    enforce_tier_order: bool = True
    read_failure_policy: ReadFailurePolicy = ReadFailurePolicy.FAIL_OPEN
    block_alert_threshold: int = DEFAULT_BLOCK_ALERT_THRESHOLD
    reset_interval_days: int = DEFAULT_RESET_INTERVAL_DAYS
    redis_url: Optional[str] = None
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EntitlementSettings":
        return cls(
            plans_path=os.getenv("ENTITLEMENTS_PLANS_PATH") or None,
            enforce_tier_order=_env_bool("ENTITLEMENTS_ENFORCE_TIER_ORDER", True),
            read_failure_policy=_env_policy(
                "ENTITLEMENTS_READ_FAILURE_POLICY", ReadFailurePolicy.FAIL_OPEN
            ),
            block_alert_threshold=_env_int(
                "ENTITLEMENTS_BLOCK_ALERT_THRESHOLD", DEFAULT_BLOCK_ALERT_THRESHOLD, minimum=1
            ),
            reset_interval_days=_env_int(
                "USAGE_RESET_INTERVAL_DAYS", DEFAULT_RESET_INTERVAL_DAYS, minimum=1
            ),
            redis_url=os.getenv("REDIS_URL") or None,
            database_url=os.getenv("DATABASE_URL") or None,
        )
