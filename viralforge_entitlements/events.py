"""
Lifecycle events and alerts for feature gating.

Events go to an injected sink ``(event_type, payload) -> None``; sink failures
are logged and never reach the caller.
"""

import logging
import time
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EventSink = Callable[[str, dict], None]

DEFAULT_BLOCK_ALERT_THRESHOLD = 10
ALERT_WINDOW_SECONDS = 60


class LifecycleEventType(str, Enum):
    FEATURE_BLOCKED = "feature_blocked"
    LIMIT_HIT = "limit_hit"
    USAGE_TRACKED = "usage_tracked"


def log_sink(event_type: str, payload: dict) -> None:
    """Default sink: structured log line per event."""
    logger.info("Lifecycle event", extra={"event_type": event_type, **payload})


def emit_event(
    sink: Optional[EventSink],
    event_type: LifecycleEventType,
    *,
    user_id: str,
    feature: str,
    meta: Optional[dict] = None,
) -> None:
    payload = {
        "user_id": user_id,
        "feature": feature,
        "meta": dict(meta or {}),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        (sink or log_sink)(event_type.value, payload)
    except Exception as e:
        logger.error(
            "Failed to emit lifecycle event",
            extra={"event_type": event_type.value, "user_id": user_id, "error": str(e)},
        )


class BlockAlertMonitor:
    """Sliding one-minute window of blocked checks per user.

    Logs a warning once a user reaches ``threshold`` blocked checks within the
    window; replace with a metrics backend if needed.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_BLOCK_ALERT_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.threshold = threshold
        self._clock = clock
        self._blocks: Dict[str, List[float]] = {}
        self._last_sweep = 0.0
        self._lock = Lock()

    def _prune(self, user_id: str, now: float) -> int:
        cutoff = now - ALERT_WINDOW_SECONDS
        recent = [t for t in self._blocks.get(user_id, ()) if t > cutoff]
        if recent:
            self._blocks[user_id] = recent
        else:
            self._blocks.pop(user_id, None)
        return len(recent)

    def _sweep(self, now: float) -> None:
        # at most once per window; drops users with no block inside it
        if now - self._last_sweep < ALERT_WINDOW_SECONDS:
            return
        self._last_sweep = now
        cutoff = now - ALERT_WINDOW_SECONDS
        for user_id in [u for u, times in self._blocks.items() if times[-1] <= cutoff]:
            del self._blocks[user_id]

    def count(self, user_id: str) -> int:
        with self._lock:
            return self._prune(user_id, self._clock())

    def tracked_users(self) -> int:
        with self._lock:
            return len(self._blocks)

    def record_block(self, user_id: str, feature: str) -> bool:
        """Record a blocked check; True when the alert fired."""
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._blocks.setdefault(user_id, []).append(now)
            count = self._prune(user_id, now)
        if count >= self.threshold:
            emit_block_alert(user_id, feature, count)
            return True
        return False


def emit_block_alert(user_id: str, feature: str, count: int) -> None:
    logger.warning(
        "Repeated blocked feature checks",
        extra={"user_id": user_id, "feature": feature, "count_per_min": count},
    )
