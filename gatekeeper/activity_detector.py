"""
Suspicious Activity Detector
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .event_log import SecurityEventLog
from .records import AlertType, EventFilter, EventType, SecurityAlert, Severity, utcnow

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=1)


class SuspiciousActivityDetector:
    """Classify recent failed authentication for an ip or user"""

    def __init__(self, event_log: SecurityEventLog, brute_force_threshold: int = 10,
                 failed_login_threshold: int = 5, window: timedelta = DEFAULT_WINDOW,
                 clock: Callable[[], datetime] = utcnow):
        self.event_log = event_log
        self.brute_force_threshold = brute_force_threshold
        self.failed_login_threshold = failed_login_threshold
        self.window = window
        self.clock = clock

    def classify(self, count: int):
        """Map a failure count to (alert type, severity), or None"""
        # Brute force first so 10+ never reports the lower severity
        if count >= self.brute_force_threshold:
            return AlertType.BRUTE_FORCE, Severity.CRITICAL
        if count >= self.failed_login_threshold:
            return AlertType.MULTIPLE_FAILED_LOGINS, Severity.HIGH
        return None

    async def detect(self, ip: Optional[str] = None, user_id: Optional[str] = None,
                     window: Optional[timedelta] = None) -> Optional[SecurityAlert]:
        """Return an alert when recent failed logins cross a threshold"""
        if ip == "unknown":
            ip = None
        if ip is None and user_id is None:
            return None

        window = window or self.window
        now = self.clock()
        flt = EventFilter(
            types=(EventType.FAILED_LOGIN,),
            ip=ip,
            user_id=user_id,
            since=now - window,
            until=now,
            match_any=True,
        )

        try:
            events = await self.event_log.query(flt)
        except Exception as e:
            logger.warning(f"Suspicious activity check skipped, event store unavailable: {e!r}")
            return None

        classification = self.classify(len(events))
        if classification is None:
            return None

        alert_type, severity = classification
        return SecurityAlert(
            type=alert_type,
            severity=severity,
            ip=ip or "unknown",
            user_id=user_id,
            timestamp=now,
            details={
                "failed_attempts": len(events),
                "window_seconds": int(window.total_seconds()),
                "first_seen": events[0].timestamp.isoformat(),
                "last_seen": events[-1].timestamp.isoformat(),
            },
        )
