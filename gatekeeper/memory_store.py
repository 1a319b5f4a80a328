"""
In-memory store implementation
"""

import bisect
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .records import (
    AdminSession, EventFilter, IPWhitelistRule, RateLimitRecord,
    SecurityAlert, SecurityEvent, utcnow,
)
from .store import GateStore


class MemoryStore(GateStore):
    """In-memory gatekeeper store guarded by a single re-entrant lock"""

    def __init__(self):
        self.counters: Dict[str, RateLimitRecord] = {}
        self.events: List[SecurityEvent] = []
        self.event_times: List[datetime] = []
        self.sessions: Dict[str, AdminSession] = {}
        self.rules: Dict[str, IPWhitelistRule] = {}
        self.alerts: Dict[str, SecurityAlert] = {}
        self.lock = threading.RLock()

    # Counters

    async def get_counter(self, key: str) -> Optional[RateLimitRecord]:
        """Get a copy of the counter for key"""
        with self.lock:
            record = self.counters.get(key)
            return replace(record) if record else None

    async def increment(self, key: str, window: timedelta, now: datetime) -> RateLimitRecord:
        """Increment under the lock so concurrent callers never lose an update"""
        with self.lock:
            record = self.counters.get(key)
            if record is None or now - record.window_start > window:
                record = RateLimitRecord(key=key, window_start=now, attempts=0)
                self.counters[key] = record
            record.attempts += 1
            return replace(record)

    async def delete_counter(self, key: str) -> None:
        with self.lock:
            self.counters.pop(key, None)

    async def prune_counters(self, older_than: datetime) -> int:
        with self.lock:
            expired = [k for k, r in self.counters.items() if r.window_start < older_than]
            for key in expired:
                del self.counters[key]
            return len(expired)

    # Events

    async def append_event(self, event: SecurityEvent) -> None:
        """Insert keeping the list ordered by timestamp"""
        with self.lock:
            index = bisect.bisect_right(self.event_times, event.timestamp)
            self.event_times.insert(index, event.timestamp)
            self.events.insert(index, event)

    async def query_events(self, flt: EventFilter) -> List[SecurityEvent]:
        with self.lock:
            start = 0
            if flt.since is not None:
                start = bisect.bisect_left(self.event_times, flt.since)
            matched = [e for e in self.events[start:] if flt.matches(e)]

        if flt.limit is not None:
            matched = matched[-flt.limit:] if flt.limit > 0 else []
        return matched

    # Admin sessions

    async def create_session(self, session: AdminSession, max_concurrent: int,
                             now: datetime) -> List[AdminSession]:
        with self.lock:
            active = sorted(
                (s for s in self.sessions.values()
                 if s.user_id == session.user_id and s.is_valid_at(now)),
                key=lambda s: s.created_at,
            )
            evicted = []
            # Make room for the new session, oldest first
            while max_concurrent > 0 and len(active) >= max_concurrent:
                oldest = active.pop(0)
                oldest.is_active = False
                evicted.append(replace(oldest))
            self.sessions[session.session_token] = replace(session)
            return evicted

    async def get_session(self, token: str) -> Optional[AdminSession]:
        with self.lock:
            session = self.sessions.get(token)
            return replace(session) if session else None

    async def deactivate_session(self, token: str) -> bool:
        with self.lock:
            session = self.sessions.get(token)
            if session is None or not session.is_active:
                return False
            session.is_active = False
            return True

    async def deactivate_user_sessions(self, user_id: str) -> int:
        with self.lock:
            count = 0
            for session in self.sessions.values():
                if session.user_id == user_id and session.is_active:
                    session.is_active = False
                    count += 1
            return count

    async def list_sessions(self, user_id: str, active_only: bool = True,
                            now: Optional[datetime] = None) -> List[AdminSession]:
        now = now or utcnow()
        with self.lock:
            sessions = [
                replace(s) for s in self.sessions.values()
                if s.user_id == user_id and (not active_only or s.is_valid_at(now))
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    async def prune_sessions(self, now: datetime) -> int:
        with self.lock:
            stale = [t for t, s in self.sessions.items() if not s.is_valid_at(now)]
            for token in stale:
                del self.sessions[token]
            return len(stale)

    # Whitelist rules

    async def list_rules(self, active_only: bool = True) -> List[IPWhitelistRule]:
        with self.lock:
            rules = [replace(r) for r in self.rules.values() if r.is_active or not active_only]
        return sorted(rules, key=lambda r: r.created_at)

    async def add_rule(self, rule: IPWhitelistRule) -> IPWhitelistRule:
        with self.lock:
            self.rules[rule.id] = replace(rule)
            return rule

    async def remove_rule(self, rule_id: str) -> bool:
        with self.lock:
            return self.rules.pop(rule_id, None) is not None

    # Alerts

    async def add_alert(self, alert: SecurityAlert) -> None:
        with self.lock:
            self.alerts[alert.id] = replace(alert)

    async def find_unresolved(self, user_id: Optional[str] = None,
                              ip: Optional[str] = None) -> List[SecurityAlert]:
        with self.lock:
            return [
                replace(a) for a in self.alerts.values()
                if not a.resolved and (
                    (user_id is not None and a.user_id == user_id)
                    or (ip is not None and a.ip == ip)
                )
            ]

    async def resolve_alert(self, alert_id: str) -> bool:
        with self.lock:
            alert = self.alerts.get(alert_id)
            if alert is None:
                return False
            alert.resolved = True
            return True

    async def list_alerts(self, include_resolved: bool = False) -> List[SecurityAlert]:
        with self.lock:
            alerts = [replace(a) for a in self.alerts.values() if include_resolved or not a.resolved]
        return sorted(alerts, key=lambda a: a.timestamp)
