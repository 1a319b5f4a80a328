"""
Storage interfaces used by the gatekeeper services
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from .records import (
    AdminSession, EventFilter, IPWhitelistRule, RateLimitRecord,
    SecurityAlert, SecurityEvent,
)


class CounterStore(ABC):
    """Windowed attempt counters for the rate limiter"""

    @abstractmethod
    async def get_counter(self, key: str) -> Optional[RateLimitRecord]:
        """Get the counter record for key"""
        pass

    @abstractmethod
    async def increment(self, key: str, window: timedelta, now: datetime) -> RateLimitRecord:
        """Atomically add one attempt, restarting the window once it has elapsed"""
        pass

    @abstractmethod
    async def delete_counter(self, key: str) -> None:
        """Drop the counter for key"""
        pass

    @abstractmethod
    async def prune_counters(self, older_than: datetime) -> int:
        """Delete counters whose window started before older_than"""
        pass


class EventStore(ABC):
    """Append-only security event storage"""

    @abstractmethod
    async def append_event(self, event: SecurityEvent) -> None:
        """Persist one event"""
        pass

    @abstractmethod
    async def query_events(self, flt: EventFilter) -> List[SecurityEvent]:
        """Events matching flt, oldest first"""
        pass


class AdminSessionStore(ABC):
    """Elevated session table"""

    @abstractmethod
    async def create_session(self, session: AdminSession, max_concurrent: int,
                             now: datetime) -> List[AdminSession]:
        """Insert session and deactivate the oldest active ones over the cap, atomically.

        Returns the sessions that were evicted.
        """
        pass

    @abstractmethod
    async def get_session(self, token: str) -> Optional[AdminSession]:
        """Get session by token"""
        pass

    @abstractmethod
    async def deactivate_session(self, token: str) -> bool:
        """Mark one session inactive; False when it was not active"""
        pass

    @abstractmethod
    async def deactivate_user_sessions(self, user_id: str) -> int:
        """Mark every session of a user inactive"""
        pass

    @abstractmethod
    async def list_sessions(self, user_id: str, active_only: bool = True,
                            now: Optional[datetime] = None) -> List[AdminSession]:
        """Sessions for a user, oldest first"""
        pass

    @abstractmethod
    async def prune_sessions(self, now: datetime) -> int:
        """Delete inactive and expired sessions"""
        pass


class WhitelistStore(ABC):
    """IP whitelist rules managed by operators"""

    @abstractmethod
    async def list_rules(self, active_only: bool = True) -> List[IPWhitelistRule]:
        pass

    @abstractmethod
    async def add_rule(self, rule: IPWhitelistRule) -> IPWhitelistRule:
        pass

    @abstractmethod
    async def remove_rule(self, rule_id: str) -> bool:
        pass


class AlertStore(ABC):
    """Persisted security alerts"""

    @abstractmethod
    async def add_alert(self, alert: SecurityAlert) -> None:
        pass

    @abstractmethod
    async def find_unresolved(self, user_id: Optional[str] = None,
                              ip: Optional[str] = None) -> List[SecurityAlert]:
        """Unresolved alerts for the user or the ip"""
        pass

    @abstractmethod
    async def resolve_alert(self, alert_id: str) -> bool:
        pass

    @abstractmethod
    async def list_alerts(self, include_resolved: bool = False) -> List[SecurityAlert]:
        pass


class GateStore(CounterStore, EventStore, AdminSessionStore, WhitelistStore, AlertStore):
    """A single backend providing every gatekeeper capability"""

    async def initialize(self):
        """Prepare the backend"""
        pass

    async def close(self):
        """Release backend resources"""
        pass
