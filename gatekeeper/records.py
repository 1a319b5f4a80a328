"""
Records shared by the gatekeeper stores and services
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class EventType(str, Enum):
    """Security event types"""
    LOGIN = "login"
    LOGOUT = "logout"
    FAILED_LOGIN = "failed_login"
    ADMIN_ACCESS = "admin_access"
    MFA_ENABLED = "mfa_enabled"
    IP_BLOCKED = "ip_blocked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class AlertType(str, Enum):
    """Security alert types"""
    MULTIPLE_FAILED_LOGINS = "multiple_failed_logins"
    SUSPICIOUS_IP = "suspicious_ip"
    UNUSUAL_LOCATION = "unusual_location"
    BRUTE_FORCE = "brute_force"


class Severity(str, Enum):
    """Alert severity levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SecurityEvent:
    """Append-only record of an auth or security relevant action"""
    type: EventType
    ip: str
    user_agent: str = ""
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "user_id": self.user_id,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat(),
            "details": dict(self.details),
        }


@dataclass
class RateLimitRecord:
    """Attempt counter for one action:identifier key"""
    key: str
    window_start: datetime
    attempts: int = 0


@dataclass
class IPWhitelistRule:
    """Operator managed whitelist entry (CIDR or exact address)"""
    name: str
    cidr: str
    description: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cidr": self.cidr,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class AdminSession:
    """Short-lived elevated session bound to user, ip and user agent"""
    user_id: str
    session_token: str
    ip_address: str
    user_agent: str
    created_at: datetime
    expires_at: datetime
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def is_valid_at(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at


@dataclass
class SecurityAlert:
    """Alert produced by the suspicious activity detector"""
    type: AlertType
    severity: Severity
    ip: str
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    resolved: bool = False
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "ip": self.ip,
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved,
        }


@dataclass
class EventFilter:
    """Windowed event query; set fields combine with AND unless match_any"""
    types: Optional[tuple] = None
    ip: Optional[str] = None
    user_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    match_any: bool = False
    limit: Optional[int] = None

    def matches(self, event: SecurityEvent) -> bool:
        if self.types and event.type not in self.types:
            return False
        if self.since is not None and event.timestamp < self.since:
            return False
        if self.until is not None and event.timestamp > self.until:
            return False

        checks = []
        if self.ip is not None:
            checks.append(event.ip == self.ip)
        if self.user_id is not None:
            checks.append(event.user_id == self.user_id)
        if not checks:
            return True
        return any(checks) if self.match_any else all(checks)
