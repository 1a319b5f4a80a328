"""
Admin Session Manager

Elevated sessions move through none -> pending-mfa -> active -> expired or
terminated. MFA is verified by the caller before create_session is invoked.
"""

import asyncio
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from .alerting import AlertManager
from .collaborators import Account, Role
from .errors import AccessDenied
from .ip_matcher import ip_allowed
from .records import AdminSession, utcnow
from .store import AdminSessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdminSessionPolicy:
    """Admin session requirements for a route group"""
    required: bool = True
    timeout: timedelta = timedelta(minutes=30)
    max_concurrent: int = 3


def token_fingerprint(token: str) -> str:
    """Short non-reversible identifier safe to log"""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


class AdminSessionManager:
    """Issue, validate and expire elevated sessions"""

    def __init__(self, store: AdminSessionStore, alerts: AlertManager,
                 policy: Optional[AdminSessionPolicy] = None, token_bytes: int = 32,
                 timeout: float = 2.0, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.alerts = alerts
        self.policy = policy or AdminSessionPolicy()
        self.token_bytes = token_bytes
        self.timeout = timeout
        self.clock = clock

    async def create_session(self, account: Account, ip: str, user_agent: str,
                             ip_whitelist: Iterable[str] = (),
                             policy: Optional[AdminSessionPolicy] = None) -> AdminSession:
        """Issue an elevated session after role, IP and alert checks"""
        policy = policy or self.policy

        if account.role != Role.ADMIN.value:
            raise AccessDenied("insufficient_role")
        if not account.is_active:
            raise AccessDenied("account_inactive")

        whitelist = list(ip_whitelist)
        if whitelist and not ip_allowed(ip, whitelist):
            raise AccessDenied("ip_not_whitelisted")

        if await self.alerts.has_unresolved(user_id=account.user_id, ip=ip):
            raise AccessDenied("unresolved_security_alert")

        now = self.clock()
        session = AdminSession(
            user_id=account.user_id,
            session_token=secrets.token_urlsafe(self.token_bytes),
            ip_address=ip,
            user_agent=user_agent,
            created_at=now,
            expires_at=now + policy.timeout,
        )

        # Cap check and eviction happen in one store operation
        evicted = await asyncio.wait_for(
            self.store.create_session(session, policy.max_concurrent, now), self.timeout
        )
        for old in evicted:
            logger.info(
                f"Evicted admin session {token_fingerprint(old.session_token)} "
                f"for user {old.user_id} (max {policy.max_concurrent})"
            )

        logger.info(
            f"Admin session {token_fingerprint(session.session_token)} issued for "
            f"user {account.user_id} from {ip}, expires {session.expires_at.isoformat()}"
        )
        return session

    async def validate_session(self, token: str, user_id: Optional[str] = None,
                               ip: Optional[str] = None,
                               user_agent: Optional[str] = None) -> Optional[AdminSession]:
        """Return the session if active, unexpired and bound to the caller"""
        if not token:
            return None

        session = await asyncio.wait_for(self.store.get_session(token), self.timeout)
        if session is None or not session.is_active:
            return None

        if self.clock() >= session.expires_at:
            # Expired sessions are marked inactive lazily
            await asyncio.wait_for(self.store.deactivate_session(token), self.timeout)
            logger.info(f"Admin session {token_fingerprint(token)} expired")
            return None

        mismatch = None
        if user_id is not None and session.user_id != user_id:
            mismatch = "user"
        elif ip is not None and session.ip_address != ip:
            mismatch = "ip"
        elif user_agent is not None and session.user_agent != user_agent:
            mismatch = "user_agent"

        if mismatch:
            await asyncio.wait_for(self.store.deactivate_session(token), self.timeout)
            logger.warning(
                f"Admin session {token_fingerprint(token)} terminated: {mismatch} binding changed"
            )
            return None

        return session

    async def terminate(self, token: str) -> None:
        """End a session; safe to call repeatedly"""
        if not token:
            return
        if await asyncio.wait_for(self.store.deactivate_session(token), self.timeout):
            logger.info(f"Admin session {token_fingerprint(token)} terminated")

    async def terminate_all(self, user_id: str) -> int:
        """End every session of a user"""
        count = await asyncio.wait_for(self.store.deactivate_user_sessions(user_id), self.timeout)
        if count:
            logger.info(f"Terminated {count} admin sessions for user {user_id}")
        return count

    async def active_sessions(self, user_id: str) -> List[AdminSession]:
        return await asyncio.wait_for(
            self.store.list_sessions(user_id, active_only=True, now=self.clock()), self.timeout
        )

    async def prune(self) -> int:
        return await self.store.prune_sessions(self.clock())
