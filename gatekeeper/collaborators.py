"""
External collaborators consumed by the gate: identity, accounts and MFA
"""

import base64
import hashlib
import hmac
import json
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from .context import GateRequest
from .records import utcnow


class Role(str, Enum):
    """Account roles"""
    CUSTOMER = "CUSTOMER"
    STAFF = "STAFF"
    ADMIN = "ADMIN"


@dataclass
class IdentitySession:
    """Authenticated storefront session"""
    user_id: str
    email: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class Account:
    """Account record relevant to access decisions"""
    user_id: str
    role: str
    is_active: bool = True
    mfa_enabled: bool = False
    email: str = ""


class IdentityProvider(ABC):
    """Resolve the caller's session from a request"""

    @abstractmethod
    async def get_session(self, request: GateRequest) -> Optional[IdentitySession]:
        pass


class AccountRepository(ABC):
    """Look up account role and status"""

    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[Account]:
        pass


class MfaVerifier(ABC):
    """Second factor verification capability"""

    @abstractmethod
    async def verify(self, user_id: str, code: str) -> bool:
        pass


class SignedCookieIdentityProvider(IdentityProvider):
    """HMAC-SHA256 signed session tokens carried in a cookie or bearer header"""

    def __init__(self, secret_key: str, cookie_name: str = "auth-session",
                 ttl: timedelta = timedelta(hours=24),
                 clock: Callable[[], datetime] = utcnow):
        self.secret_key = secret_key.encode()
        self.cookie_name = cookie_name
        self.ttl = ttl
        self.clock = clock

    def _sign(self, body: str) -> str:
        return hmac.new(self.secret_key, body.encode(), hashlib.sha256).hexdigest()

    def issue(self, user_id: str, email: str = "", ttl: Optional[timedelta] = None) -> str:
        """Issue a signed session token"""
        expires_at = self.clock() + (ttl if ttl is not None else self.ttl)
        payload = json.dumps(
            {"sub": user_id, "email": email, "exp": int(expires_at.timestamp())},
            separators=(",", ":"),
        ).encode()
        body = base64.urlsafe_b64encode(payload).rstrip(b"=").decode()
        return f"{body}.{self._sign(body)}"

    def decode(self, token: str) -> Optional[IdentitySession]:
        """Verify and decode a token; expiry is left to the caller"""
        if not token or "." not in token:
            return None

        body, _, signature = token.rpartition(".")
        if not hmac.compare_digest(self._sign(body), signature):
            return None

        try:
            padded = body + "=" * (-len(body) % 4)
            payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
            return IdentitySession(
                user_id=str(payload["sub"]),
                email=payload.get("email", ""),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            )
        except (ValueError, KeyError, TypeError):
            return None

    async def get_session(self, request: GateRequest) -> Optional[IdentitySession]:
        token = request.cookies.get(self.cookie_name, "")
        if not token:
            authorization = request.header("authorization")
            if authorization.lower().startswith("bearer "):
                token = authorization[7:].strip()
        return self.decode(token)


class StaticAccountRepository(AccountRepository):
    """Dictionary backed account repository"""

    def __init__(self, accounts: Optional[Dict[str, Account]] = None):
        self.accounts: Dict[str, Account] = dict(accounts or {})
        self.lock = threading.RLock()

    def put(self, account: Account):
        with self.lock:
            self.accounts[account.user_id] = account

    async def get_account(self, user_id: str) -> Optional[Account]:
        with self.lock:
            return self.accounts.get(user_id)


class FormatOnlyMfaVerifier(MfaVerifier):
    """Accept any six digit code; stands in until a TOTP provider is wired up"""

    CODE_PATTERN = re.compile(r"^\d{6}$")

    async def verify(self, user_id: str, code: str) -> bool:
        return bool(code) and self.CODE_PATTERN.match(code) is not None
