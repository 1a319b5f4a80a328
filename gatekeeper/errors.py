"""
Gatekeeper error taxonomy
"""

from typing import Optional


class GateError(Exception):
    """Base class for every decision the gate turns into a redirect"""

    denial = "forbidden"
    status = 403

    def __init__(self, reason: str, location: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.location = location


class Unauthenticated(GateError):
    """No usable session or account; the caller must sign in again"""

    denial = "unauthenticated"
    status = 401


class Forbidden(GateError):
    """Authenticated, but role, MFA, IP or admin session checks failed"""


class AccessDenied(Forbidden):
    """Elevated session refused by the admin session manager"""


class RateLimited(GateError):
    """Action quota exhausted for the current window"""

    denial = "rate_limited"
    status = 429


class TransientDependencyFailure(Exception):
    """An external store or collaborator could not be reached in time"""


class StoreError(TransientDependencyFailure):
    """Storage backend failure"""
