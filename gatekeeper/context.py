"""
Request-scoped gate types
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class GateRequest(BaseModel):
    """Framework independent view of an inbound request"""
    method: str = "GET"
    path: str = "/"
    query: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)
    client_ip: str = "unknown"
    user_agent: str = ""

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup"""
        return self.headers.get(name.lower(), default)


class GateAction(str, Enum):
    FORWARD = "forward"
    REDIRECT = "redirect"


@dataclass
class RequestContext:
    """Caller identity resolved for one request and passed down the pipeline"""
    request: GateRequest
    route: Any
    identity: Any = None
    account: Any = None

    @property
    def user_id(self) -> Optional[str]:
        if self.account is not None:
            return self.account.user_id
        if self.identity is not None:
            return self.identity.user_id
        return None


@dataclass
class GateDecision:
    """Outcome of evaluating one request"""
    action: GateAction
    status: int = 200
    location: Optional[str] = None
    reason: Optional[str] = None
    denial: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    context: Optional[RequestContext] = None
    route_kind: str = "protected"

    @property
    def allowed(self) -> bool:
        return self.action == GateAction.FORWARD

    @classmethod
    def forward(cls, route_kind: str, headers: Optional[Dict[str, str]] = None,
                context: Optional[RequestContext] = None) -> "GateDecision":
        return cls(
            action=GateAction.FORWARD,
            status=200,
            headers=dict(headers or {}),
            context=context,
            route_kind=route_kind,
        )

    @classmethod
    def redirect(cls, location: str, reason: str, denial: str,
                 headers: Optional[Dict[str, str]] = None,
                 context: Optional[RequestContext] = None) -> "GateDecision":
        return cls(
            action=GateAction.REDIRECT,
            status=307,
            location=location,
            reason=reason,
            denial=denial,
            headers=dict(headers or {}),
            context=context,
        )
