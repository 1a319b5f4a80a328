"""
Data models for the Storefront Gatekeeper service
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


@dataclass
class ServerStats:
    """Server statistics"""
    total_requests: int = 0
    blocked_count: int = 0
    allowed_count: int = 0
    passthrough_count: int = 0
    error_count: int = 0
    start_time: datetime = field(default_factory=datetime.now)


class AdminAuthBody(BaseModel):
    """Body of POST /auth/admin"""
    action: str = Field(pattern="^(login|validate|logout)$")
    mfa_code: Optional[str] = None


class WhitelistRuleBody(BaseModel):
    """Body of POST /security/whitelist"""
    name: str = Field(min_length=1, max_length=100)
    cidr: str = Field(min_length=1, max_length=64)
    description: str = ""
    is_active: bool = True
