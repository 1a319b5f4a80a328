"""
Hardening headers attached to forwarded storefront responses
"""

from dataclasses import dataclass
from typing import Dict

from .route_classifier import SecurityLevel


@dataclass
class SecurityHeadersConfig:
    """Which hardening headers the gate attaches"""
    frame_options: str = "DENY"  # DENY, SAMEORIGIN
    content_type_nosniff: bool = True
    referrer_policy: str = "strict-origin-when-cross-origin"

    # Back-office pages must never land in a shared cache or a search index
    private_levels: tuple = (SecurityLevel.ENHANCED, SecurityLevel.ADMIN)

    # Only sent when the request arrived over HTTPS
    enable_hsts: bool = False
    hsts_max_age: int = 31536000  # 1 year
    hsts_include_subdomains: bool = True
    hsts_preload: bool = False


class SecurityHeadersManager:
    """Build the hardening headers for one allowed request"""

    def __init__(self, config: SecurityHeadersConfig = None):
        self.config = config or SecurityHeadersConfig()

    def headers_for(self, level: SecurityLevel = SecurityLevel.BASIC,
                    is_https: bool = False) -> Dict[str, str]:
        cfg = self.config
        headers: Dict[str, str] = {}

        if cfg.frame_options:
            headers["X-Frame-Options"] = cfg.frame_options
        if cfg.content_type_nosniff:
            headers["X-Content-Type-Options"] = "nosniff"
        if cfg.referrer_policy:
            headers["Referrer-Policy"] = cfg.referrer_policy

        if level in cfg.private_levels:
            headers["Cache-Control"] = "private, no-store"
            headers["X-Robots-Tag"] = "noindex, nofollow"

        if cfg.enable_hsts and is_https:
            headers["Strict-Transport-Security"] = self.hsts_value()
        return headers

    def hsts_value(self) -> str:
        parts = [f"max-age={self.config.hsts_max_age}"]
        if self.config.hsts_include_subdomains:
            parts.append("includeSubDomains")
        if self.config.hsts_preload:
            parts.append("preload")
        return "; ".join(parts)
