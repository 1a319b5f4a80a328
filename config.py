"""
Configuration module for the Storefront Gatekeeper
"""

import os
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Mapping, Optional, Tuple

from gatekeeper.access_policy import RedirectPages
from gatekeeper.rate_limiter import DEFAULT_LIMITS, RateLimit

MODES = ("middleware", "forward-auth")


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Server configuration"""
    port: str = "8080"
    host: str = "0.0.0.0"
    debug: bool = False
    mode: str = "middleware"
    environment: str = "production"
    auth_timeout: timedelta = timedelta(seconds=2)

    # None keeps everything in memory
    database_path: Optional[str] = None
    secret_key: str = field(default_factory=lambda: secrets.token_hex(32))
    session_cookie: str = "auth-session"
    session_ttl: timedelta = timedelta(hours=24)
    admin_cookie: str = "admin-session"

    pages: RedirectPages = field(default_factory=RedirectPages)
    routes_file: Optional[str] = None

    rate_limits: Dict[str, RateLimit] = field(default_factory=lambda: dict(DEFAULT_LIMITS))
    fail_closed_actions: Tuple[str, ...] = ()

    detection_window: timedelta = timedelta(hours=1)
    brute_force_threshold: int = 10
    failed_login_threshold: int = 5
    alert_webhook_url: Optional[str] = None

    event_queue_size: int = 10000
    prune_interval: timedelta = timedelta(minutes=10)
    enable_hsts: bool = False

    @property
    def development(self) -> bool:
        return self.environment == "development"

    @property
    def timeout_seconds(self) -> float:
        return self.auth_timeout.total_seconds()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Build a config from GATE_* environment variables"""
        env = os.environ if environ is None else environ
        config = cls()

        if "GATE_PORT" in env:
            config.port = env["GATE_PORT"]
        if "GATE_HOST" in env:
            config.host = env["GATE_HOST"]
        if "GATE_DEBUG" in env:
            config.debug = _flag(env["GATE_DEBUG"])
        if "GATE_MODE" in env:
            if env["GATE_MODE"] not in MODES:
                raise ValueError(f"GATE_MODE must be one of {', '.join(MODES)}")
            config.mode = env["GATE_MODE"]
        if "GATE_ENV" in env:
            config.environment = env["GATE_ENV"]
        if "GATE_AUTH_TIMEOUT" in env:
            config.auth_timeout = timedelta(seconds=float(env["GATE_AUTH_TIMEOUT"]))
        if env.get("GATE_DB_PATH"):
            config.database_path = env["GATE_DB_PATH"]
        if env.get("GATE_SECRET_KEY"):
            config.secret_key = env["GATE_SECRET_KEY"]
        if env.get("GATE_ROUTES_FILE"):
            config.routes_file = env["GATE_ROUTES_FILE"]
        if env.get("GATE_ALERT_WEBHOOK"):
            config.alert_webhook_url = env["GATE_ALERT_WEBHOOK"]
        if "GATE_FAIL_CLOSED" in env:
            config.fail_closed_actions = tuple(
                action.strip() for action in env["GATE_FAIL_CLOSED"].split(",") if action.strip()
            )
        if "GATE_PRUNE_INTERVAL" in env:
            config.prune_interval = timedelta(seconds=float(env["GATE_PRUNE_INTERVAL"]))
        if "GATE_EVENT_QUEUE_SIZE" in env:
            config.event_queue_size = int(env["GATE_EVENT_QUEUE_SIZE"])
        if "GATE_HSTS" in env:
            config.enable_hsts = _flag(env["GATE_HSTS"])

        return config
