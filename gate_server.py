"""
Gate Server module - Wires the gatekeeper components together
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from config import Config
from models import ServerStats
from gatekeeper.access_policy import AccessPolicyEvaluator
from gatekeeper.activity_detector import SuspiciousActivityDetector
from gatekeeper.admin_sessions import AdminSessionManager
from gatekeeper.alerting import (
    AlertDispatcher,
    AlertManager,
    LoggingAlertDispatcher,
    WebhookAlertDispatcher,
)
from gatekeeper.collaborators import (
    AccountRepository,
    FormatOnlyMfaVerifier,
    IdentityProvider,
    MfaVerifier,
    SignedCookieIdentityProvider,
    StaticAccountRepository,
)
from gatekeeper.event_log import SecurityEventLog
from gatekeeper.memory_store import MemoryStore
from gatekeeper.rate_limiter import RateLimiter
from gatekeeper.records import utcnow
from gatekeeper.route_classifier import RouteClassifier, load_routes
from gatekeeper.security_headers import SecurityHeadersConfig, SecurityHeadersManager
from gatekeeper.sqlite_store import SQLiteStore
from gatekeeper.store import GateStore

logger = logging.getLogger(__name__)


class GateServer:
    """Main gatekeeper server"""

    def __init__(self, config: Config, store: Optional[GateStore] = None,
                 identity: Optional[IdentityProvider] = None,
                 accounts: Optional[AccountRepository] = None,
                 mfa: Optional[MfaVerifier] = None,
                 dispatcher: Optional[AlertDispatcher] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.config = config
        self.stats = ServerStats()
        self.clock = clock
        timeout = config.timeout_seconds

        self.store = store if store is not None else MemoryStore()
        if accounts is None:
            accounts = self.store if isinstance(self.store, AccountRepository) else StaticAccountRepository()
        self.accounts = accounts
        self.identity = identity or SignedCookieIdentityProvider(
            config.secret_key,
            cookie_name=config.session_cookie,
            ttl=config.session_ttl,
            clock=clock,
        )
        self.mfa = mfa or FormatOnlyMfaVerifier()

        if dispatcher is None:
            if config.alert_webhook_url:
                dispatcher = WebhookAlertDispatcher(config.alert_webhook_url, timeout=timeout)
            else:
                dispatcher = LoggingAlertDispatcher()

        self.event_log = SecurityEventLog(
            self.store, max_pending=config.event_queue_size, timeout=timeout, clock=clock
        )
        self.rate_limiter = RateLimiter(
            self.store,
            limits=config.rate_limits,
            fail_closed_actions=config.fail_closed_actions,
            timeout=timeout,
            clock=clock,
        )
        self.detector = SuspiciousActivityDetector(
            self.event_log,
            brute_force_threshold=config.brute_force_threshold,
            failed_login_threshold=config.failed_login_threshold,
            window=config.detection_window,
            clock=clock,
        )
        self.alerts = AlertManager(self.store, self.event_log, dispatcher, timeout=timeout)

        routes = load_routes(config.routes_file) if config.routes_file else None
        self.classifier = RouteClassifier(routes)

        admin_route = self.classifier.get_route("admin")
        self.admin_sessions = AdminSessionManager(
            self.store,
            self.alerts,
            policy=admin_route.admin_session if admin_route is not None else None,
            timeout=timeout,
            clock=clock,
        )
        self.headers = SecurityHeadersManager(SecurityHeadersConfig(enable_hsts=config.enable_hsts))

        self.evaluator = AccessPolicyEvaluator(
            classifier=self.classifier,
            identity=self.identity,
            accounts=self.accounts,
            rate_limiter=self.rate_limiter,
            event_log=self.event_log,
            detector=self.detector,
            alerts=self.alerts,
            admin_sessions=self.admin_sessions,
            whitelist_store=self.store,
            headers=self.headers,
            pages=config.pages,
            admin_cookie=config.admin_cookie,
            development=config.development,
            timeout=timeout,
            clock=clock,
        )
        self._maintenance: Optional[asyncio.Task] = None

    @classmethod
    async def create(cls, config: Config, **kwargs):
        """Async factory; opens the SQLite store when a database path is set"""
        store = kwargs.pop("store", None)
        if store is None and config.database_path:
            candidate = SQLiteStore(config.database_path)
            try:
                await candidate.initialize()
                store = candidate
                logger.info(f"✅ SQLite store ready at {config.database_path}")
            except Exception as e:
                logger.warning(f"SQLite store unavailable, falling back to memory: {e!r}")
        elif store is not None:
            await store.initialize()
        return cls(config, store=store, **kwargs)

    async def start(self):
        """Start background workers on the running loop"""
        self.event_log.start()
        if self._maintenance is None or self._maintenance.done():
            self._maintenance = asyncio.get_running_loop().create_task(self._maintenance_loop())

    async def stop(self):
        if self._maintenance is not None:
            self._maintenance.cancel()
            try:
                await self._maintenance
            except asyncio.CancelledError:
                pass
            self._maintenance = None
        await self.event_log.stop()
        await self.store.close()

    async def prune(self) -> Dict[str, int]:
        """Remove expired rate limit records and admin sessions"""
        counters = await self.rate_limiter.prune()
        sessions = await self.admin_sessions.prune()
        if counters or sessions:
            logger.info(f"🧹 Pruned {counters} rate limit records and {sessions} admin sessions")
        return {"rate_limits": counters, "admin_sessions": sessions}

    async def _maintenance_loop(self):
        interval = self.config.prune_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                await self.prune()
            except Exception:
                logger.exception("Maintenance prune failed")
