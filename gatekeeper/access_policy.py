"""
Access Policy Evaluator

Runs the per-request pipeline: classify, resolve identity and account, check
role, enforce the admin tier (IP whitelist, MFA, admin session, rate limit),
run suspicious activity detection and finally forward or redirect. Denials
are raised as GateError inside the pipeline and turned into redirect
decisions at the evaluate() boundary, which never raises.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

from .activity_detector import SuspiciousActivityDetector
from .admin_sessions import AdminSessionManager
from .alerting import AlertManager
from .collaborators import Account, AccountRepository, IdentityProvider, Role
from .context import GateDecision, GateRequest, RequestContext
from .errors import Forbidden, GateError, RateLimited, Unauthenticated
from .event_log import SecurityEventLog
from .ip_matcher import ip_allowed, is_private_or_loopback
from .rate_limiter import RateLimiter
from .records import EventType, Severity, utcnow
from .route_classifier import RouteClassifier, RouteConfig, RouteKind
from .security_headers import SecurityHeadersManager
from .store import WhitelistStore

logger = logging.getLogger(__name__)


@dataclass
class RedirectPages:
    """Pages the gate redirects denied callers to"""
    login: str = "/auth/login"
    account_suspended: str = "/auth/account-suspended"
    access_denied: str = "/auth/access-denied"
    setup_mfa: str = "/auth/setup-mfa"
    admin_login: str = "/auth/admin-login"
    rate_limited: str = "/auth/rate-limited"
    security_alert: str = "/auth/security-alert"
    role_landing: Dict[str, str] = field(default_factory=lambda: {
        Role.ADMIN.value: "/admin",
        Role.STAFF.value: "/staff",
        Role.CUSTOMER.value: "/dashboard",
    })
    fallback_landing: str = "/"

    def landing_for(self, role: str) -> str:
        return self.role_landing.get(role, self.fallback_landing)


def with_query(page: str, **params) -> str:
    """Append url-encoded query parameters to a page path"""
    params = {key: value for key, value in params.items() if value is not None}
    if not params:
        return page
    return f"{page}?{urlencode(params)}"


class AccessPolicyEvaluator:
    """Decide whether a request is forwarded or redirected"""

    def __init__(self, classifier: RouteClassifier, identity: IdentityProvider,
                 accounts: AccountRepository, rate_limiter: RateLimiter,
                 event_log: SecurityEventLog, detector: SuspiciousActivityDetector,
                 alerts: AlertManager, admin_sessions: AdminSessionManager,
                 whitelist_store: WhitelistStore,
                 headers: Optional[SecurityHeadersManager] = None,
                 pages: Optional[RedirectPages] = None,
                 admin_cookie: str = "admin-session", development: bool = False,
                 timeout: float = 2.0, clock: Callable[[], datetime] = utcnow):
        self.classifier = classifier
        self.identity = identity
        self.accounts = accounts
        self.rate_limiter = rate_limiter
        self.event_log = event_log
        self.detector = detector
        self.alerts = alerts
        self.admin_sessions = admin_sessions
        self.whitelist_store = whitelist_store
        self.headers = headers or SecurityHeadersManager()
        self.pages = pages or RedirectPages()
        self.admin_cookie = admin_cookie
        self.development = development
        self.timeout = timeout
        self.clock = clock

    async def evaluate(self, request: GateRequest) -> GateDecision:
        """Evaluate one request; never raises"""
        match = self.classifier.classify(request.path)
        if match.kind == RouteKind.REJECTED:
            ctx = RequestContext(request=request, route=None)
            await self._record(EventType.SUSPICIOUS_ACTIVITY, ctx, reason="invalid_path")
            decision = self._deny(ctx, Forbidden(
                "invalid_path", with_query(self.pages.access_denied, error="invalid_path")
            ))
            decision.route_kind = RouteKind.REJECTED.value
            return decision
        if match.kind != RouteKind.PROTECTED:
            return GateDecision.forward(match.kind.value)

        ctx = RequestContext(request=request, route=match.route)
        try:
            return await self._evaluate_protected(ctx)
        except GateError as e:
            return self._deny(ctx, e)
        except Exception as e:
            logger.exception(f"Access evaluation failed for {request.method} {request.path}")
            await self._record(
                EventType.SUSPICIOUS_ACTIVITY, ctx,
                reason="evaluation_error", error=repr(e),
            )
            return self._deny(ctx, Unauthenticated("evaluation_error", self._login_location(request)))

    def _deny(self, ctx: RequestContext, error: GateError) -> GateDecision:
        location = error.location or self._login_location(ctx.request)
        logger.info(
            f"Denied {ctx.request.method} {ctx.request.path} from {ctx.request.client_ip}: "
            f"{error.reason} -> {location}"
        )
        return GateDecision.redirect(
            location=location, reason=error.reason, denial=error.denial, context=ctx
        )

    def _login_location(self, request: GateRequest) -> str:
        return with_query(self.pages.login, redirect=request.path)

    async def _record(self, event_type: EventType, ctx: RequestContext, **details):
        request = ctx.request
        await self.event_log.record(
            event_type,
            request.client_ip,
            user_agent=request.user_agent,
            user_id=ctx.user_id,
            path=request.path,
            route=ctx.route.name if ctx.route is not None else None,
            **details,
        )

    async def _evaluate_protected(self, ctx: RequestContext) -> GateDecision:
        request = ctx.request
        route: RouteConfig = ctx.route

        await self._resolve_identity(ctx)
        account = await self._load_account(ctx)

        if account.role not in route.required_roles:
            await self._record(
                EventType.FAILED_LOGIN, ctx,
                reason="insufficient_role",
                required_roles=list(route.required_roles),
                actual_role=account.role,
            )
            raise Forbidden(
                "insufficient_role",
                with_query(self.pages.landing_for(account.role), error="insufficient_role"),
            )

        extra_headers: Dict[str, str] = {}
        admin_tier = route.is_admin_tier

        if admin_tier:
            await self._check_ip(ctx, route)

        if admin_tier or route.requires_mfa:
            if not account.mfa_enabled:
                await self._record(EventType.ADMIN_ACCESS, ctx, granted=False, reason="mfa_required")
                if admin_tier:
                    await self.rate_limiter.increment(account.user_id, "admin_access")
                raise Forbidden(
                    "mfa_required", with_query(self.pages.setup_mfa, redirect=request.path)
                )

        if admin_tier:
            extra_headers.update(await self._check_admin_session(ctx, route))

        await self._check_activity(ctx)

        headers = {
            "x-user-id": account.user_id,
            "x-user-role": account.role,
            "x-security-level": route.security_level.value,
            "x-client-ip": request.client_ip,
        }
        headers.update(extra_headers)
        headers.update(self.headers.headers_for(
            route.security_level,
            is_https=request.header("x-forwarded-proto") == "https",
        ))
        return GateDecision.forward(RouteKind.PROTECTED.value, headers=headers, context=ctx)

    async def _resolve_identity(self, ctx: RequestContext):
        try:
            session = await asyncio.wait_for(self.identity.get_session(ctx.request), self.timeout)
        except Exception as e:
            logger.warning(f"Session lookup failed for {ctx.request.client_ip}: {e!r}")
            await self._record(EventType.FAILED_LOGIN, ctx, reason="session_lookup_failed")
            raise Unauthenticated("session_lookup_failed")

        if session is None:
            await self._record(EventType.FAILED_LOGIN, ctx, reason="session_absent")
            raise Unauthenticated("session_absent")

        ctx.identity = session
        if session.is_expired(self.clock()):
            await self._record(EventType.FAILED_LOGIN, ctx, reason="session_expired")
            raise Unauthenticated("session_expired")

    async def _load_account(self, ctx: RequestContext) -> Account:
        try:
            account = await asyncio.wait_for(
                self.accounts.get_account(ctx.identity.user_id), self.timeout
            )
        except Exception as e:
            logger.warning(f"Account lookup failed for user {ctx.identity.user_id}: {e!r}")
            await self._record(EventType.FAILED_LOGIN, ctx, reason="account_lookup_failed")
            raise Unauthenticated("account_lookup_failed")

        if account is None:
            await self._record(EventType.FAILED_LOGIN, ctx, reason="account_not_found")
            raise Unauthenticated("account_not_found")

        ctx.account = account
        if not account.is_active:
            await self._record(EventType.FAILED_LOGIN, ctx, reason="account_inactive")
            raise Forbidden(
                "account_inactive",
                with_query(self.pages.account_suspended, error="account_suspended"),
            )
        return account

    async def ip_permitted(self, ip: str, route: RouteConfig) -> bool:
        """Static route ranges, development allowance, then operator rules"""
        static = self.classifier.whitelist_for(route)
        if static.allows(ip):
            return True
        if self.development and is_private_or_loopback(ip):
            return True

        try:
            rules = await asyncio.wait_for(self.whitelist_store.list_rules(active_only=True), self.timeout)
        except Exception as e:
            logger.warning(f"Whitelist store unavailable, allowing {ip}: {e!r}")
            return True

        dynamic = [rule.cidr for rule in rules]
        if not static and not dynamic:
            # Nothing configured for this route
            return True
        return ip_allowed(ip, dynamic)

    async def _check_ip(self, ctx: RequestContext, route: RouteConfig):
        ip = ctx.request.client_ip
        if await self.ip_permitted(ip, route):
            return
        await self._record(EventType.IP_BLOCKED, ctx, reason="ip_not_whitelisted")
        raise Forbidden(
            "ip_not_whitelisted",
            with_query(self.pages.access_denied, error="ip_not_whitelisted"),
        )

    async def _check_admin_session(self, ctx: RequestContext, route: RouteConfig) -> Dict[str, str]:
        request = ctx.request
        headers: Dict[str, str] = {}

        policy = route.admin_session
        if policy is None or policy.required:
            token = request.cookies.get(self.admin_cookie, "")
            session = await self.admin_sessions.validate_session(
                token,
                user_id=ctx.user_id,
                ip=request.client_ip,
                user_agent=request.user_agent,
            )
            if session is None:
                await self._record(
                    EventType.ADMIN_ACCESS, ctx, granted=False, reason="admin_session_required"
                )
                await self.rate_limiter.increment(ctx.user_id, "admin_access")
                raise Forbidden(
                    "admin_session_required",
                    with_query(
                        self.pages.admin_login,
                        redirect=request.path,
                        error="admin_session_required",
                    ),
                )
            headers["x-admin-session-expires"] = session.expires_at.isoformat()

        # Only failed admin attempts count against the window
        limit = await self.rate_limiter.check(ctx.user_id, "admin_access")
        if not limit.allowed:
            await self._record(EventType.ADMIN_ACCESS, ctx, granted=False, reason="rate_limited")
            raise RateLimited(
                "rate_limited",
                with_query(self.pages.rate_limited, redirect=request.path, error="rate_limited"),
            )

        await self._record(EventType.ADMIN_ACCESS, ctx, granted=True, method=request.method)
        headers["x-rate-limit-remaining"] = str(limit.remaining)
        return headers

    async def _check_activity(self, ctx: RequestContext):
        alert = await self.detector.detect(ip=ctx.request.client_ip, user_id=ctx.user_id)
        if alert is None:
            return

        await self.alerts.raise_alert(alert)
        if alert.severity == Severity.CRITICAL:
            # Logged on every block; raise_alert skips duplicates of an open alert
            await self._record(
                EventType.SUSPICIOUS_ACTIVITY, ctx,
                reason="security_alert", alert_type=alert.type.value, blocked=True,
            )
            raise Forbidden(
                "security_alert",
                with_query(
                    self.pages.security_alert,
                    redirect=ctx.request.path,
                    error="security_error",
                ),
            )
