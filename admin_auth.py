"""
Admin Auth module - Elevated session login, validation and logout
"""

import asyncio
import logging

from pydantic import ValidationError
from sanic import Request

from gate_server import GateServer
from models import AdminAuthBody
from request_parser import RequestParser
from response_builder import ResponseBuilder
from gatekeeper.access_policy import with_query
from gatekeeper.context import GateRequest
from gatekeeper.errors import AccessDenied
from gatekeeper.records import EventType

logger = logging.getLogger(__name__)


class AdminAuthHandler:
    """Handle POST /auth/admin"""

    RATE_LIMIT_ACTION = "admin_access"
    MFA_LIMIT_ACTION = "login"

    def __init__(self, server: GateServer, parser: RequestParser, responder: ResponseBuilder):
        self.server = server
        self.parser = parser
        self.responder = responder

    async def handle(self, request: Request):
        try:
            body = AdminAuthBody.model_validate(request.json or {})
        except ValidationError as e:
            return self.responder.send_error(f"Invalid request: {e.errors()[0]['msg']}", 400)

        gate_req = self.parser.parse_request(request)

        if body.action != "logout":
            limit = await self.server.rate_limiter.check(self._ip_key(gate_req), self.RATE_LIMIT_ACTION)
            if not limit.allowed:
                await self._record(EventType.ADMIN_ACCESS, gate_req, granted=False,
                                   reason="rate_limited", action=body.action)
                return self.responder.send_json(
                    {"error": "rate_limited", "reset_time": limit.reset_time.isoformat()}, 429
                )

        if body.action == "logout":
            return await self._logout(request, gate_req)

        session = await self._identity(gate_req)
        if session is None:
            return self.responder.send_error("Authentication required", 401)
        try:
            account = await asyncio.wait_for(
                self.server.accounts.get_account(session.user_id), self.server.config.timeout_seconds
            )
        except Exception as e:
            logger.warning(f"Account lookup failed on admin auth: {e!r}")
            account = None
        if account is None or not account.is_active:
            return self.responder.send_error("Authentication required", 401)

        if body.action == "validate":
            return await self._validate(request, gate_req, account.user_id)
        return await self._login(gate_req, account, body.mfa_code or "")

    @staticmethod
    def _ip_key(gate_req: GateRequest) -> str:
        return f"admin:{gate_req.client_ip}"

    async def _failed(self, gate_req: GateRequest, user_id: str, reason: str, **details):
        """Record a failed elevation attempt and count it against the caller's IP"""
        await self._record(EventType.FAILED_LOGIN, gate_req, user_id=user_id, reason=reason, **details)
        await self.server.rate_limiter.increment(self._ip_key(gate_req), self.RATE_LIMIT_ACTION)

    async def _identity(self, gate_req: GateRequest):
        try:
            session = await asyncio.wait_for(
                self.server.identity.get_session(gate_req), self.server.config.timeout_seconds
            )
        except Exception as e:
            logger.warning(f"Session lookup failed on admin auth: {e!r}")
            return None
        if session is None or session.is_expired(self.server.clock()):
            return None
        return session

    async def _record(self, event_type: EventType, gate_req: GateRequest, user_id=None, **details):
        await self.server.event_log.record(
            event_type, gate_req.client_ip, user_agent=gate_req.user_agent,
            user_id=user_id, **details,
        )

    async def _login(self, gate_req: GateRequest, account, mfa_code: str):
        pages = self.server.config.pages
        limiter = self.server.rate_limiter
        route = self.server.classifier.get_route("admin")

        if not account.mfa_enabled:
            return self.responder.send_json(
                {"error": "mfa_not_enabled", "redirect": with_query(pages.setup_mfa, redirect="/admin")},
                403,
            )

        codes = await limiter.check(account.user_id, self.MFA_LIMIT_ACTION)
        if not codes.allowed:
            await self._record(EventType.ADMIN_ACCESS, gate_req, user_id=account.user_id,
                               granted=False, reason="mfa_rate_limited")
            return self.responder.send_json(
                {"error": "rate_limited", "reset_time": codes.reset_time.isoformat()}, 429
            )

        try:
            verified = await asyncio.wait_for(
                self.server.mfa.verify(account.user_id, mfa_code), self.server.config.timeout_seconds
            )
        except Exception as e:
            logger.warning(f"MFA verification unavailable for {account.user_id}: {e!r}")
            await self._failed(gate_req, account.user_id, "mfa_verification_failed", error=repr(e))
            return self.responder.send_error("MFA verification unavailable", 503)

        if not verified:
            await self._failed(gate_req, account.user_id, "invalid_mfa_code")
            await limiter.increment(account.user_id, self.MFA_LIMIT_ACTION)
            return self.responder.send_error("Invalid MFA code", 401)

        if route is not None and not await self.server.evaluator.ip_permitted(gate_req.client_ip, route):
            await self._record(EventType.IP_BLOCKED, gate_req, user_id=account.user_id,
                               reason="ip_not_whitelisted")
            await limiter.increment(self._ip_key(gate_req), self.RATE_LIMIT_ACTION)
            return self.responder.send_error("ip_not_whitelisted", 403)

        try:
            # The whitelist, operator rules included, was checked above
            admin_session = await self.server.admin_sessions.create_session(
                account,
                gate_req.client_ip,
                gate_req.user_agent,
                policy=route.admin_session if route is not None else None,
            )
        except AccessDenied as e:
            await self._record(EventType.ADMIN_ACCESS, gate_req, user_id=account.user_id,
                               granted=False, reason=e.reason)
            await limiter.increment(self._ip_key(gate_req), self.RATE_LIMIT_ACTION)
            return self.responder.send_error(e.reason, 403)
        except Exception as e:
            logger.error(f"❌ Admin session creation failed for {account.user_id}: {e!r}")
            await self._failed(gate_req, account.user_id, "admin_session_creation_failed", error=repr(e))
            return self.responder.send_error("admin_session_creation_failed", 503)

        await limiter.reset(self._ip_key(gate_req), self.RATE_LIMIT_ACTION)
        await limiter.reset(account.user_id, self.MFA_LIMIT_ACTION)
        await self._record(EventType.LOGIN, gate_req, user_id=account.user_id, admin=True)

        resp = self.responder.send_json({
            "success": True,
            "expires_at": admin_session.expires_at.isoformat(),
        })
        resp.add_cookie(
            self.server.config.admin_cookie,
            admin_session.session_token,
            path="/",
            max_age=int((admin_session.expires_at - admin_session.created_at).total_seconds()),
            httponly=True,
            secure=not self.server.config.development,
            samesite="Strict",
        )
        return resp

    async def _validate(self, request: Request, gate_req: GateRequest, user_id: str):
        token = gate_req.cookies.get(self.server.config.admin_cookie, "")
        admin_session = await self.server.admin_sessions.validate_session(
            token, user_id=user_id, ip=gate_req.client_ip, user_agent=gate_req.user_agent
        )
        if admin_session is None:
            return self.responder.send_json({"valid": False}, 401)
        return self.responder.send_json({
            "valid": True,
            "expires_at": admin_session.expires_at.isoformat(),
        })

    async def _logout(self, request: Request, gate_req: GateRequest):
        token = gate_req.cookies.get(self.server.config.admin_cookie, "")
        await self.server.admin_sessions.terminate(token)

        session = await self._identity(gate_req)
        await self._record(EventType.LOGOUT, gate_req,
                           user_id=session.user_id if session else None, admin=True)

        resp = self.responder.send_json({"success": True})
        resp.delete_cookie(self.server.config.admin_cookie, path="/")
        return resp
