"""
Security Console module - Operator endpoints under /security
"""

import asyncio
import logging
from datetime import datetime, timezone

from pydantic import ValidationError
from sanic import Request

from gate_handler import GateHandler
from gate_server import GateServer
from models import WhitelistRuleBody
from response_builder import ResponseBuilder
from gatekeeper.ip_matcher import is_valid_range
from gatekeeper.records import EventFilter, EventType, IPWhitelistRule

logger = logging.getLogger(__name__)


def _parse_time(value):
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SecurityConsole:
    """Events, whitelist rules, alerts and admin sessions for operators"""

    def __init__(self, server: GateServer, handler: GateHandler, responder: ResponseBuilder):
        self.server = server
        self.handler = handler
        self.responder = responder

    @property
    def timeout(self) -> float:
        return self.server.config.timeout_seconds

    async def _authorize(self, request: Request):
        """Returns (decision, None) when the caller passed the admin tier, else (None, response)"""
        decision = await self.handler.decision_for(request)
        if not decision.allowed:
            return None, self.responder.send_redirect(decision)
        route = decision.context.route if decision.context is not None else None
        if route is None or not route.is_admin_tier:
            return None, self.responder.send_error("Admin access required", 403)
        return decision, None

    async def _audit(self, decision, action: str, **details):
        request = decision.context.request
        await self.server.event_log.record(
            EventType.ADMIN_ACCESS, request.client_ip, user_agent=request.user_agent,
            user_id=decision.context.user_id, action=action, **details,
        )

    async def list_events(self, request: Request):
        decision, denied = await self._authorize(request)
        if denied:
            return denied

        args = request.args
        try:
            types = tuple(EventType(t) for t in args.getlist("type", []))
            limit = int(args.get("limit", 100))
            since = _parse_time(args.get("since"))
            until = _parse_time(args.get("until"))
        except ValueError as e:
            return self.responder.send_error(str(e), 400)

        flt = EventFilter(
            types=types or None,
            ip=args.get("ip"),
            user_id=args.get("user_id"),
            since=since,
            until=until,
            limit=max(1, min(limit, 1000)),
        )
        events = await self.server.event_log.query(flt)
        return self.responder.send_json({
            "events": [event.to_dict() for event in reversed(events)],
            "count": len(events),
        })

    async def list_whitelist(self, request: Request):
        decision, denied = await self._authorize(request)
        if denied:
            return denied
        rules = await asyncio.wait_for(self.server.store.list_rules(active_only=False), self.timeout)
        return self.responder.send_json({"rules": [rule.to_dict() for rule in rules]})

    async def add_whitelist_rule(self, request: Request):
        decision, denied = await self._authorize(request)
        if denied:
            return denied

        try:
            body = WhitelistRuleBody.model_validate(request.json or {})
        except ValidationError as e:
            return self.responder.send_error(f"Invalid request: {e.errors()[0]['msg']}", 400)
        if not is_valid_range(body.cidr):
            return self.responder.send_error(f"Invalid CIDR or address: {body.cidr}", 400)

        rule = await asyncio.wait_for(
            self.server.store.add_rule(IPWhitelistRule(
                name=body.name,
                cidr=body.cidr.strip(),
                description=body.description,
                is_active=body.is_active,
            )),
            self.timeout,
        )
        await self._audit(decision, "whitelist_add", rule_id=rule.id, cidr=rule.cidr)
        logger.info(f"➕ Whitelist rule {rule.name} ({rule.cidr}) added")
        return self.responder.send_json(rule.to_dict(), 201)

    async def remove_whitelist_rule(self, request: Request, rule_id: str):
        decision, denied = await self._authorize(request)
        if denied:
            return denied
        removed = await asyncio.wait_for(self.server.store.remove_rule(rule_id), self.timeout)
        if not removed:
            return self.responder.send_error("Rule not found", 404)
        await self._audit(decision, "whitelist_remove", rule_id=rule_id)
        return self.responder.send_json({"removed": rule_id})

    async def list_alerts(self, request: Request):
        decision, denied = await self._authorize(request)
        if denied:
            return denied
        include_resolved = request.args.get("include_resolved", "").lower() in ("1", "true", "yes")
        alerts = await self.server.alerts.list_alerts(include_resolved=include_resolved)
        return self.responder.send_json({"alerts": [alert.to_dict() for alert in alerts]})

    async def resolve_alert(self, request: Request, alert_id: str):
        decision, denied = await self._authorize(request)
        if denied:
            return denied
        if not await self.server.alerts.resolve(alert_id):
            return self.responder.send_error("Alert not found", 404)
        await self._audit(decision, "alert_resolve", alert_id=alert_id)
        return self.responder.send_json({"resolved": alert_id})

    async def list_sessions(self, request: Request, user_id: str):
        decision, denied = await self._authorize(request)
        if denied:
            return denied
        sessions = await self.server.admin_sessions.active_sessions(user_id)
        recent = await self.server.event_log.user_events(user_id, limit=20)
        return self.responder.send_json({
            "recent_events": [event.to_dict() for event in recent],
            "sessions": [
                {
                    "id": session.id,
                    "ip_address": session.ip_address,
                    "user_agent": session.user_agent,
                    "created_at": session.created_at.isoformat(),
                    "expires_at": session.expires_at.isoformat(),
                }
                for session in sessions
            ]
        })

    async def terminate_sessions(self, request: Request, user_id: str):
        decision, denied = await self._authorize(request)
        if denied:
            return denied
        count = await self.server.admin_sessions.terminate_all(user_id)
        await self._audit(decision, "sessions_terminate", target_user=user_id, terminated=count)
        return self.responder.send_json({"terminated": count})
