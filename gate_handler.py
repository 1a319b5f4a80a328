"""
Gate Handler module - Request middleware and the forward-auth endpoint
"""

import logging

from sanic import Request, response

from gate_server import GateServer
from request_parser import RequestParser
from response_builder import ResponseBuilder
from server_stats import StatsCollector
from gatekeeper.context import GateDecision, GateRequest

# Served by the gate itself, never gated by the middleware
INTERNAL_PATHS = frozenset({"/auth", "/health", "/status", "/stats"})


class GateHandler:
    """Evaluate requests and answer with forwards or redirects"""

    def __init__(self, server: GateServer, parser: RequestParser,
                 responder: ResponseBuilder, stats: StatsCollector, mode: str):
        self.server = server
        self.parser = parser
        self.responder = responder
        self.stats = stats
        self.mode = mode
        self.logger = logging.getLogger(__name__)

    async def evaluate(self, gate_req: GateRequest) -> GateDecision:
        decision = await self.server.evaluator.evaluate(gate_req)
        self.stats.record(decision)

        if self.server.config.debug:
            if decision.allowed:
                self.logger.info(
                    f"✅ [{self.mode.upper()}] {decision.route_kind.upper()} "
                    f"{gate_req.method} {gate_req.path} from {gate_req.client_ip}"
                )
            else:
                self.logger.warning(
                    f"🚫 [{self.mode.upper()}] DENIED {gate_req.method} {gate_req.path} "
                    f"from {gate_req.client_ip} - {decision.reason} -> {decision.location}"
                )
        return decision

    async def handle_request(self, request: Request):
        """Request middleware; a returned response short-circuits the route handler"""
        if request.path in INTERNAL_PATHS or request.method == "OPTIONS":
            return None

        gate_req = self.parser.parse_request(request)
        decision = await self.evaluate(gate_req)
        request.ctx.gate_decision = decision

        if decision.allowed:
            return None
        return self.responder.send_redirect(decision)

    async def handle_response(self, request: Request, sanic_response):
        """Response middleware; attaches forward headers to allowed responses"""
        decision = getattr(request.ctx, "gate_decision", None)
        if decision is not None and decision.allowed and decision.headers:
            self.responder.apply_headers(sanic_response, decision)

    async def handle_auth(self, request: Request):
        """nginx auth_request endpoint

        The original request is read from X-Original-* headers; the client IP
        comes from X-Original-Remote-Addr before any forwarding header.
        """
        if request.method == "OPTIONS":
            return response.text("", status=200)

        gate_req = self.parser.parse_forward_request(request)
        if self.server.config.debug:
            self.logger.info(
                f"🔍 [{self.mode.upper()}] Auth request: {gate_req.method} {gate_req.path} "
                f"from {gate_req.client_ip} (UA: {gate_req.user_agent})"
            )

        decision = await self.evaluate(gate_req)
        return self.responder.send_forward_auth(decision, self.server.config.debug)

    async def decision_for(self, request: Request) -> GateDecision:
        """Decision already made by the middleware, or a fresh evaluation"""
        decision = getattr(request.ctx, "gate_decision", None)
        if decision is None:
            decision = await self.evaluate(self.parser.parse_request(request))
            request.ctx.gate_decision = decision
        return decision
