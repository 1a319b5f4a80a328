"""
Response Builder module - Turn gate decisions into Sanic responses
"""

from typing import Dict

from sanic import response

from gatekeeper.context import GateDecision

DENIAL_STATUS: Dict[str, int] = {
    "unauthenticated": 401,
    "forbidden": 403,
    "rate_limited": 429,
}

NO_CACHE = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class ResponseBuilder:
    """Build gate responses"""

    def send_redirect(self, decision: GateDecision):
        """Middleware mode denial: 307 to the decision's page"""
        headers = dict(NO_CACHE)
        headers.update(decision.headers)
        return response.redirect(decision.location, status=307, headers=headers)

    def apply_headers(self, sanic_response, decision: GateDecision):
        """Attach identity and hardening headers to a forwarded response"""
        for key, value in decision.headers.items():
            sanic_response.headers[key] = value
        return sanic_response

    def send_forward_auth(self, decision: GateDecision, debug: bool = False):
        """Forward-auth mode: 200 when allowed, denial status with Location otherwise"""
        headers = dict(NO_CACHE)
        headers["X-Auth-Server"] = "storefront-gatekeeper"
        headers["X-Route-Kind"] = decision.route_kind
        headers.update(decision.headers)

        if decision.allowed:
            status = 200
        else:
            status = DENIAL_STATUS.get(decision.denial, 403)
            headers["Location"] = decision.location
            headers["X-Denial-Reason"] = decision.reason or ""

        if debug:
            body = {
                "allow": decision.allowed,
                "status": status,
                "reason": decision.reason,
                "denial": decision.denial,
                "location": decision.location,
                "route_kind": decision.route_kind,
            }
            return response.json(body, status=status, headers=headers)

        if decision.allowed:
            return response.text("OK", status=status, headers=headers)
        return response.text(decision.reason or "denied", status=status, headers=headers)

    def send_json(self, data: dict, status: int = 200):
        """Send JSON response"""
        return response.json(data, status=status)

    def send_error(self, message: str, status: int = 400):
        return response.json({"error": message}, status=status)
