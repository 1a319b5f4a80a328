"""
Request Parser module - Build gate requests from Sanic requests
"""

from http.cookies import CookieError, SimpleCookie
from typing import Dict

from sanic import Request

from gatekeeper.context import GateRequest


class RequestParser:
    """Parse inbound requests into GateRequest"""

    def parse_request(self, request: Request) -> GateRequest:
        """Middleware mode: the request itself is the one being gated"""
        return GateRequest(
            method=request.method,
            path=request.path,
            query=request.query_string,
            headers=self._headers(request),
            cookies={name: request.cookies.get(name) for name in request.cookies.keys()},
            client_ip=self._extract_client_ip(request),
            user_agent=request.headers.get("User-Agent", ""),
        )

    def parse_forward_request(self, request: Request) -> GateRequest:
        """Forward-auth mode: the gated request is described by X-Original-* headers"""
        uri = self._get_header(request, "X-Original-URI", request.path)
        path, _, query = uri.partition("?")
        headers = self._headers(request)

        # Present the original request's cookie and agent to the collaborators
        cookie_header = self._get_header(request, "X-Original-Cookie", "")
        if cookie_header:
            headers["cookie"] = cookie_header
        user_agent = self._get_header(request, "X-Original-User-Agent", "")
        headers["user-agent"] = user_agent

        return GateRequest(
            method=self._get_header(request, "X-Original-Method", request.method),
            path=path or "/",
            query=query,
            headers=headers,
            cookies=self._parse_cookies(cookie_header),
            client_ip=self._extract_forward_ip(request),
            user_agent=user_agent,
        )

    def _headers(self, request: Request) -> Dict[str, str]:
        return {key.lower(): value for key, value in request.headers.items()}

    def _get_header(self, request: Request, key: str, default: str = "") -> str:
        """Get header value with default"""
        return request.headers.get(key, default)

    def _parse_cookies(self, cookie_header: str) -> Dict[str, str]:
        if not cookie_header:
            return {}
        jar = SimpleCookie()
        try:
            jar.load(cookie_header)
        except CookieError:
            return {}
        return {name: morsel.value for name, morsel in jar.items()}

    def _extract_client_ip(self, request: Request) -> str:
        """Extract client IP from proxy headers"""
        if forwarded := request.headers.get("X-Forwarded-For"):
            first = forwarded.split(",")[0].strip()
            if first:
                return first

        if ip := request.headers.get("X-Real-IP"):
            return ip.strip()

        if ip := request.headers.get("CF-Connecting-IP"):
            return ip.strip()

        return "unknown"

    def _extract_forward_ip(self, request: Request) -> str:
        """Peer address for an auth subrequest

        X-Original-Remote-Addr carries nginx's $remote_addr and wins over
        X-Forwarded-For, which the subrequest copies from the client unchecked.
        Without it the usual proxy header order applies.
        """
        if ip := request.headers.get("X-Original-Remote-Addr"):
            ip = ip.strip()
            # Strip a port from ipv4:port, leave IPv6 alone
            if ip.count(":") == 1:
                ip = ip.split(":")[0]
            return ip
        return self._extract_client_ip(request)
