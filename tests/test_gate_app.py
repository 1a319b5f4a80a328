import re

import pytest
from sanic import response

from conftest import ADMIN_IP, OUTSIDE_IP, USER_AGENT, FlakyStore, build_gate
from main import create_app
from gatekeeper.errors import StoreError
from gatekeeper.records import EventFilter, EventType


def storefront(gate, name):
    """Gate installed as middleware in front of a catch-all storefront"""
    app = create_app(server=gate, name=name)

    @app.get("/")
    async def home(request):
        return response.text("home")

    @app.route("/<path:path>", methods=["GET", "POST"])
    async def page(request, path):
        return response.text(f"page {path}")

    return app


def headers_for(gate, user_id=None, ip=ADMIN_IP, admin_token=None):
    cookies = []
    if user_id is not None:
        cookies.append(f"{gate.config.session_cookie}={gate.identity.issue(user_id)}")
    if admin_token is not None:
        cookies.append(f"{gate.config.admin_cookie}={admin_token}")
    headers = {"X-Forwarded-For": ip, "User-Agent": USER_AGENT}
    if cookies:
        headers["Cookie"] = "; ".join(cookies)
    return headers


def admin_cookie_from(resp, name="admin-session"):
    match = re.search(rf"{name}=([^;]+)", resp.headers.get("set-cookie", ""))
    return match.group(1) if match else None


@pytest.fixture
def app(gate, app_name):
    return storefront(gate, app_name)


async def admin_login(app, gate, code="123456", ip=ADMIN_IP):
    _, resp = await app.asgi_client.post(
        "/auth/admin",
        json={"action": "login", "mfa_code": code},
        headers=headers_for(gate, "admin-1", ip=ip),
    )
    return resp


async def test_public_page_passes(app):
    _, resp = await app.asgi_client.get("/", headers={"X-Forwarded-For": OUTSIDE_IP})
    assert resp.status == 200
    assert resp.text == "home"


async def test_protected_page_redirects_without_session(app):
    _, resp = await app.asgi_client.get("/dashboard", headers=headers_for(app.ctx.server))
    assert resp.status == 307
    assert resp.headers["location"] == "/auth/login?redirect=%2Fdashboard"


async def test_allowed_response_carries_gate_headers(app, gate):
    _, resp = await app.asgi_client.get("/dashboard", headers=headers_for(gate, "cust-1"))
    assert resp.status == 200
    assert resp.text == "page dashboard"
    assert resp.headers["x-user-id"] == "cust-1"
    assert resp.headers["x-user-role"] == "CUSTOMER"
    assert resp.headers["x-frame-options"] == "DENY"


async def test_customer_on_admin_is_sent_home(app, gate):
    _, resp = await app.asgi_client.get("/admin", headers=headers_for(gate, "cust-1"))
    assert resp.status == 307
    assert resp.headers["location"] == "/dashboard?error=insufficient_role"


async def test_health_and_stats(app, gate):
    await app.asgi_client.get("/dashboard", headers=headers_for(gate, "cust-1"))
    await app.asgi_client.get("/dashboard", headers=headers_for(gate))

    _, health = await app.asgi_client.get("/health")
    assert health.status == 200
    assert health.json["status"] == "healthy"
    assert health.json["store"] == "MemoryStore"

    _, stats = await app.asgi_client.get("/stats")
    assert stats.json["allowed_count"] == 1
    assert stats.json["blocked_count"] == 1
    assert stats.json["top_denials"] == {"session_absent": 1}

    _, status = await app.asgi_client.get("/status")
    assert status.json["routes"] == ["admin", "staff", "customer"]
    assert status.json["open_alerts"] == 0


async def test_health_reports_degraded_store(config, clock, dispatcher, app_name):
    gate = build_gate(config, FlakyStore("list_rules"), clock, dispatcher)
    app = storefront(gate, app_name)

    _, health = await app.asgi_client.get("/health")
    assert health.status == 503
    assert health.json["status"] == "degraded"


async def test_admin_login_flow(app, gate):
    resp = await admin_login(app, gate)
    assert resp.status == 200
    assert resp.json["success"] is True
    token = admin_cookie_from(resp)
    assert token

    _, page = await app.asgi_client.get("/admin/orders", headers=headers_for(gate, "admin-1", admin_token=token))
    assert page.status == 200
    assert page.headers["x-security-level"] == "admin"
    assert page.headers["x-rate-limit-remaining"] == "9"

    _, valid = await app.asgi_client.post(
        "/auth/admin", json={"action": "validate"},
        headers=headers_for(gate, "admin-1", admin_token=token),
    )
    assert valid.json["valid"] is True

    _, out = await app.asgi_client.post(
        "/auth/admin", json={"action": "logout"},
        headers=headers_for(gate, "admin-1", admin_token=token),
    )
    assert out.json["success"] is True

    _, after = await app.asgi_client.get("/admin", headers=headers_for(gate, "admin-1", admin_token=token))
    assert after.status == 307
    assert after.headers["location"].startswith("/auth/admin-login?")

    logins = await gate.event_log.query(EventFilter(types=(EventType.LOGIN, EventType.LOGOUT)))
    assert [e.type for e in logins] == [EventType.LOGIN, EventType.LOGOUT]


async def test_admin_login_rejects_bad_mfa_code(app, gate):
    resp = await admin_login(app, gate, code="12")
    assert resp.status == 401
    assert admin_cookie_from(resp) is None

    failed = await gate.event_log.query(EventFilter(types=(EventType.FAILED_LOGIN,)))
    assert failed[-1].details["reason"] == "invalid_mfa_code"


async def test_admin_login_refuses_outside_ip(app, gate):
    resp = await admin_login(app, gate, ip=OUTSIDE_IP)
    assert resp.status == 403
    assert resp.json["error"] == "ip_not_whitelisted"


async def test_admin_login_requires_session_and_valid_body(app, gate):
    _, anonymous = await app.asgi_client.post(
        "/auth/admin", json={"action": "login", "mfa_code": "123456"},
        headers={"X-Forwarded-For": ADMIN_IP},
    )
    assert anonymous.status == 401

    _, bad = await app.asgi_client.post(
        "/auth/admin", json={"action": "escalate"}, headers=headers_for(gate, "admin-1"),
    )
    assert bad.status == 400


async def test_admin_login_is_rate_limited_per_ip(app, gate):
    for _ in range(10):
        await gate.rate_limiter.increment(f"admin:{ADMIN_IP}", "admin_access")
    resp = await admin_login(app, gate)
    assert resp.status == 429
    assert resp.json["error"] == "rate_limited"


async def test_failed_admin_login_counts_against_ip(app, gate):
    await admin_login(app, gate, code="bad")
    limit = await gate.rate_limiter.check(f"admin:{ADMIN_IP}", "admin_access")
    assert limit.remaining == 8

    assert (await admin_login(app, gate)).status == 200
    limit = await gate.rate_limiter.check(f"admin:{ADMIN_IP}", "admin_access")
    assert limit.remaining == 9


async def test_admin_login_limits_mfa_attempts_per_user(app, gate):
    for _ in range(5):
        assert (await admin_login(app, gate, code="bad")).status == 401

    resp = await admin_login(app, gate)
    assert resp.status == 429
    assert admin_cookie_from(resp) is None

    failed = await gate.event_log.query(EventFilter(types=(EventType.FAILED_LOGIN,)))
    assert [e.details["reason"] for e in failed] == ["invalid_mfa_code"] * 5


async def test_admin_login_mfa_verifier_failure(app, gate):
    async def unavailable(user_id, code):
        raise ConnectionError("mfa service down")

    gate.mfa.verify = unavailable
    resp = await admin_login(app, gate)
    assert resp.status == 503
    assert admin_cookie_from(resp) is None

    failed = await gate.event_log.query(EventFilter(types=(EventType.FAILED_LOGIN,)))
    assert failed[-1].details["reason"] == "mfa_verification_failed"
    assert failed[-1].user_id == "admin-1"


async def test_admin_login_session_store_failure(app, gate):
    async def broken(*args, **kwargs):
        raise StoreError("admin session insert failed")

    gate.admin_sessions.create_session = broken
    resp = await admin_login(app, gate)
    assert resp.status == 503
    assert resp.json["error"] == "admin_session_creation_failed"

    failed = await gate.event_log.query(EventFilter(types=(EventType.FAILED_LOGIN,)))
    assert failed[-1].details["reason"] == "admin_session_creation_failed"


async def test_security_console_whitelist(app, gate):
    token = admin_cookie_from(await admin_login(app, gate))
    headers = headers_for(gate, "admin-1", admin_token=token)

    _, added = await app.asgi_client.post(
        "/security/whitelist", json={"name": "office", "cidr": "203.0.113.0/24"}, headers=headers,
    )
    assert added.status == 201
    rule_id = added.json["id"]

    _, listed = await app.asgi_client.get("/security/whitelist", headers=headers)
    assert [r["cidr"] for r in listed.json["rules"]] == ["203.0.113.0/24"]

    _, invalid = await app.asgi_client.post(
        "/security/whitelist", json={"name": "typo", "cidr": "10.0.0.0/99"}, headers=headers,
    )
    assert invalid.status == 400

    _, removed = await app.asgi_client.delete(f"/security/whitelist/{rule_id}", headers=headers)
    assert removed.status == 200
    _, missing = await app.asgi_client.delete(f"/security/whitelist/{rule_id}", headers=headers)
    assert missing.status == 404


async def test_security_console_sessions_and_events(app, gate):
    token = admin_cookie_from(await admin_login(app, gate))
    headers = headers_for(gate, "admin-1", admin_token=token)

    _, sessions = await app.asgi_client.get("/security/sessions/admin-1", headers=headers)
    assert len(sessions.json["sessions"]) == 1
    assert "session_token" not in sessions.json["sessions"][0]
    assert sessions.json["recent_events"][0]["user_id"] == "admin-1"

    _, events = await app.asgi_client.get("/security/events?type=login", headers=headers)
    assert events.json["count"] == 1

    _, terminated = await app.asgi_client.delete("/security/sessions/admin-1", headers=headers)
    assert terminated.json["terminated"] == 1

    # The caller's own session was among them
    _, after = await app.asgi_client.get("/security/alerts", headers=headers)
    assert after.status == 307


async def test_security_console_requires_admin_tier(app, gate):
    _, resp = await app.asgi_client.get("/security/alerts", headers=headers_for(gate, "admin-1"))
    assert resp.status == 307
    assert "error=admin_session_required" in resp.headers["location"]


@pytest.fixture
def forward_app(gate, app_name):
    gate.config.mode = "forward-auth"
    return create_app(server=gate, name=app_name)


def original(gate, uri, user_id=None, ip=ADMIN_IP):
    headers = {
        "X-Original-URI": uri,
        "X-Original-Method": "GET",
        "X-Original-Remote-Addr": ip,
        "X-Original-User-Agent": USER_AGENT,
    }
    if user_id is not None:
        headers["X-Original-Cookie"] = f"{gate.config.session_cookie}={gate.identity.issue(user_id)}"
    return headers


async def test_forward_auth_allows_with_identity_headers(forward_app, gate):
    _, resp = await forward_app.asgi_client.get("/auth", headers=original(gate, "/dashboard?tab=1", "cust-1"))
    assert resp.status == 200
    assert resp.headers["x-user-id"] == "cust-1"
    assert resp.headers["x-client-ip"] == ADMIN_IP


async def test_forward_auth_denials(forward_app, gate):
    _, anonymous = await forward_app.asgi_client.get("/auth", headers=original(gate, "/orders/7"))
    assert anonymous.status == 401
    assert anonymous.headers["location"] == "/auth/login?redirect=%2Forders%2F7"

    _, wrong_role = await forward_app.asgi_client.get("/auth", headers=original(gate, "/admin", "cust-1"))
    assert wrong_role.status == 403

    _, public = await forward_app.asgi_client.get("/auth", headers=original(gate, "/products"))
    assert public.status == 200
    assert public.headers["x-route-kind"] == "public"


async def test_forward_auth_mode_does_not_gate_requests(forward_app):
    _, resp = await forward_app.asgi_client.get("/health")
    assert resp.status == 200


async def test_forward_auth_prefers_nginx_peer_address(forward_app, gate):
    headers = original(gate, "/dashboard", "cust-1", ip=ADMIN_IP)
    headers["X-Forwarded-For"] = OUTSIDE_IP
    _, resp = await forward_app.asgi_client.get("/auth", headers=headers)
    assert resp.status == 200
    assert resp.headers["x-client-ip"] == ADMIN_IP

    del headers["X-Original-Remote-Addr"]
    _, fallback = await forward_app.asgi_client.get("/auth", headers=headers)
    assert fallback.headers["x-client-ip"] == OUTSIDE_IP
