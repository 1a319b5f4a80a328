from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import uuid4

import pytest
from sanic import Sanic

from config import Config
from gate_server import GateServer
from gatekeeper.alerting import AlertDispatcher
from gatekeeper.collaborators import Account, Role, StaticAccountRepository
from gatekeeper.context import GateRequest
from gatekeeper.errors import StoreError
from gatekeeper.event_log import SecurityEventLog
from gatekeeper.memory_store import MemoryStore
from gatekeeper.records import SecurityAlert

Sanic.test_mode = True

ADMIN_IP = "10.0.0.5"
OUTSIDE_IP = "203.0.113.9"
USER_AGENT = "pytest-agent/1.0"


class FakeClock:
    """Controllable aware UTC clock"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FlakyStore(MemoryStore):
    """Memory store whose named operations raise StoreError"""

    def __init__(self, *failing: str):
        self.failing = set(failing)
        super().__init__()

    def __getattribute__(self, name):
        if name != "failing" and name in object.__getattribute__(self, "failing"):
            async def broken(*args, **kwargs):
                raise StoreError(f"{name} unavailable")
            return broken
        return object.__getattribute__(self, name)


class RecordingDispatcher(AlertDispatcher):
    def __init__(self):
        self.alerts: List[SecurityAlert] = []

    async def notify(self, alert: SecurityAlert) -> None:
        self.alerts.append(alert)


def default_accounts() -> StaticAccountRepository:
    return StaticAccountRepository({
        "cust-1": Account(user_id="cust-1", role=Role.CUSTOMER.value, email="c@example.com"),
        "staff-1": Account(user_id="staff-1", role=Role.STAFF.value),
        "admin-1": Account(user_id="admin-1", role=Role.ADMIN.value, mfa_enabled=True),
        "admin-nomfa": Account(user_id="admin-nomfa", role=Role.ADMIN.value),
        "inactive-1": Account(user_id="inactive-1", role=Role.CUSTOMER.value, is_active=False),
    })


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
async def event_log(store, clock):
    log = SecurityEventLog(store, clock=clock)
    yield log
    await log.stop()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def config():
    return Config(secret_key="test-secret", port="0")


def build_gate(config: Config, store: MemoryStore, clock: FakeClock,
               dispatcher: RecordingDispatcher) -> GateServer:
    return GateServer(
        config,
        store=store,
        accounts=default_accounts(),
        dispatcher=dispatcher,
        clock=clock,
    )


@pytest.fixture
async def gate(config, store, clock, dispatcher):
    server = build_gate(config, store, clock, dispatcher)
    yield server
    await server.event_log.stop()


@pytest.fixture
def app_name():
    return f"gate-{uuid4().hex[:8]}"


def make_request(gate: GateServer, path: str, user_id: Optional[str] = None,
                 ip: str = ADMIN_IP, admin_token: Optional[str] = None,
                 user_agent: str = USER_AGENT, method: str = "GET") -> GateRequest:
    """GateRequest carrying a signed session for user_id"""
    cookies = {}
    if user_id is not None:
        cookies[gate.config.session_cookie] = gate.identity.issue(user_id)
    if admin_token is not None:
        cookies[gate.config.admin_cookie] = admin_token
    return GateRequest(
        method=method,
        path=path,
        headers={"user-agent": user_agent},
        cookies=cookies,
        client_ip=ip,
        user_agent=user_agent,
    )
