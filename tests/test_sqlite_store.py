import asyncio
from datetime import timedelta

import pytest

from gatekeeper.collaborators import Account, Role
from gatekeeper.errors import StoreError
from gatekeeper.records import (
    AdminSession,
    AlertType,
    EventFilter,
    EventType,
    IPWhitelistRule,
    SecurityAlert,
    SecurityEvent,
    Severity,
)
from gatekeeper.sqlite_store import SQLiteStore


@pytest.fixture
async def db(tmp_path):
    store = SQLiteStore(str(tmp_path / "gate.db"))
    await store.initialize()
    yield store
    await store.close()


async def test_windowed_increment(db, clock):
    window = timedelta(minutes=5)
    assert (await db.increment("login:ip", window, clock())).attempts == 1
    assert (await db.increment("login:ip", window, clock())).attempts == 2

    start = clock()
    clock.advance(minutes=6)
    record = await db.increment("login:ip", window, clock())
    assert record.attempts == 1
    assert record.window_start > start


async def test_concurrent_increments_are_not_lost(db, clock):
    window = timedelta(minutes=5)
    await asyncio.gather(*(db.increment("k", window, clock()) for _ in range(20)))
    assert (await db.get_counter("k")).attempts == 20


async def test_counter_delete_and_prune(db, clock):
    window = timedelta(minutes=5)
    await db.increment("a", window, clock())
    await db.increment("b", window, clock())
    await db.delete_counter("a")
    assert await db.get_counter("a") is None

    clock.advance(hours=2)
    assert await db.prune_counters(clock() - timedelta(hours=1)) == 1


async def test_event_query(db, clock):
    for i in range(5):
        await db.append_event(SecurityEvent(
            type=EventType.FAILED_LOGIN, ip="1.1.1.1", user_id=None if i % 2 else "u1",
            timestamp=clock(), details={"n": i},
        ))
        clock.advance(minutes=1)
    await db.append_event(SecurityEvent(type=EventType.LOGIN, ip="2.2.2.2", timestamp=clock()))

    everything = await db.query_events(EventFilter())
    assert len(everything) == 6

    failures = await db.query_events(EventFilter(types=(EventType.FAILED_LOGIN,)))
    assert [e.details["n"] for e in failures] == [0, 1, 2, 3, 4]

    latest = await db.query_events(EventFilter(types=(EventType.FAILED_LOGIN,), limit=2))
    assert [e.details["n"] for e in latest] == [3, 4]

    either = await db.query_events(EventFilter(ip="2.2.2.2", user_id="u1", match_any=True))
    assert len(either) == 4


async def test_session_cap_and_lifecycle(db, clock):
    def session(token):
        return AdminSession(
            user_id="admin-1", session_token=token, ip_address="10.0.0.5", user_agent="ua",
            created_at=clock(), expires_at=clock() + timedelta(minutes=30),
        )

    for token in ("t1", "t2", "t3"):
        assert await db.create_session(session(token), 3, clock()) == []
        clock.advance(seconds=1)

    evicted = await db.create_session(session("t4"), 3, clock())
    assert [s.session_token for s in evicted] == ["t1"]
    assert [s.session_token for s in await db.list_sessions("admin-1", now=clock())] == ["t2", "t3", "t4"]

    assert await db.deactivate_session("t2")
    assert not await db.deactivate_session("t2")
    assert await db.deactivate_user_sessions("admin-1") == 2

    assert not (await db.get_session("t4")).is_active
    assert await db.prune_sessions(clock()) == 4


async def test_whitelist_rules(db):
    rule = await db.add_rule(IPWhitelistRule(name="office", cidr="203.0.113.0/24"))
    await db.add_rule(IPWhitelistRule(name="old", cidr="198.51.100.0/24", is_active=False))

    assert [r.name for r in await db.list_rules()] == ["office"]
    assert len(await db.list_rules(active_only=False)) == 2
    assert await db.remove_rule(rule.id)
    assert not await db.remove_rule(rule.id)


async def test_alerts(db):
    alert = SecurityAlert(type=AlertType.BRUTE_FORCE, severity=Severity.CRITICAL,
                          ip="1.1.1.1", user_id="u1", details={"failed_attempts": 11})
    await db.add_alert(alert)

    assert [a.id for a in await db.find_unresolved(user_id="u1")] == [alert.id]
    assert [a.id for a in await db.find_unresolved(ip="1.1.1.1")] == [alert.id]
    assert await db.find_unresolved() == []

    assert await db.resolve_alert(alert.id)
    assert await db.list_alerts() == []
    stored = (await db.list_alerts(include_resolved=True))[0]
    assert stored.resolved
    assert stored.details == {"failed_attempts": 11}


async def test_accounts(db):
    await db.upsert_account(Account(user_id="u1", role=Role.ADMIN.value, mfa_enabled=True))
    account = await db.get_account("u1")
    assert account.role == "ADMIN"
    assert account.mfa_enabled
    assert await db.get_account("u2") is None


async def test_uninitialized_store_raises_store_error(tmp_path):
    store = SQLiteStore(str(tmp_path / "never.db"))
    with pytest.raises(StoreError):
        await store.get_counter("k")
