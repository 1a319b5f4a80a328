from datetime import timedelta

from conftest import FlakyStore
from gatekeeper.event_log import SecurityEventLog
from gatekeeper.records import EventFilter, EventType, SecurityEvent


async def test_record_then_query(event_log, clock):
    await event_log.record(EventType.LOGIN, "1.2.3.4", user_agent="ua", user_id="u1", method="password")
    events = await event_log.query(EventFilter(user_id="u1"))

    assert len(events) == 1
    assert events[0].type == EventType.LOGIN
    assert events[0].details == {"method": "password"}
    assert events[0].timestamp == clock()


async def test_events_keep_append_order(event_log):
    for i in range(20):
        await event_log.record(EventType.FAILED_LOGIN, "1.2.3.4", attempt=i)
    events = await event_log.query(EventFilter(ip="1.2.3.4"))
    assert [e.details["attempt"] for e in events] == list(range(20))


async def test_append_never_raises_on_store_failure(clock):
    log = SecurityEventLog(FlakyStore("append_event"), clock=clock)
    try:
        await log.record(EventType.LOGIN, "1.2.3.4")
        await log.flush()
        assert log.dropped == 1
        assert log.written == 0
    finally:
        await log.stop()


async def test_full_queue_drops_events(store, clock):
    log = SecurityEventLog(store, max_pending=1, clock=clock)
    try:
        # append never suspends, so the writer cannot drain between the two calls
        await log.append(SecurityEvent(type=EventType.LOGIN, ip="a", timestamp=clock()))
        await log.append(SecurityEvent(type=EventType.LOGIN, ip="b", timestamp=clock()))
        await log.flush()
        assert log.dropped == 1
        assert log.written == 1
        assert [e.ip for e in await store.query_events(EventFilter())] == ["a"]
    finally:
        await log.stop()


async def test_filter_combinations(event_log, clock):
    await event_log.record(EventType.FAILED_LOGIN, "1.1.1.1", user_id="alice")
    await event_log.record(EventType.FAILED_LOGIN, "2.2.2.2", user_id="bob")
    await event_log.record(EventType.LOGIN, "1.1.1.1", user_id="bob")

    both = await event_log.query(EventFilter(ip="1.1.1.1", user_id="bob"))
    assert len(both) == 1

    either = await event_log.query(EventFilter(
        types=(EventType.FAILED_LOGIN,), ip="1.1.1.1", user_id="bob", match_any=True,
    ))
    assert {e.user_id for e in either} == {"alice", "bob"}


async def test_time_window(event_log, clock):
    await event_log.record(EventType.FAILED_LOGIN, "1.1.1.1")
    clock.advance(hours=2)
    await event_log.record(EventType.FAILED_LOGIN, "1.1.1.1")

    recent = await event_log.query(EventFilter(ip="1.1.1.1", since=clock() - timedelta(hours=1)))
    assert len(recent) == 1


async def test_user_events_newest_first(event_log, clock):
    for i in range(5):
        await event_log.record(EventType.LOGIN, "1.1.1.1", user_id="u1", n=i)
        clock.advance(minutes=1)

    events = await event_log.user_events("u1", limit=3)
    assert [e.details["n"] for e in events] == [4, 3, 2]


async def test_stop_flushes_pending(store, clock):
    log = SecurityEventLog(store, clock=clock)
    for _ in range(5):
        await log.record(EventType.LOGOUT, "1.1.1.1")
    await log.stop()

    assert log.written == 5
    assert not log.running
    assert len(await store.query_events(EventFilter())) == 5
