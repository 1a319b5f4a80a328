import pytest

from gatekeeper.alerting import AlertDispatcher, AlertManager, LoggingAlertDispatcher
from gatekeeper.records import AlertType, EventFilter, EventType, SecurityAlert, Severity


class ExplodingDispatcher(AlertDispatcher):
    async def notify(self, alert):
        raise ConnectionError("webhook down")


@pytest.fixture
def alerts(store, event_log, dispatcher):
    return AlertManager(store, event_log, dispatcher)


def brute_force(ip="198.51.100.7", user_id=None):
    return SecurityAlert(
        type=AlertType.BRUTE_FORCE, severity=Severity.CRITICAL, ip=ip, user_id=user_id,
        details={"failed_attempts": 10},
    )


async def test_raise_persists_dispatches_and_logs(alerts, store, event_log, dispatcher):
    alert = brute_force(user_id="u1")
    assert await alerts.raise_alert(alert)

    assert [a.id for a in await store.list_alerts()] == [alert.id]
    assert dispatcher.alerts == [alert]

    events = await event_log.query(EventFilter(types=(EventType.SUSPICIOUS_ACTIVITY,)))
    assert len(events) == 1
    assert events[0].details["alert_type"] == "brute_force"
    assert events[0].details["failed_attempts"] == 10


async def test_open_duplicate_is_suppressed(alerts, dispatcher):
    assert await alerts.raise_alert(brute_force())
    assert not await alerts.raise_alert(brute_force())
    assert len(dispatcher.alerts) == 1

    # A different type for the same ip is a new alert
    other = SecurityAlert(type=AlertType.MULTIPLE_FAILED_LOGINS, severity=Severity.HIGH,
                          ip="198.51.100.7")
    assert await alerts.raise_alert(other)


async def test_resolved_alert_allows_a_new_one(alerts):
    first = brute_force()
    await alerts.raise_alert(first)
    assert await alerts.resolve(first.id)
    assert await alerts.raise_alert(brute_force())
    assert not await alerts.resolve("missing")


async def test_dispatch_failure_is_contained(store, event_log):
    alerts = AlertManager(store, event_log, ExplodingDispatcher())
    assert await alerts.raise_alert(brute_force())
    assert len(await store.list_alerts()) == 1


async def test_has_unresolved(alerts):
    await alerts.raise_alert(brute_force(user_id="u1"))
    assert await alerts.has_unresolved(user_id="u1")
    assert await alerts.has_unresolved(ip="198.51.100.7")
    assert not await alerts.has_unresolved(user_id="u2", ip="192.0.2.1")
    assert not await alerts.has_unresolved(ip="unknown")


async def test_logging_dispatcher_uses_severity_level(caplog):
    with caplog.at_level("INFO", logger="gatekeeper.alerts"):
        await LoggingAlertDispatcher().notify(brute_force())
    assert caplog.records[-1].levelname == "CRITICAL"
    assert "brute_force" in caplog.records[-1].getMessage()
