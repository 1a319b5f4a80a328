import pytest

from conftest import FlakyStore
from gatekeeper.activity_detector import SuspiciousActivityDetector
from gatekeeper.event_log import SecurityEventLog
from gatekeeper.records import AlertType, EventType, Severity


@pytest.fixture
def detector(event_log, clock):
    return SuspiciousActivityDetector(event_log, clock=clock)


async def fail(event_log, n, ip="198.51.100.7", user_id=None):
    for _ in range(n):
        await event_log.record(EventType.FAILED_LOGIN, ip, user_id=user_id)


async def test_below_threshold_is_quiet(detector, event_log):
    await fail(event_log, 4)
    assert await detector.detect(ip="198.51.100.7") is None


async def test_five_failures_is_high(detector, event_log):
    await fail(event_log, 5)
    alert = await detector.detect(ip="198.51.100.7")
    assert alert.type == AlertType.MULTIPLE_FAILED_LOGINS
    assert alert.severity == Severity.HIGH
    assert alert.details["failed_attempts"] == 5


async def test_ten_failures_is_brute_force(detector, event_log):
    await fail(event_log, 12)
    alert = await detector.detect(ip="198.51.100.7")
    assert alert.type == AlertType.BRUTE_FORCE
    assert alert.severity == Severity.CRITICAL
    assert alert.details["failed_attempts"] == 12


async def test_matches_ip_or_user(detector, event_log):
    await fail(event_log, 3, ip="198.51.100.7")
    await fail(event_log, 3, ip="192.0.2.1", user_id="u1")
    alert = await detector.detect(ip="198.51.100.7", user_id="u1")
    assert alert is not None
    assert alert.details["failed_attempts"] == 6


async def test_other_event_types_do_not_count(detector, event_log):
    for _ in range(10):
        await event_log.record(EventType.ADMIN_ACCESS, "198.51.100.7", granted=False)
    assert await detector.detect(ip="198.51.100.7") is None


async def test_old_failures_fall_out_of_window(detector, event_log, clock):
    await fail(event_log, 10)
    clock.advance(hours=1, seconds=1)
    await fail(event_log, 2)
    assert await detector.detect(ip="198.51.100.7") is None


async def test_unknown_ip_is_ignored(detector, event_log):
    await fail(event_log, 10, ip="unknown")
    assert await detector.detect(ip="unknown") is None
    assert await detector.detect() is None


async def test_store_failure_skips_detection(clock):
    log = SecurityEventLog(FlakyStore("query_events"), clock=clock)
    detector = SuspiciousActivityDetector(log, clock=clock)
    try:
        assert await detector.detect(ip="198.51.100.7") is None
    finally:
        await log.stop()


def test_classification_bands(detector):
    assert detector.classify(4) is None
    assert detector.classify(9) == (AlertType.MULTIPLE_FAILED_LOGINS, Severity.HIGH)
    assert detector.classify(10) == (AlertType.BRUTE_FORCE, Severity.CRITICAL)
