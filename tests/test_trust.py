from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from riskcore.models import AssessmentContext, DeviceInfo, GeoPoint, NetworkDescriptor  # noqa: E402
from riskcore.trust import DeviceRegistry, TrustScorer, fingerprint, is_emulator, is_modern_browser  # noqa: E402

NOON = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)
LAPTOP = DeviceInfo(
    platform="Win32",
    os="Windows",
    browser="Chrome",
    browser_version="120.0.1",
    screen_resolution="1920x1080",
    timezone="Europe/London",
)
LONDON = GeoPoint(lat=51.5074, lng=-0.1278)
NEW_YORK = GeoPoint(lat=40.7128, lng=-74.0060)


def _context(at: datetime = NOON, **overrides) -> AssessmentContext:
    values = {"timestamp": at, "device": LAPTOP, "location": LONDON}
    values.update(overrides)
    return AssessmentContext(**values)


def test_unknown_device_needs_step_up(clock):
    trust = TrustScorer(clock=clock).assess("alice", _context(location=None))

    assert trust.score == 50
    assert trust.factors["known_device"] is False
    assert trust.factors["platform_security"] is True
    assert trust.risk_level == "medium"
    assert trust.requires_step_up is True
    assert trust.metadata.unusual_activity_flags == ("New device detected", "Unusual location")
    assert trust.device_id == fingerprint(LAPTOP)


def test_known_device_at_known_location_is_fully_trusted(clock):
    scorer = TrustScorer(clock=clock)
    scorer.record_login("alice", _context())

    trust = scorer.assess("alice", _context(NOON + timedelta(hours=1)))

    assert trust.score == 100
    assert all(trust.factors.values())
    assert trust.risk_level == "low"
    assert trust.requires_step_up is False
    assert trust.metadata.login_count == 1
    assert trust.metadata.last_login_time == NOON


def test_impossible_travel_and_failures_escalate_to_high(clock):
    scorer = TrustScorer(clock=clock)
    scorer.record_login("alice", _context())

    trust = scorer.assess("alice", _context(NOON + timedelta(hours=1), location=NEW_YORK), failed_attempts=4)

    assert trust.factors["location_match"] is False
    assert trust.risk_points == 2 + 3 + 3
    assert trust.risk_level == "high"
    assert trust.requires_step_up is True
    assert "Rapid location change" in trust.metadata.unusual_activity_flags
    assert "Multiple failed attempts" in trust.metadata.unusual_activity_flags


def test_simultaneous_distant_location_counts_as_rapid_change(clock):
    scorer = TrustScorer(clock=clock)
    scorer.record_login("alice", _context())

    trust = scorer.assess("alice", _context(NOON, location=NEW_YORK))

    assert "Rapid location change" in trust.metadata.unusual_activity_flags


def test_vpn_lowers_network_security(clock):
    scorer = TrustScorer(clock=clock)
    scorer.record_login("alice", _context())

    trust = scorer.assess(
        "alice",
        _context(NOON + timedelta(hours=1)),
        network=NetworkDescriptor(ip="198.51.100.4", vpn_detected=True),
    )

    assert trust.factors["network_security"] is False
    assert trust.score == 90
    assert trust.metadata.unusual_activity_flags == ("VPN detected",)


def test_emulator_fails_device_integrity(clock):
    device = LAPTOP.model_copy(update={"user_agent": "Mozilla/5.0 (Linux; Android 9) BlueStacks"})
    trust = TrustScorer(clock=clock).assess("alice", _context(device=device))

    assert trust.factors["device_integrity"] is False
    assert "Device integrity check failed" in trust.metadata.unusual_activity_flags


def test_login_hour_outside_history_breaks_time_pattern(clock):
    scorer = TrustScorer(clock=clock)
    for day in range(5):
        scorer.record_login("alice", _context(NOON.replace(hour=9) + timedelta(days=day)))

    late = scorer.assess("alice", _context(NOON.replace(hour=22) + timedelta(days=4)))
    usual = scorer.assess("alice", _context(NOON.replace(hour=9) + timedelta(days=5)))

    assert late.factors["time_pattern_match"] is False
    assert "Unusual login time" in late.metadata.unusual_activity_flags
    assert usual.factors["time_pattern_match"] is True


def test_stale_device_loses_recent_activity(clock):
    scorer = TrustScorer(clock=clock)
    scorer.record_login("alice", _context())

    trust = scorer.assess("alice", _context(NOON + timedelta(days=8)))

    assert trust.factors["known_device"] is True
    assert trust.factors["recent_activity"] is False


@pytest.mark.parametrize(
    "browser,version,expected",
    [
        ("Chrome", "120.0", True),
        ("Chrome", "89", False),
        ("Firefox", "88.0", True),
        ("Safari", "13.1", False),
        ("Opera", "100", False),
        ("Chrome", None, False),
    ],
)
def test_modern_browser_detection(browser, version, expected):
    assert is_modern_browser(DeviceInfo(browser=browser, browser_version=version)) is expected


def test_emulator_detection_checks_label_and_user_agent():
    assert is_emulator(DeviceInfo(device_label="Genymotion"))
    assert not is_emulator(LAPTOP)


def test_fingerprint_is_stable_and_sensitive_to_browser():
    assert fingerprint(LAPTOP) == fingerprint(LAPTOP.model_copy())
    assert fingerprint(LAPTOP) != fingerprint(LAPTOP.model_copy(update={"browser_version": "121.0"}))


def test_registry_tracks_latest_location_and_forgets(clock):
    registry = DeviceRegistry(max_login_times=3, clock=clock)
    phone = DeviceInfo(platform="iPhone", os="iOS", browser="Safari", browser_version="17", device_label="Mobile")

    registry.record_login("alice", LAPTOP, location=LONDON, at=NOON)
    registry.record_login("alice", phone, location=NEW_YORK, at=NOON + timedelta(hours=8))
    for hour in range(4):
        registry.record_login("alice", LAPTOP, at=NOON + timedelta(days=1, hours=hour))

    laptop = registry.lookup("alice", LAPTOP)
    assert laptop.login_count == 5
    assert len(laptop.login_times) == 3
    assert len(registry.devices("alice")) == 2
    assert registry.last_location("alice").lat == pytest.approx(NEW_YORK.lat)

    registry.forget("alice")
    assert registry.devices("alice") == ()
    assert registry.lookup("alice", LAPTOP) is None
