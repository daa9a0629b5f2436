from __future__ import annotations

import asyncio
import string
import sys
from datetime import timedelta
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from riskcore.collectors import HttpReputationProvider, Indicator, StaticReputationProvider, TelemetryCollector  # noqa: E402
from riskcore.config import Settings  # noqa: E402
from riskcore.engine import RiskEngine, decide  # noqa: E402
from riskcore.errors import Blocked  # noqa: E402
from riskcore.guard import EncryptedFileAttemptStore  # noqa: E402
from riskcore.models import AssessmentContext, NetworkDescriptor  # noqa: E402
from riskcore.state import Sample  # noqa: E402


class SlowProvider:
    name = "slow"

    async def lookup(self, ip: str) -> NetworkDescriptor:
        await asyncio.sleep(1)
        return NetworkDescriptor(ip=ip)


class GatedProvider:
    """Holds every lookup until ``release`` is set."""

    name = "gated"

    def __init__(self) -> None:
        self.entered: asyncio.Event | None = None
        self.release: asyncio.Event | None = None

    def arm(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def lookup(self, ip: str) -> NetworkDescriptor:
        self.entered.set()
        await self.release.wait()
        return NetworkDescriptor(ip=ip)


def _engine(clock, **kwargs) -> RiskEngine:
    return RiskEngine(clock=clock, **kwargs)


def _context(clock, **overrides) -> AssessmentContext:
    return AssessmentContext(timestamp=clock.now, **overrides)


def _type(engine: RiskEngine, subject_id: str, clock, keys: int = 12) -> None:
    for index in range(keys):
        press = 100.0 + index * 200.0
        engine.ingest(subject_id, Sample(clock.now, "keystroke", {"key": str(index), "press": press}))
        engine.ingest(subject_id, Sample(clock.now, "keystroke", {"key": str(index), "release": press + 80.0}))


def test_fresh_subject_is_low_risk(clock):
    engine = _engine(clock)

    result = asyncio.run(engine.assess("alice", _context(clock)))

    assert result.assessment.score == 15
    assert result.assessment.level == "low"
    assert result.decision.as_dict() == {
        "require_additional_auth": False,
        "require_step_up_auth": False,
        "block_access": False,
    }
    assert result.network_degraded is None
    assert "network_degraded" not in result.as_dict()
    assert len(engine.risk_history.history("alice")) == 1
    assert len(engine.trust_history.history("alice")) == 1


def test_six_rapid_failures_block_and_demand_maximum_complexity(clock):
    engine = _engine(clock)
    for _ in range(4):
        engine.record_failure("alice")
        clock.advance(seconds=10)

    with pytest.raises(Blocked):
        engine.record_failure("alice")
    clock.advance(seconds=10)
    with pytest.raises(Blocked) as excinfo:
        engine.record_failure("alice")

    assert excinfo.value.remaining_seconds > 0
    assert engine.required_complexity("alice") == "maximum"


def test_blocked_identifier_cannot_be_assessed(clock):
    engine = _engine(clock)
    for _ in range(4):
        engine.record_failure("alice")
    with pytest.raises(Blocked):
        engine.record_failure("alice")

    with pytest.raises(Blocked):
        asyncio.run(engine.assess("alice", _context(clock)))
    assert engine.risk_history.history("alice") == ()

    other = asyncio.run(engine.assess("bob", _context(clock)))
    assert other.assessment.level == "low"


def test_guard_failures_feed_the_scorers(clock):
    engine = _engine(clock)
    for _ in range(4):
        engine.record_failure("alice")

    result = asyncio.run(engine.assess("alice", _context(clock)))

    assert result.assessment.factor("Historical Pattern").score == 0.5
    assert "Multiple failed attempts" in result.trust.metadata.unusual_activity_flags


def test_separate_identifier_is_checked_for_lockout(clock):
    engine = _engine(clock)
    for _ in range(4):
        engine.record_failure("alice@example.com")
    with pytest.raises(Blocked):
        engine.record_failure("alice@example.com")

    with pytest.raises(Blocked):
        asyncio.run(engine.assess("session-1", _context(clock), identifier="alice@example.com"))


def test_reputation_timeout_degrades_network_factor(clock):
    collector = TelemetryCollector(reputation=SlowProvider(), timeout=0.01, clock=clock)
    engine = _engine(clock, collector=collector)

    result = asyncio.run(engine.assess("alice", _context(clock, ip_address="192.0.2.1")))

    assert result.assessment.factor("Network").score == 0.5
    assert "timed out" in result.network_degraded
    assert result.as_dict()["network_degraded"] == result.network_degraded


def test_malformed_reputation_body_degrades_network_factor(clock):
    provider = HttpReputationProvider(
        "https://reputation.example/api",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>oops</html>")),
    )
    engine = _engine(clock, collector=TelemetryCollector(reputation=provider, clock=clock))

    result = asyncio.run(engine.assess("alice", _context(clock, ip_address="192.0.2.1")))

    assert result.assessment.factor("Network").score == 0.5
    assert result.network_degraded == "Collector http malformed response"


def test_reputation_lookup_scores_network(clock):
    provider = StaticReputationProvider([Indicator(type="ip", value="192.0.2.1", label="exit", tor=True, vpn=True)])
    engine = _engine(clock, collector=TelemetryCollector(reputation=provider, clock=clock))

    result = asyncio.run(engine.assess("alice", _context(clock, ip_address="192.0.2.1")))

    assert result.assessment.factor("Network").score == 0.45
    assert result.trust.factors["network_security"] is False


def test_recorded_anomalies_raise_risk(clock):
    engine = _engine(clock)
    engine.observe("alice", "TXT", [f"TXT:{string.ascii_letters + string.digits}"], 20.0)

    result = asyncio.run(engine.assess("alice", _context(clock)))

    assert result.assessment.factor("Anomaly").score == 1.0
    assert "Recent anomalies detected - review flagged activity" in result.assessment.recommendations


def test_captured_behavior_fills_missing_metrics(clock):
    engine = _engine(clock)
    _type(engine, "alice", clock)
    engine.ingest("alice", Sample(clock.now, "device", {"platform": "Win32"}))

    first = asyncio.run(engine.assess("alice", _context(clock)))
    second = asyncio.run(engine.assess("alice", _context(clock)))

    assert first.assessment.factor("Behavioral Pattern").score == 0.0
    assert second.assessment.factor("Behavioral Pattern").score == 0.0
    profile = engine.behavior.profile("alice")
    assert profile is not None
    assert len(profile.typing_patterns) == 2


def test_successful_login_enrols_captured_behavior(clock):
    engine = _engine(clock)
    _type(engine, "alice", clock)

    engine.record_success("alice")

    assert engine.behavior.profile("alice") is not None
    assert engine.behavior.verify("alice") > 0.9


def test_success_without_captured_behavior_skips_enrolment(clock):
    engine = _engine(clock)

    engine.record_success("alice")

    assert engine.behavior.profile("alice") is None
    assert engine.behavior.subjects() == ()


def test_successful_login_registers_device_and_clears_failures(clock):
    engine = _engine(clock)
    engine.record_failure("alice")
    context = _context(clock)

    device = engine.record_success("alice", context=context)
    clock.advance(minutes=5)
    result = asyncio.run(engine.assess("alice", _context(clock)))

    assert device.login_count == 1
    assert engine.guard.failed_attempts("alice") == 0
    assert result.trust.factors["known_device"] is True


def test_logout_keeps_attempt_records(clock):
    engine = _engine(clock)
    engine.record_failure("alice")
    engine.record_failure("alice")
    engine.behavior.record_key_press("alice", "a", 10.0)
    engine.behavior.create_profile("alice")

    engine.logout("alice")

    assert engine.behavior.profile("alice") is None
    assert engine.guard.failed_attempts("alice") == 2


def test_concurrent_assessments_keep_submission_order(clock):
    engine = _engine(clock)
    contexts = [AssessmentContext(timestamp=clock.now + timedelta(minutes=offset)) for offset in range(5)]

    async def run_all():
        return await asyncio.gather(*(engine.assess("alice", context) for context in contexts))

    asyncio.run(run_all())

    stored = engine.trust_history.history("alice")
    assert len(stored) == 5
    assert len(engine.risk_history.history("alice")) == 5
    assert engine.aggregate("alice").count == 5


def test_logout_during_assessment_keeps_submission_order(clock):
    provider = GatedProvider()
    engine = _engine(clock, collector=TelemetryCollector(reputation=provider, timeout=5.0, clock=clock))

    async def scenario():
        provider.arm()
        first = asyncio.create_task(engine.assess("alice", _context(clock, ip_address="192.0.2.1")))
        await provider.entered.wait()
        engine.logout("alice")
        second = asyncio.create_task(engine.assess("alice", _context(clock)))
        await asyncio.sleep(0)
        assert not second.done()
        provider.release.set()
        return await first, await second

    first, second = asyncio.run(scenario())

    stored = engine.risk_history.history("alice")
    assert len(stored) == 2
    assert stored[0] is first.assessment
    assert stored[1] is second.assessment
    assert engine._assess_locks == {}


def test_aggregate_of_unknown_subject_is_default(clock):
    aggregate = _engine(clock).aggregate("nobody")
    assert (aggregate.average_score, aggregate.trend, aggregate.level) == (0.0, "stable", "medium")


def test_sweep_forgets_stale_baselines(clock):
    engine = _engine(clock)
    engine.observe("example.com", "A", ["A:93.184.216.34"], 20.0, at=clock.now - timedelta(days=8))

    assert engine.sweep() == 1
    assert engine.baseline.subjects() == ()


@pytest.mark.parametrize(
    "score,expected",
    [
        (59, (False, False, False)),
        (60, (True, False, False)),
        (80, (True, True, False)),
        (90, (True, True, True)),
    ],
)
def test_decide_thresholds(score, expected):
    decision = decide(score)
    assert (decision.require_additional_auth, decision.require_step_up_auth, decision.block_access) == expected


def test_from_settings_wires_encrypted_store(tmp_path, clock):
    settings = Settings(
        _env_file=None,
        attempt_store_path=str(tmp_path / "attempts.bin"),
        attempt_store_secret="correct horse battery staple",
        max_attempts=3,
    )

    engine = RiskEngine.from_settings(settings, clock=clock)
    engine.record_failure("alice")

    assert engine.config.attempts.max_attempts == 3
    assert isinstance(engine.guard._store, EncryptedFileAttemptStore)
    assert (tmp_path / "attempts.bin").exists()
