from __future__ import annotations

import string
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from riskcore.baseline import BaselineModel, ResponseRecord, shannon_entropy  # noqa: E402
from riskcore.config import AnomalyThresholds  # noqa: E402
from riskcore.errors import SubjectNotFound  # noqa: E402

T0 = datetime(2025, 1, 6, 0, 0, tzinfo=timezone.utc)
KNOWN = ["A:93.184.216.34"]


def _warm(model: BaselineModel, subject: str = "example.com", count: int = 6, latency: float = 20.0) -> datetime:
    """Feed ``count`` identical observations one hour apart; return the next free hour."""

    for hour in range(count):
        assert model.observe(subject, "A", KNOWN, latency, at=T0 + timedelta(hours=hour)) == ()
    return T0 + timedelta(hours=count)


def test_cold_start_observation_flags_nothing():
    model = BaselineModel()
    assert model.observe("example.com", "A", KNOWN, 1500.0, at=T0) == ()
    snapshot = model.baseline("example.com")
    assert snapshot is not None
    assert snapshot.sample_count == 1
    assert sum(snapshot.hourly_volume) == 1


def test_latency_spike_is_a_timing_anomaly():
    model = BaselineModel()
    for hour, latency in enumerate([20, 22, 19, 21, 20, 23, 18, 20, 21, 22]):
        model.observe("example.com", "A", KNOWN, latency, at=T0 + timedelta(hours=hour))

    found = model.observe("example.com", "A", KNOWN, 500.0, at=T0 + timedelta(hours=10))

    assert [anomaly.kind for anomaly in found] == ["timing"]
    assert found[0].severity == "medium"
    assert found[0].subject_id == "example.com"
    assert found[0].evidence[0] == "Response time: 500ms"


def test_observation_is_evaluated_before_it_is_merged():
    model = BaselineModel()
    at = _warm(model, latency=20.0)

    found = model.observe("example.com", "A", KNOWN, 100.0, at=at)

    assert [anomaly.kind for anomaly in found] == ["timing"]
    snapshot = model.baseline("example.com")
    assert snapshot.sample_count == 7
    assert snapshot.latency_mean > 20.0


def test_volume_anomaly_against_hourly_mean():
    model = BaselineModel(learning_period=timedelta(days=7))
    for day in range(7):
        model.observe("example.com", "A", KNOWN, 20.0, at=T0 + timedelta(days=day, hours=9))

    busy_hour = T0 + timedelta(days=7, hours=9)
    results = [
        model.observe("example.com", "A", KNOWN, 20.0, at=busy_hour + timedelta(minutes=minute))
        for minute in range(5)
    ]

    assert all(not result for result in results[:4])
    assert [anomaly.kind for anomaly in results[4]] == ["volume"]
    assert results[4][0].severity == "high"


def test_repeat_queries_on_cold_baseline_are_not_volume_anomalies():
    model = BaselineModel()

    assert model.observe("example.com", "A", KNOWN, 20.0, at=T0) == ()
    assert model.observe("example.com", "A", KNOWN, 20.0, at=T0 + timedelta(minutes=1)) == ()


def test_volume_mean_uses_observed_days_not_full_learning_period():
    model = BaselineModel(learning_period=timedelta(days=7))

    results = [model.observe("example.com", "A", KNOWN, 20.0, at=T0 + timedelta(minutes=minute)) for minute in range(8)]

    assert all(result == () for result in results)
    assert model.baseline("example.com").sample_count == 8


def test_unseen_responses_flag_resolution_and_poisoning():
    model = BaselineModel()
    at = _warm(model)

    found = model.observe("example.com", "A", ["A:6.6.6.6", "A:7.7.7.7"], 20.0, at=at)
    by_kind = {anomaly.kind: anomaly for anomaly in found}

    assert set(by_kind) == {"resolution", "security"}
    assert by_kind["resolution"].severity == "high"
    assert by_kind["security"].severity == "critical"
    assert by_kind["security"].description == "Possible cache poisoning attempt"
    assert by_kind["security"].evidence == ("Unseen response A:6.6.6.6", "Unseen response A:7.7.7.7")


def test_resolution_severity_follows_policy():
    model = BaselineModel(AnomalyThresholds(severities={"resolution": "low"}))
    at = _warm(model)

    found = model.observe("example.com", "A", ["A:6.6.6.6"], 20.0, at=at)

    assert {anomaly.kind: anomaly.severity for anomaly in found}["resolution"] == "low"


def test_high_entropy_value_is_possible_tunneling():
    model = BaselineModel()
    encoded = string.ascii_letters + string.digits

    found = model.observe("example.com", "TXT", [ResponseRecord("TXT", encoded)], 20.0, at=T0)

    assert len(found) == 1
    assert found[0].kind == "security"
    assert found[0].severity == "critical"
    assert found[0].description == "Possible tunneling detected"
    assert found[0].evidence[0].startswith("High entropy")


def test_oversized_a_record_label_is_possible_tunneling():
    model = BaselineModel()
    found = model.observe("example.com", "A", [ResponseRecord("A", "a" * 40 + ".example.com")], 20.0, at=T0)

    assert [anomaly.description for anomaly in found] == ["Possible tunneling detected"]
    assert found[0].evidence[0].startswith("Oversized label")


def test_large_aggregate_response_is_possible_amplification():
    model = BaselineModel()
    records = [ResponseRecord("TXT", "x" * 100) for _ in range(6)]

    found = model.observe("example.com", "ANY", records, 20.0, at=T0)

    assert [anomaly.description for anomaly in found] == ["Possible amplification attack"]
    assert found[0].evidence == ("Response size 600 bytes exceeds 512", "Query type ANY")


def test_failure_rate_jump_is_a_pattern_anomaly():
    model = BaselineModel()
    at = _warm(model, count=5)

    found = model.observe("example.com", "A", KNOWN, 20.0, success_rate=50.0, at=at)

    assert [anomaly.kind for anomaly in found] == ["pattern"]
    assert found[0].severity == "medium"


def _sequence():
    return [(20.0, KNOWN)] * 6 + [(500.0, KNOWN)]


def _feed(model: BaselineModel, sequence):
    found = []
    for hour, (latency, records) in enumerate(sequence):
        found.extend(model.observe("example.com", "A", records, latency, at=T0 + timedelta(hours=hour)))
    return found


def test_identical_sequences_give_identical_anomalies():
    assert _feed(BaselineModel(), _sequence()) == _feed(BaselineModel(), _sequence())


def test_anomaly_detection_is_order_sensitive():
    forward = _feed(BaselineModel(), _sequence())
    backward = _feed(BaselineModel(), list(reversed(_sequence())))

    assert [anomaly.kind for anomaly in forward] == ["timing"]
    assert backward == []


def test_stored_anomalies_are_bounded_newest_first():
    model = BaselineModel(AnomalyThresholds(max_anomalies=3))
    encoded = string.ascii_letters + string.digits
    for hour in range(5):
        model.observe("example.com", "TXT", [f"TXT:{encoded}"], 20.0, at=T0 + timedelta(hours=hour))

    stored = model.anomalies("example.com")
    assert len(stored) == 3
    assert stored[0].timestamp == T0 + timedelta(hours=4)
    assert stored[-1].timestamp == T0 + timedelta(hours=2)


def test_filters_and_stats():
    model = BaselineModel()
    at = _warm(model)
    model.observe("example.com", "A", ["A:6.6.6.6"], 20.0, at=at)

    assert [a.kind for a in model.anomalies("example.com", kind="resolution")] == ["resolution"]
    assert [a.kind for a in model.anomalies("example.com", severity="critical")] == ["security"]
    stats = model.anomaly_stats("example.com")
    assert stats["total"] == 2
    assert stats["by_severity"]["high"] == 1
    assert stats["by_kind"]["security"] == 1
    assert stats["last_detected"] == at.isoformat()
    assert model.anomaly_stats("unknown.example")["total"] == 0


def test_sweep_ages_out_idle_subjects():
    model = BaselineModel(learning_period=timedelta(days=7))
    model.observe("idle.example", "TXT", [f"TXT:{string.ascii_letters}"], 20.0, at=T0)
    assert model.anomalies("idle.example")

    removed = model.sweep(T0 + timedelta(days=8))

    assert removed == 2
    assert model.anomalies("idle.example") == ()
    assert model.baseline("idle.example") is None


def test_sweep_rebuilds_statistics_from_remaining_window():
    model = BaselineModel(learning_period=timedelta(days=7))
    model.observe("example.com", "A", ["A:1.1.1.1"], 10.0, at=T0)
    model.observe("example.com", "A", ["A:2.2.2.2"], 30.0, at=T0 + timedelta(days=6))

    model.sweep(T0 + timedelta(days=7, minutes=1))

    snapshot = model.baseline("example.com")
    assert snapshot.sample_count == 1
    assert sum(snapshot.hourly_volume) == 1
    assert snapshot.latency_mean == pytest.approx(30.0)
    assert snapshot.signatures == {"A:2.2.2.2": 1}


def test_strict_baseline_lookup_raises_for_unknown_subject():
    model = BaselineModel()
    assert model.baseline("nobody.example") is None
    with pytest.raises(SubjectNotFound):
        model.baseline("nobody.example", strict=True)


def test_clear_one_or_all_subjects():
    model = BaselineModel()
    model.observe("a.example", "A", KNOWN, 20.0, at=T0)
    model.observe("b.example", "A", KNOWN, 20.0, at=T0)

    model.clear("a.example")
    assert model.subjects() == ("b.example",)
    model.clear()
    assert model.subjects() == ()


@pytest.mark.parametrize("value,expected", [("", 0.0), ("aaaa", 0.0), ("ab", 1.0), ("abcd", 2.0)])
def test_shannon_entropy(value, expected):
    assert shannon_entropy(value) == pytest.approx(expected)
