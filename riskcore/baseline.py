"""Per-subject statistical baselines and anomaly detection."""
from __future__ import annotations

import logging
import math
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .config import AnomalyThresholds
from .state import Clock, SubjectRegistry, ensure_aware, utcnow

logger = logging.getLogger(__name__)

ANOMALY_KINDS = ("pattern", "timing", "volume", "resolution", "security")
SEVERITIES = ("low", "medium", "high", "critical")


@dataclass(frozen=True)
class ResponseRecord:
    """One observed response value, e.g. a DNS answer."""

    type: str
    value: str
    ttl: int = 0

    @property
    def signature(self) -> str:
        return f"{self.type}:{self.value}"

    @classmethod
    def parse(cls, raw: Union["ResponseRecord", str]) -> "ResponseRecord":
        if isinstance(raw, ResponseRecord):
            return raw
        record_type, _, value = str(raw).partition(":")
        if not value:
            return cls(type="", value=record_type)
        return cls(type=record_type, value=value)


@dataclass(frozen=True)
class Anomaly:
    kind: str
    severity: str
    description: str
    timestamp: datetime
    subject_id: str
    evidence: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "subject_id": self.subject_id,
            "evidence": list(self.evidence),
        }


@dataclass(frozen=True)
class BaselineSnapshot:
    """Read-only copy of a subject's baseline."""

    subject_id: str
    hourly_volume: Tuple[int, ...]
    sample_count: int
    latency_mean: float
    latency_stddev: float
    categories: Dict[str, int]
    signatures: Dict[str, int]
    failure_rates: Dict[str, float]
    anomaly_count: int
    last_updated: Optional[datetime]

    def as_dict(self) -> Dict[str, object]:
        return {
            "subject_id": self.subject_id,
            "hourly_volume": list(self.hourly_volume),
            "sample_count": self.sample_count,
            "latency_mean": self.latency_mean,
            "latency_stddev": self.latency_stddev,
            "categories": dict(self.categories),
            "signatures": dict(self.signatures),
            "failure_rates": dict(self.failure_rates),
            "anomaly_count": self.anomaly_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass(frozen=True)
class _Observation:
    timestamp: datetime
    category: str
    signatures: Tuple[str, ...]
    latency: float
    failure_rate: float


@dataclass
class _Baseline:
    max_anomalies: int
    hourly: List[int] = field(default_factory=lambda: [0] * 24)
    count: int = 0
    latency_mean: float = 0.0
    latency_m2: float = 0.0
    categories: Counter = field(default_factory=Counter)
    signatures: Counter = field(default_factory=Counter)
    failure_rates: Dict[str, float] = field(default_factory=dict)
    observations: Deque[_Observation] = field(default_factory=deque)
    anomalies: Deque[Anomaly] = field(init=False)
    last_updated: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.anomalies = deque(maxlen=self.max_anomalies)

    @property
    def latency_stddev(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(self.latency_m2 / self.count)

    def merge(self, observation: _Observation) -> None:
        self.hourly[observation.timestamp.hour] += 1
        self.count += 1
        delta = observation.latency - self.latency_mean
        self.latency_mean += delta / self.count
        self.latency_m2 += delta * (observation.latency - self.latency_mean)
        self.categories[observation.category] += 1
        self.signatures.update(observation.signatures)
        previous = self.failure_rates.get(observation.category)
        if previous is None:
            self.failure_rates[observation.category] = observation.failure_rate
        else:
            self.failure_rates[observation.category] = (previous + observation.failure_rate) / 2
        self.observations.append(observation)
        self.last_updated = observation.timestamp

    def rebuild(self) -> None:
        kept = list(self.observations)
        self.hourly = [0] * 24
        self.count = 0
        self.latency_mean = 0.0
        self.latency_m2 = 0.0
        self.categories = Counter()
        self.signatures = Counter()
        self.failure_rates = {}
        self.observations = deque()
        self.last_updated = None
        for observation in kept:
            self.merge(observation)


class BaselineModel:
    """Learns per-subject "normal" behavior and flags deviations.

    Every observation is evaluated against the baseline as it stood
    *before* the observation, then merged into it. Ageing out happens only
    in :meth:`sweep`, never on reads.
    """

    def __init__(
        self,
        thresholds: Optional[AnomalyThresholds] = None,
        *,
        learning_period: timedelta = timedelta(days=7),
        clock: Clock = utcnow,
    ) -> None:
        self._thresholds = thresholds or AnomalyThresholds()
        self._learning_period = learning_period
        self._clock = clock
        self._subjects: SubjectRegistry[_Baseline] = SubjectRegistry(
            lambda _subject: _Baseline(max_anomalies=self._thresholds.max_anomalies), name="baseline"
        )

    @property
    def thresholds(self) -> AnomalyThresholds:
        return self._thresholds

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def observe(
        self,
        subject_id: str,
        category: str,
        records: Sequence[Union[ResponseRecord, str]],
        latency_ms: float,
        *,
        success_rate: float = 100.0,
        at: Optional[datetime] = None,
    ) -> Tuple[Anomaly, ...]:
        timestamp = ensure_aware(at) if at is not None else self._clock()
        parsed = [ResponseRecord.parse(record) for record in records]
        observation = _Observation(
            timestamp=timestamp,
            category=category,
            signatures=tuple(record.signature for record in parsed),
            latency=float(latency_ms),
            failure_rate=max(0.0, min(1.0, (100.0 - success_rate) / 100.0)),
        )

        handle = self._subjects.handle(subject_id)
        with handle.lock:
            baseline = handle.state
            found: List[Anomaly] = []
            for kind, description, evidence in self._evaluate(baseline, observation, parsed):
                found.append(
                    Anomaly(
                        kind=kind,
                        severity=self._thresholds.severity_for(kind),
                        description=description,
                        timestamp=timestamp,
                        subject_id=subject_id,
                        evidence=tuple(evidence),
                    )
                )
            baseline.merge(observation)
            baseline.anomalies.extend(found)

        for anomaly in found:
            if anomaly.severity == "critical":
                logger.warning("%s anomaly for %s: %s", anomaly.kind, subject_id, anomaly.description)
            else:
                logger.debug("%s anomaly for %s: %s", anomaly.kind, subject_id, anomaly.description)
        return tuple(found)

    def anomalies(
        self,
        subject_id: str,
        *,
        kind: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> Tuple[Anomaly, ...]:
        """Return stored anomalies for ``subject_id``, newest first."""

        handle = self._subjects.find(subject_id)
        if handle is None:
            return ()
        with handle.lock:
            stored = list(handle.state.anomalies)
        stored.reverse()
        return tuple(
            anomaly
            for anomaly in stored
            if (kind is None or anomaly.kind == kind) and (severity is None or anomaly.severity == severity)
        )

    def anomaly_stats(self, subject_id: str) -> Dict[str, object]:
        anomalies = self.anomalies(subject_id)
        by_severity = {level: 0 for level in SEVERITIES}
        by_kind = {kind: 0 for kind in ANOMALY_KINDS}
        for anomaly in anomalies:
            by_severity[anomaly.severity] += 1
            by_kind[anomaly.kind] += 1
        return {
            "total": len(anomalies),
            "by_severity": by_severity,
            "by_kind": by_kind,
            "last_detected": anomalies[0].timestamp.isoformat() if anomalies else None,
        }

    def baseline(self, subject_id: str, *, strict: bool = False) -> Optional[BaselineSnapshot]:
        """Snapshot of a subject's baseline.

        Unknown subjects return ``None`` unless ``strict`` is set, in which
        case :class:`~riskcore.errors.SubjectNotFound` is raised.
        """

        handle = self._subjects.get(subject_id) if strict else self._subjects.find(subject_id)
        if handle is None:
            return None
        with handle.lock:
            state = handle.state
            return BaselineSnapshot(
                subject_id=subject_id,
                hourly_volume=tuple(state.hourly),
                sample_count=state.count,
                latency_mean=state.latency_mean,
                latency_stddev=state.latency_stddev,
                categories=dict(state.categories),
                signatures=dict(state.signatures),
                failure_rates=dict(state.failure_rates),
                anomaly_count=len(state.anomalies),
                last_updated=state.last_updated,
            )

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Drop anomalies and observations older than the learning period.

        Returns the number of removed entries. Subjects left empty are
        forgotten.
        """

        cutoff = (ensure_aware(now) if now is not None else self._clock()) - self._learning_period
        removed = 0
        for handle in self._subjects:
            with handle.lock:
                state = handle.state
                before = len(state.anomalies)
                kept = [anomaly for anomaly in state.anomalies if anomaly.timestamp >= cutoff]
                state.anomalies.clear()
                state.anomalies.extend(kept)
                removed += before - len(kept)

                stale = 0
                while state.observations and state.observations[0].timestamp < cutoff:
                    state.observations.popleft()
                    stale += 1
                if stale:
                    removed += stale
                    state.rebuild()
                empty = not state.observations and not state.anomalies
            if empty:
                self._subjects.discard(handle.subject_id)
        if removed:
            logger.debug("Baseline sweep removed %d entries", removed)
        return removed

    def clear(self, subject_id: Optional[str] = None) -> None:
        if subject_id is None:
            self._subjects.clear()
        else:
            self._subjects.discard(subject_id)

    def subjects(self) -> Tuple[str, ...]:
        return self._subjects.subjects()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _evaluate(
        self,
        baseline: _Baseline,
        observation: _Observation,
        records: Sequence[ResponseRecord],
    ) -> Iterable[Tuple[str, str, List[str]]]:
        thresholds = self._thresholds

        if baseline.count >= thresholds.min_history:
            limit = baseline.latency_mean + thresholds.timing * baseline.latency_stddev
            if observation.latency > limit:
                yield (
                    "timing",
                    "Unusual response time detected",
                    [
                        f"Response time: {observation.latency:.0f}ms",
                        f"Baseline: {baseline.latency_mean:.1f}ms +/- {baseline.latency_stddev:.1f}ms",
                    ],
                )

        if baseline.count >= thresholds.min_history:
            days = _observed_days(baseline.observations, observation.timestamp, self._learning_period)
            hourly_mean = baseline.hourly[observation.timestamp.hour] / days
            current = 1 + _count_in_hour(baseline.observations, observation.timestamp)
            if hourly_mean > 0 and current > hourly_mean * (1 + thresholds.query_rate):
                yield (
                    "volume",
                    "Unusual query volume detected",
                    [f"{current} queries this hour", f"Hourly mean: {hourly_mean:.2f}"],
                )

        total = sum(baseline.signatures.values())
        if records and total > 0:
            rare = [
                record.signature
                for record in records
                if baseline.signatures.get(record.signature, 0) / total < thresholds.pattern
            ]
            if len(rare) / len(records) > thresholds.pattern:
                yield (
                    "resolution",
                    "Unusual resolution pattern detected",
                    [f"Rare response {signature}" for signature in rare],
                )

        category_count = baseline.categories.get(observation.category, 0)
        if category_count >= thresholds.min_history:
            previous = baseline.failure_rates.get(observation.category, 0.0)
            if observation.failure_rate - previous > thresholds.failure:
                yield (
                    "pattern",
                    "Failure rate increased above baseline",
                    [
                        f"Failure rate: {observation.failure_rate:.0%}",
                        f"Baseline failure rate for {observation.category}: {previous:.0%}",
                    ],
                )

        tunneling = _tunneling_evidence(records, thresholds)
        if tunneling:
            yield ("security", "Possible tunneling detected", tunneling)

        size = sum(len(record.value) for record in records)
        if size > thresholds.max_response_size:
            yield (
                "security",
                "Possible amplification attack",
                [
                    f"Response size {size} bytes exceeds {thresholds.max_response_size}",
                    f"Query type {observation.category}",
                ],
            )

        if total >= thresholds.min_history:
            unseen = [record.signature for record in records if record.signature not in baseline.signatures]
            if unseen:
                yield (
                    "security",
                    "Possible cache poisoning attempt",
                    [f"Unseen response {signature}" for signature in unseen],
                )


def shannon_entropy(value: str) -> float:
    if not value:
        return 0.0
    counts = Counter(value)
    length = len(value)
    return -sum((count / length) * math.log2(count / length) for count in counts.values())


def _observed_days(observations: Deque[_Observation], at: datetime, learning_period: timedelta) -> int:
    """Whole days of history behind ``at``, between one and the learning period."""

    cap = max(1, math.ceil(learning_period / timedelta(days=1)))
    if not observations:
        return 1
    span = math.ceil((at - observations[0].timestamp) / timedelta(days=1))
    return min(cap, max(1, span))


def _count_in_hour(observations: Deque[_Observation], at: datetime) -> int:
    start = at.replace(minute=0, second=0, microsecond=0)
    end = start + timedelta(hours=1)
    count = 0
    for observation in reversed(observations):
        if observation.timestamp < start:
            break
        if observation.timestamp < end:
            count += 1
    return count


def _tunneling_evidence(records: Sequence[ResponseRecord], thresholds: AnomalyThresholds) -> List[str]:
    evidence: List[str] = []
    for record in records:
        if len(record.value) > thresholds.max_value_length:
            evidence.append(f"Long {record.type or 'record'} value ({len(record.value)} chars)")
        entropy = shannon_entropy(record.value)
        if entropy > thresholds.entropy:
            evidence.append(f"High entropy ({entropy:.2f}) in {record.type or 'record'} value")
        if record.type == "A" and any(len(label) > thresholds.max_label_length for label in record.value.split(".")):
            evidence.append(f"Oversized label in A record {record.value[:64]}")
    return evidence


__all__ = [
    "ANOMALY_KINDS",
    "Anomaly",
    "BaselineModel",
    "BaselineSnapshot",
    "ResponseRecord",
    "shannon_entropy",
]
