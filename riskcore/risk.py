"""Weighted multi-factor risk scoring."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .baseline import Anomaly
from .config import FactorWeights, LevelThresholds
from .models import AssessmentContext, DeviceInfo, NetworkDescriptor
from .state import Clock, utcnow
from .utils.geo import distance_band_score, nearest_distance_km

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
CONCERN_THRESHOLD = 0.6

LOCATION = "Location"
TIME_PATTERN = "Time Pattern"
DEVICE_SECURITY = "Device Security"
BEHAVIORAL_PATTERN = "Behavioral Pattern"
HISTORICAL_PATTERN = "Historical Pattern"
NETWORK = "Network"
ANOMALY = "Anomaly"

NETWORK_POINTS = {
    "vpn": 20,
    "proxy": 15,
    "tor": 25,
    "datacenter": 10,
    "malicious": 30,
}

SEVERITY_SCORES = {"low": 0.25, "medium": 0.5, "high": 0.75, "critical": 1.0}

LEVEL_ADVISORIES = (
    "Enable two-factor authentication",
    "Review recent account activity",
    "Update password",
)

FACTOR_ADVISORIES: Mapping[str, Tuple[str, ...]] = {
    LOCATION: ("Verify your location through additional authentication",),
    TIME_PATTERN: ("Login attempt outside normal hours - additional verification recommended",),
    DEVICE_SECURITY: ("Ensure your device and browser are up to date", "Use a secure connection"),
    BEHAVIORAL_PATTERN: ("Unusual behavior detected - additional verification may be required",),
    HISTORICAL_PATTERN: ("Review and verify recent account activity",),
    NETWORK: ("High-risk network detected. Consider using a trusted network connection",),
    ANOMALY: ("Recent anomalies detected - review flagged activity",),
}


@dataclass(frozen=True)
class RiskFactor:
    name: str
    weight: float
    score: float
    explanation: str

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "weight": self.weight,
            "score": self.score,
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class RiskAssessment:
    """Fused risk verdict for one assessment."""

    score: int
    level: str
    factors: Tuple[RiskFactor, ...]
    recommendations: Tuple[str, ...]
    timestamp: datetime
    subject_id: Optional[str] = None

    def factor(self, name: str) -> Optional[RiskFactor]:
        for factor in self.factors:
            if factor.name == name:
                return factor
        return None

    def as_dict(self) -> Dict[str, object]:
        return {
            "score": self.score,
            "level": self.level,
            "factors": [factor.as_dict() for factor in self.factors],
            "recommendations": list(self.recommendations),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class _Signals:
    context: AssessmentContext
    network: Optional[NetworkDescriptor] = None
    network_error: Optional[str] = None
    anomalies: Optional[Sequence[Anomaly]] = None
    failed_attempts: Optional[int] = None


Evaluator = Callable[[_Signals], Optional[Tuple[float, str]]]


class RiskScorer:
    """Combines independent factor evaluations into a 0-100 score.

    Each evaluator returns ``None`` when its factor does not apply, which
    removes the factor from both the numerator and the weight sum.
    """

    def __init__(
        self,
        weights: Optional[FactorWeights] = None,
        levels: Optional[LevelThresholds] = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._weights = weights or FactorWeights()
        self._levels = levels or LevelThresholds()
        self._clock = clock
        self._evaluators: Tuple[Tuple[str, float, Evaluator], ...] = (
            (LOCATION, self._weights.location, _location_risk),
            (TIME_PATTERN, self._weights.time, _time_risk),
            (DEVICE_SECURITY, self._weights.device, _device_risk),
            (BEHAVIORAL_PATTERN, self._weights.behavioral, _behavioral_risk),
            (HISTORICAL_PATTERN, self._weights.historical, _historical_risk),
            (NETWORK, self._weights.network, _network_risk),
            (ANOMALY, self._weights.anomaly, _anomaly_risk),
        )

    @property
    def levels(self) -> LevelThresholds:
        return self._levels

    def classify(self, score: float) -> str:
        return self._levels.classify(score)

    def assess(
        self,
        subject_id: str,
        context: AssessmentContext,
        *,
        network: Optional[NetworkDescriptor] = None,
        network_error: Optional[str] = None,
        anomalies: Optional[Sequence[Anomaly]] = None,
        failed_attempts: Optional[int] = None,
    ) -> RiskAssessment:
        signals = _Signals(
            context=context,
            network=network if network is not None else context.network,
            network_error=network_error,
            anomalies=anomalies,
            failed_attempts=failed_attempts,
        )

        factors: List[RiskFactor] = []
        for name, weight, evaluator in self._evaluators:
            result = evaluator(signals)
            if result is None:
                continue
            score, explanation = result
            factors.append(
                RiskFactor(name=name, weight=weight, score=round(min(1.0, max(0.0, score)), 4), explanation=explanation)
            )

        total_weight = sum(factor.weight for factor in factors)
        weighted = sum(factor.score * factor.weight for factor in factors)
        score = int(round(100 * weighted / total_weight)) if total_weight else 0
        score = max(0, min(100, score))
        level = self._levels.classify(score)

        assessment = RiskAssessment(
            score=score,
            level=level,
            factors=tuple(factors),
            recommendations=recommendations_for(factors, level),
            timestamp=self._clock(),
            subject_id=subject_id,
        )
        logger.debug("Risk for %s: %d (%s) from %d factors", subject_id, score, level, len(factors))
        return assessment


def recommendations_for(factors: Sequence[RiskFactor], level: str) -> Tuple[str, ...]:
    """Deterministic, de-duplicated advice for a scored factor set."""

    advice: List[str] = []
    if level in ("high", "critical"):
        advice.extend(LEVEL_ADVISORIES)
    for factor in factors:
        if factor.score > CONCERN_THRESHOLD:
            advice.extend(FACTOR_ADVISORIES.get(factor.name, ()))
    return tuple(dict.fromkeys(advice))


# ----------------------------------------------------------------------
# Factor evaluators
# ----------------------------------------------------------------------
def _location_risk(signals: _Signals) -> Optional[Tuple[float, str]]:
    location = signals.context.location
    if location is None:
        return None
    known = [(point.lat, point.lng) for point in signals.context.history.known_locations]
    distance = nearest_distance_km(location.lat, location.lng, known)
    if distance is None:
        return NEUTRAL_SCORE, "No historical locations to compare against"
    return distance_band_score(distance), f"Login location is {round(distance)}km from nearest known location"


def _time_risk(signals: _Signals) -> Optional[Tuple[float, str]]:
    hours = signals.context.history.common_login_hours
    if not hours:
        return NEUTRAL_SCORE, "No historical login time data available"
    current = signals.context.timestamp.hour
    if current in hours:
        return 0.1, "Login during common hours"
    if any(_hour_distance(current, hour) <= 1 for hour in hours):
        return 0.3, "Login near common hours"
    return 0.8, "Login during unusual hours"


def _hour_distance(first: int, second: int) -> int:
    gap = abs(first - second) % 24
    return min(gap, 24 - gap)


def _device_risk(signals: _Signals) -> Optional[Tuple[float, str]]:
    device = signals.context.device
    score = 0.0
    concerns: List[str] = []
    if not device.secure_context:
        score += 0.3
        concerns.append("Non-secure context")
    if device.hardware_concurrency < 2:
        score += 0.2
        concerns.append("Low hardware concurrency (possible VM)")
    if device.device_memory is not None and device.device_memory < 4:
        score += 0.1
        concerns.append("Low device memory")
    for reason in platform_inconsistencies(device):
        score += 0.3
        concerns.append(reason)
    return min(1.0, score), "; ".join(concerns) or "No device security concerns"


def platform_inconsistencies(device: DeviceInfo) -> List[str]:
    """Return the reasons a device's declared platform looks inconsistent."""

    platform = device.platform.lower()
    os_name = device.os.lower()
    reasons: List[str] = []
    mismatch = (
        ("win" in platform and "windows" not in os_name)
        or ("mac" in platform and "mac" not in os_name)
        or ("linux" in platform and "linux" not in os_name and "android" not in os_name)
    )
    if mismatch:
        reasons.append("Platform/OS mismatch")
    mobile = "mobile" in platform or device.device_label.lower() == "mobile"
    if mobile != device.touch_support:
        reasons.append("Touch support inconsistency")
    return reasons


def _behavioral_risk(signals: _Signals) -> Optional[Tuple[float, str]]:
    behavior = signals.context.behavior
    if behavior is None:
        return None
    score = 0.0
    concerns: List[str] = []
    if behavior.typing_consistency and behavior.typing_consistency < 0.6:
        score += 0.3
        concerns.append("Inconsistent typing pattern")
    if behavior.mouse_movement_pattern == "erratic":
        score += 0.2
        concerns.append("Erratic mouse movement")
    if behavior.interaction_frequency and behavior.interaction_frequency < 0.3:
        score += 0.2
        concerns.append("Low interaction frequency")
    return min(1.0, score), "; ".join(concerns) or "Normal behavioral patterns"


def _historical_risk(signals: _Signals) -> Optional[Tuple[float, str]]:
    history = signals.context.history
    failed = max(history.failed_attempts, signals.failed_attempts or 0)
    score = 0.0
    concerns: List[str] = []
    if failed > 3:
        score += 0.3
        concerns.append(f"{failed} recent failed attempts")
    if history.last_login_time is not None:
        last_login = history.last_login_time
        if last_login.tzinfo is None:
            last_login = last_login.replace(tzinfo=signals.context.timestamp.tzinfo)
        if signals.context.timestamp - last_login > timedelta(hours=168):
            score += 0.2
            concerns.append("First login in over a week")
    total = failed + history.successful_logins
    if total > 0 and history.successful_logins / total < 0.7:
        score += 0.2
        concerns.append("Low login success rate")
    return min(1.0, score), "; ".join(concerns) or "Normal historical patterns"


def network_points(network: NetworkDescriptor) -> Tuple[int, List[str]]:
    """Sum reputation points for ``network`` (capped at 100)."""

    points = 0
    concerns: List[str] = []
    if network.vpn_detected:
        points += NETWORK_POINTS["vpn"]
        concerns.append("VPN detected")
    if network.proxy_detected:
        points += NETWORK_POINTS["proxy"]
        concerns.append("Proxy detected")
    if network.tor_detected:
        points += NETWORK_POINTS["tor"]
        concerns.append("Tor exit node")
    if network.datacenter_ip:
        points += NETWORK_POINTS["datacenter"]
        concerns.append("Datacenter address")
    if network.threat_intel.malicious_activity:
        points += NETWORK_POINTS["malicious"]
        threats = ", ".join(network.threat_intel.threat_types) or "unspecified"
        concerns.append(f"Threat intelligence hit ({threats})")
    return min(100, points), concerns


def _network_risk(signals: _Signals) -> Optional[Tuple[float, str]]:
    if signals.network is None:
        if signals.network_error:
            return NEUTRAL_SCORE, f"Network reputation unavailable: {signals.network_error}"
        return None
    points, concerns = network_points(signals.network)
    return points / 100.0, "; ".join(concerns) or "No network reputation concerns"


def _anomaly_risk(signals: _Signals) -> Optional[Tuple[float, str]]:
    if signals.anomalies is None:
        return None
    if not signals.anomalies:
        return 0.0, "No recent anomalies"
    worst = max(signals.anomalies, key=lambda anomaly: SEVERITY_SCORES.get(anomaly.severity, 0.0))
    return (
        SEVERITY_SCORES.get(worst.severity, 0.0),
        f"{len(signals.anomalies)} recent anomalies, worst: {worst.severity} {worst.kind}",
    )


__all__ = [
    "CONCERN_THRESHOLD",
    "NEUTRAL_SCORE",
    "RiskAssessment",
    "RiskFactor",
    "RiskScorer",
    "network_points",
    "platform_inconsistencies",
    "recommendations_for",
]
