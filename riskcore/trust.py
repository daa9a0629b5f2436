"""Device and session trust scoring."""
from __future__ import annotations

import hashlib
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Mapping, Optional, Tuple

from .config import TrustPolicy
from .models import AssessmentContext, DeviceInfo, GeoPoint, NetworkDescriptor
from .state import Clock, SubjectRegistry, ensure_aware, utcnow
from .utils.geo import haversine_km

logger = logging.getLogger(__name__)

EMULATOR_SIGNS = ("android simulator", "ios simulator", "genymotion", "nox", "bluestacks")
MODERN_BROWSERS = {"chrome": 90, "firefox": 88, "safari": 14}

RISK_POINTS = {
    "unknown_device": 2,
    "location_mismatch": 2,
    "time_mismatch": 1,
    "rapid_location_change": 3,
    "multiple_failed_attempts": 3,
    "vpn": 1,
}


def fingerprint(device: DeviceInfo) -> str:
    """Stable identifier for a device's reported characteristics."""

    material = json.dumps(
        {
            "browser": f"{device.browser} {device.browser_version or ''}".strip(),
            "os": device.os,
            "device": device.device_label,
            "screen": device.screen_resolution,
            "timezone": device.timezone or "",
        },
        sort_keys=True,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class KnownDevice:
    device_id: str
    browser: str
    os: str
    device_label: str
    last_seen: datetime
    login_times: Tuple[datetime, ...]
    login_count: int
    location: Optional[GeoPoint]

    def as_dict(self) -> Dict[str, object]:
        return {
            "device_id": self.device_id,
            "browser": self.browser,
            "os": self.os,
            "device_label": self.device_label,
            "last_seen": self.last_seen.isoformat(),
            "login_times": [stamp.isoformat() for stamp in self.login_times],
            "login_count": self.login_count,
            "location": self.location.model_dump(mode="json") if self.location else None,
        }


@dataclass
class _DeviceRecord:
    device_id: str
    browser: str
    os: str
    device_label: str
    last_seen: datetime
    login_times: Deque[datetime]
    login_count: int = 0
    location: Optional[GeoPoint] = None

    def snapshot(self) -> KnownDevice:
        return KnownDevice(
            device_id=self.device_id,
            browser=self.browser,
            os=self.os,
            device_label=self.device_label,
            last_seen=self.last_seen,
            login_times=tuple(self.login_times),
            login_count=self.login_count,
            location=self.location,
        )


class DeviceRegistry:
    """Per-subject record of devices that have completed a login."""

    def __init__(self, *, max_login_times: int = 10, clock: Clock = utcnow) -> None:
        self._max_login_times = max_login_times
        self._clock = clock
        self._subjects: SubjectRegistry[Dict[str, _DeviceRecord]] = SubjectRegistry(
            lambda _subject: {}, name="devices"
        )

    def register_device(
        self,
        subject_id: str,
        device: DeviceInfo,
        *,
        location: Optional[GeoPoint] = None,
        at: Optional[datetime] = None,
    ) -> KnownDevice:
        """Remember ``device`` for ``subject_id``, replacing any previous entry."""

        now = ensure_aware(at) if at is not None else self._clock()
        device_id = fingerprint(device)
        handle = self._subjects.handle(subject_id)
        with handle.lock:
            record = _DeviceRecord(
                device_id=device_id,
                browser=device.browser,
                os=device.os,
                device_label=device.device_label,
                last_seen=now,
                login_times=deque(maxlen=self._max_login_times),
                location=_stamped(location, now),
            )
            handle.state[device_id] = record
            logger.info("Registered device %s for %s", device_id[:12], subject_id)
            return record.snapshot()

    def record_login(
        self,
        subject_id: str,
        device: DeviceInfo,
        *,
        location: Optional[GeoPoint] = None,
        at: Optional[datetime] = None,
    ) -> KnownDevice:
        """Note a successful login, registering the device on first sight."""

        now = ensure_aware(at) if at is not None else self._clock()
        device_id = fingerprint(device)
        handle = self._subjects.handle(subject_id)
        with handle.lock:
            if device_id not in handle.state:
                self.register_device(subject_id, device, location=location, at=now)
            record = handle.state[device_id]
            record.last_seen = now
            record.login_times.append(now)
            record.login_count += 1
            if location is not None:
                record.location = _stamped(location, now)
            return record.snapshot()

    def lookup(self, subject_id: str, device: DeviceInfo) -> Optional[KnownDevice]:
        handle = self._subjects.find(subject_id)
        if handle is None:
            return None
        with handle.lock:
            record = handle.state.get(fingerprint(device))
            return record.snapshot() if record else None

    def devices(self, subject_id: str) -> Tuple[KnownDevice, ...]:
        handle = self._subjects.find(subject_id)
        if handle is None:
            return ()
        with handle.lock:
            return tuple(record.snapshot() for record in handle.state.values())

    def last_location(self, subject_id: str) -> Optional[GeoPoint]:
        """Most recently recorded location across all of the subject's devices."""

        located = [device for device in self.devices(subject_id) if device.location is not None]
        if not located:
            return None
        latest = max(located, key=lambda device: ensure_aware(device.location.timestamp or device.last_seen))
        return latest.location

    def forget(self, subject_id: str) -> None:
        self._subjects.discard(subject_id)


def _stamped(location: Optional[GeoPoint], at: datetime) -> Optional[GeoPoint]:
    if location is None or location.timestamp is not None:
        return location
    return location.model_copy(update={"timestamp": at})


@dataclass(frozen=True)
class TrustMetadata:
    last_login_time: Optional[datetime]
    login_count: int
    failed_attempts: int
    unusual_activity_flags: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, object]:
        return {
            "last_login_time": self.last_login_time.isoformat() if self.last_login_time else None,
            "login_count": self.login_count,
            "failed_attempts": self.failed_attempts,
            "unusual_activity_flags": list(self.unusual_activity_flags),
        }


@dataclass(frozen=True)
class TrustScore:
    """Device trust verdict; higher scores are more trustworthy."""

    score: int
    factors: Mapping[str, bool]
    risk_level: str
    metadata: TrustMetadata
    requires_step_up: bool
    timestamp: datetime
    device_id: str = ""
    risk_points: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "score": self.score,
            "factors": dict(self.factors),
            "risk_level": self.risk_level,
            "metadata": self.metadata.as_dict(),
            "requires_step_up": self.requires_step_up,
            "timestamp": self.timestamp.isoformat(),
            "device_id": self.device_id,
        }


@dataclass
class _TrustChecks:
    factors: Dict[str, bool] = field(default_factory=dict)
    rapid_location_change: bool = False
    multiple_failed_attempts: bool = False
    vpn: bool = False


class TrustScorer:
    """Scores how much a device/session can be trusted."""

    def __init__(
        self,
        policy: Optional[TrustPolicy] = None,
        registry: Optional[DeviceRegistry] = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._policy = policy or TrustPolicy()
        self._clock = clock
        self._registry = registry or DeviceRegistry(clock=clock)

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def policy(self) -> TrustPolicy:
        return self._policy

    def assess(
        self,
        subject_id: str,
        context: AssessmentContext,
        *,
        failed_attempts: int = 0,
        network: Optional[NetworkDescriptor] = None,
    ) -> TrustScore:
        known = self._registry.lookup(subject_id, context.device)
        network = network if network is not None else context.network
        checks = self._checks(subject_id, context, known, failed_attempts, network)

        score = sum(weight for name, weight in self._policy.weights.items() if checks.factors.get(name))
        points = _risk_points(checks)
        risk_level = "high" if points >= 6 else "medium" if points >= 3 else "low"
        requires_step_up = score < self._policy.step_up_below or risk_level == "high"

        result = TrustScore(
            score=int(score),
            factors=dict(checks.factors),
            risk_level=risk_level,
            metadata=TrustMetadata(
                last_login_time=known.last_seen if known else None,
                login_count=known.login_count if known else 0,
                failed_attempts=failed_attempts,
                unusual_activity_flags=_unusual_activity_flags(checks),
            ),
            requires_step_up=requires_step_up,
            timestamp=self._clock(),
            device_id=fingerprint(context.device),
            risk_points=points,
        )
        logger.debug("Trust for %s: %d (%s)", subject_id, result.score, risk_level)
        return result

    def register_device(self, subject_id: str, context: AssessmentContext) -> KnownDevice:
        return self._registry.register_device(
            subject_id, context.device, location=context.location, at=context.timestamp
        )

    def record_login(self, subject_id: str, context: AssessmentContext) -> KnownDevice:
        return self._registry.record_login(subject_id, context.device, location=context.location, at=context.timestamp)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _checks(
        self,
        subject_id: str,
        context: AssessmentContext,
        known: Optional[KnownDevice],
        failed_attempts: int,
        network: Optional[NetworkDescriptor],
    ) -> _TrustChecks:
        policy = self._policy
        now = context.timestamp
        device = context.device

        location_match = False
        if known is not None and known.location is not None and context.location is not None:
            distance = haversine_km(context.location.lat, context.location.lng, known.location.lat, known.location.lng)
            location_match = distance < policy.location_match_km

        checks = _TrustChecks(
            factors={
                "known_device": known is not None,
                "recent_activity": known is not None and now - known.last_seen < policy.recent_activity,
                "location_match": location_match,
                "platform_security": is_modern_browser(device) and device.secure_context,
                "browser_security": device.secure_context,
                "network_security": network is None or not _suspicious_network(network),
                "time_pattern_match": self._time_pattern_match(known, now),
                "device_integrity": not is_emulator(device),
            },
            rapid_location_change=self._rapid_location_change(subject_id, context),
            multiple_failed_attempts=failed_attempts > 3,
            vpn=bool(network and network.vpn_detected),
        )
        return checks

    def _time_pattern_match(self, known: Optional[KnownDevice], now: datetime) -> bool:
        if known is None or len(known.login_times) < self._policy.min_login_history:
            return True
        return now.hour in {stamp.hour for stamp in known.login_times}

    def _rapid_location_change(self, subject_id: str, context: AssessmentContext) -> bool:
        if context.location is None:
            return False
        previous = self._registry.last_location(subject_id)
        if previous is None or previous.timestamp is None:
            return False
        current_time = context.location.timestamp or context.timestamp
        distance = haversine_km(context.location.lat, context.location.lng, previous.lat, previous.lng)
        hours = (ensure_aware(current_time) - ensure_aware(previous.timestamp)).total_seconds() / 3600
        if hours <= 0:
            return distance > self._policy.location_match_km
        return distance / hours > self._policy.max_speed_kmh


def is_modern_browser(device: DeviceInfo) -> bool:
    minimum = MODERN_BROWSERS.get(device.browser.lower())
    if minimum is None:
        return False
    return _major_version(device.browser_version) >= minimum


def is_emulator(device: DeviceInfo) -> bool:
    haystacks = (device.user_agent.lower(), device.device_label.lower())
    return any(sign in haystack for sign in EMULATOR_SIGNS for haystack in haystacks)


def _major_version(version: Optional[str]) -> int:
    if not version:
        return 0
    head = version.split(".", 1)[0]
    return int(head) if head.isdigit() else 0


def _suspicious_network(network: NetworkDescriptor) -> bool:
    return (
        network.vpn_detected
        or network.proxy_detected
        or network.tor_detected
        or network.threat_intel.malicious_activity
    )


def _risk_points(checks: _TrustChecks) -> int:
    points = 0
    if not checks.factors["known_device"]:
        points += RISK_POINTS["unknown_device"]
    if not checks.factors["location_match"]:
        points += RISK_POINTS["location_mismatch"]
    if not checks.factors["time_pattern_match"]:
        points += RISK_POINTS["time_mismatch"]
    if checks.rapid_location_change:
        points += RISK_POINTS["rapid_location_change"]
    if checks.multiple_failed_attempts:
        points += RISK_POINTS["multiple_failed_attempts"]
    if checks.vpn:
        points += RISK_POINTS["vpn"]
    return points


def _unusual_activity_flags(checks: _TrustChecks) -> Tuple[str, ...]:
    flags: List[str] = []
    if not checks.factors["known_device"]:
        flags.append("New device detected")
    if not checks.factors["location_match"]:
        flags.append("Unusual location")
    if not checks.factors["time_pattern_match"]:
        flags.append("Unusual login time")
    if checks.rapid_location_change:
        flags.append("Rapid location change")
    if checks.multiple_failed_attempts:
        flags.append("Multiple failed attempts")
    if checks.vpn:
        flags.append("VPN detected")
    if not checks.factors["device_integrity"]:
        flags.append("Device integrity check failed")
    return tuple(flags)


__all__ = [
    "DeviceRegistry",
    "KnownDevice",
    "TrustMetadata",
    "TrustScore",
    "TrustScorer",
    "fingerprint",
    "is_emulator",
    "is_modern_browser",
]
