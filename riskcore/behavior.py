"""Behavioral profiling from typing and pointer timing."""
from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from statistics import mean, pvariance
from typing import Deque, Dict, List, Literal, Optional, Sequence, Tuple

from .state import Clock, Sample, SubjectRegistry, utcnow

logger = logging.getLogger(__name__)

MovementShape = Literal["direct", "curved", "erratic"]
ClickKind = Literal["single", "double", "right"]

MINIMUM_KEY_SAMPLES = 10
MAX_VARIANCE = 10_000.0
_SHAPE_SCORES = {"direct": 1.0, "curved": 0.7, "erratic": 0.3}


@dataclass
class KeyTiming:
    key: str
    press: float
    release: float = 0.0
    flight: Optional[float] = None

    @property
    def hold(self) -> float:
        return self.release - self.press if self.release else 0.0


@dataclass(frozen=True)
class PointerMove:
    x: float
    y: float
    at: float
    velocity: float


@dataclass(frozen=True)
class PointerClick:
    x: float
    y: float
    at: float
    kind: ClickKind


@dataclass(frozen=True)
class TypingPattern:
    hold_times: Tuple[float, ...]
    flight_times: Tuple[float, ...]
    average_hold: float
    average_flight: float
    variance: float
    consistency: float

    @property
    def key_count(self) -> int:
        return len(self.hold_times)

    def as_dict(self) -> dict[str, object]:
        return {
            "hold_times": list(self.hold_times),
            "flight_times": list(self.flight_times),
            "average_hold": self.average_hold,
            "average_flight": self.average_flight,
            "variance": self.variance,
            "consistency": self.consistency,
        }


@dataclass(frozen=True)
class MousePattern:
    movements: Tuple[PointerMove, ...]
    clicks: Tuple[PointerClick, ...]
    average_velocity: float
    shape: MovementShape

    def as_dict(self) -> dict[str, object]:
        return {
            "movements": len(self.movements),
            "clicks": len(self.clicks),
            "average_velocity": self.average_velocity,
            "shape": self.shape,
        }


@dataclass(frozen=True)
class DeviceCharacteristics:
    screen_resolution: str = ""
    touch_points: int = 0
    hardware_concurrency: int = 0
    color_depth: Optional[int] = None
    pixel_ratio: Optional[float] = None


@dataclass(frozen=True)
class BehavioralProfile:
    """Read-only view of a subject's behavioral profile."""

    subject_id: str
    typing_patterns: Tuple[Tuple[datetime, TypingPattern], ...]
    mouse_patterns: Tuple[MousePattern, ...]
    device: DeviceCharacteristics
    confidence_score: float

    def as_dict(self) -> dict[str, object]:
        return {
            "subject_id": self.subject_id,
            "typing_patterns": {stamp.isoformat(): pattern.as_dict() for stamp, pattern in self.typing_patterns},
            "mouse_patterns": [pattern.as_dict() for pattern in self.mouse_patterns],
            "device": self.device.__dict__,
            "confidence_score": self.confidence_score,
        }


@dataclass
class _StoredProfile:
    typing: Deque[Tuple[datetime, TypingPattern]]
    mouse: Deque[MousePattern]
    device: DeviceCharacteristics
    confidence: float = 0.0


@dataclass
class _SubjectBehavior:
    keystrokes: Deque[KeyTiming] = field(default_factory=lambda: deque(maxlen=200))
    movements: Deque[PointerMove] = field(default_factory=lambda: deque(maxlen=100))
    clicks: Deque[PointerClick] = field(default_factory=lambda: deque(maxlen=50))
    profile: Optional[_StoredProfile] = None


class BehavioralProfileStore:
    """Accumulates interaction samples into rolling per-subject profiles."""

    def __init__(self, *, max_history: int = 10, clock: Clock = utcnow) -> None:
        self._max_history = max_history
        self._clock = clock
        self._subjects: SubjectRegistry[_SubjectBehavior] = SubjectRegistry(
            lambda _subject: _SubjectBehavior(), name="behavior"
        )

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------
    def record_key_press(self, subject_id: str, key: str, at_ms: float) -> None:
        handle = self._subjects.handle(subject_id)
        with handle.lock:
            buffer = handle.state.keystrokes
            timing = KeyTiming(key=key, press=at_ms)
            if buffer and buffer[-1].release:
                timing.flight = at_ms - buffer[-1].release
            buffer.append(timing)

    def record_key_release(self, subject_id: str, key: str, at_ms: float) -> None:
        handle = self._subjects.handle(subject_id)
        with handle.lock:
            for timing in handle.state.keystrokes:
                if timing.key == key and not timing.release:
                    timing.release = at_ms
                    break

    def record_pointer_move(self, subject_id: str, x: float, y: float, at_ms: float) -> None:
        handle = self._subjects.handle(subject_id)
        with handle.lock:
            movements = handle.state.movements
            velocity = 0.0
            if movements:
                last = movements[-1]
                elapsed = at_ms - last.at
                if elapsed > 0:
                    velocity = math.hypot(x - last.x, y - last.y) / elapsed
            movements.append(PointerMove(x=x, y=y, at=at_ms, velocity=velocity))

    def record_click(self, subject_id: str, x: float, y: float, at_ms: float, kind: ClickKind = "single") -> None:
        handle = self._subjects.handle(subject_id)
        with handle.lock:
            handle.state.clicks.append(PointerClick(x=x, y=y, at=at_ms, kind=kind))

    def ingest(self, subject_id: str, sample: Sample) -> None:
        """Route a keystroke or pointer :class:`Sample` into the capture buffers."""

        payload = sample.payload
        if sample.kind == "keystroke":
            key = str(payload.get("key", ""))
            if "press" in payload:
                self.record_key_press(subject_id, key, float(payload["press"]))
            if "release" in payload:
                self.record_key_release(subject_id, key, float(payload["release"]))
        elif sample.kind == "pointer":
            x, y, at = float(payload.get("x", 0.0)), float(payload.get("y", 0.0)), float(payload.get("at", 0.0))
            click = payload.get("click")
            if click:
                self.record_click(subject_id, x, y, at, kind=str(click))  # type: ignore[arg-type]
            else:
                self.record_pointer_move(subject_id, x, y, at)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------
    def create_profile(
        self, subject_id: str, device: Optional[DeviceCharacteristics] = None
    ) -> BehavioralProfile:
        handle = self._subjects.handle(subject_id)
        with handle.lock:
            state = handle.state
            typing = _analyze_typing(state.keystrokes)
            mouse = _analyze_mouse(state.movements, state.clicks)
            stored = _StoredProfile(
                typing=deque([(self._clock(), typing)], maxlen=self._max_history),
                mouse=deque([mouse], maxlen=self._max_history),
                device=device or DeviceCharacteristics(),
                confidence=_confidence(typing, mouse),
            )
            state.profile = stored
            logger.info("Created behavioral profile for %s (confidence %.2f)", subject_id, stored.confidence)
            return _snapshot(subject_id, stored)

    def update_profile(self, subject_id: str) -> Optional[BehavioralProfile]:
        handle = self._subjects.find(subject_id)
        if handle is None:
            return None
        with handle.lock:
            state = handle.state
            if state.profile is None:
                return None
            typing = _analyze_typing(state.keystrokes)
            mouse = _analyze_mouse(state.movements, state.clicks)
            state.profile.typing.append((self._clock(), typing))
            state.profile.mouse.append(mouse)
            state.profile.confidence = _confidence(typing, mouse)
            return _snapshot(subject_id, state.profile)

    def profile(self, subject_id: str) -> Optional[BehavioralProfile]:
        handle = self._subjects.find(subject_id)
        if handle is None:
            return None
        with handle.lock:
            if handle.state.profile is None:
                return None
            return _snapshot(subject_id, handle.state.profile)

    def confidence(self, subject_id: str) -> Optional[float]:
        snapshot = self.profile(subject_id)
        return snapshot.confidence_score if snapshot else None

    def verify(self, subject_id: str) -> float:
        """Score how well the current capture buffers match the stored profile."""

        handle = self._subjects.find(subject_id)
        if handle is None:
            return 0.0
        with handle.lock:
            state = handle.state
            if state.profile is None:
                return 0.0
            typing = _analyze_typing(state.keystrokes)
            mouse = _analyze_mouse(state.movements, state.clicks)
            typing_match = _compare_typing(typing, [pattern for _, pattern in state.profile.typing])
            mouse_match = _compare_mouse(mouse, list(state.profile.mouse))
        return round(typing_match * 0.7 + mouse_match * 0.3, 4)

    def reset(self, subject_id: str) -> None:
        """Drop capture buffers and the stored profile (logout)."""

        self._subjects.discard(subject_id)

    def subjects(self) -> Tuple[str, ...]:
        return self._subjects.subjects()


def _snapshot(subject_id: str, stored: _StoredProfile) -> BehavioralProfile:
    return BehavioralProfile(
        subject_id=subject_id,
        typing_patterns=tuple(stored.typing),
        mouse_patterns=tuple(stored.mouse),
        device=stored.device,
        confidence_score=stored.confidence,
    )


def _analyze_typing(keystrokes: Sequence[KeyTiming]) -> TypingPattern:
    completed = [timing for timing in keystrokes if timing.release]
    holds = [timing.hold for timing in completed]
    flights = [timing.flight for timing in completed if timing.flight is not None]
    if not holds:
        return TypingPattern((), (), 0.0, 0.0, 0.0, 0.0)
    return TypingPattern(
        hold_times=tuple(holds),
        flight_times=tuple(flights),
        average_hold=mean(holds),
        average_flight=mean(flights) if flights else 0.0,
        variance=pvariance(holds),
        consistency=_consistency(holds, flights),
    )


def _consistency(holds: Sequence[float], flights: Sequence[float]) -> float:
    hold_consistency = max(0.0, 1.0 - pvariance(holds) / MAX_VARIANCE)
    if not flights:
        return hold_consistency
    flight_consistency = max(0.0, 1.0 - pvariance(flights) / MAX_VARIANCE)
    return (hold_consistency + flight_consistency) / 2


def _analyze_mouse(movements: Sequence[PointerMove], clicks: Sequence[PointerClick]) -> MousePattern:
    velocities = [move.velocity for move in movements]
    return MousePattern(
        movements=tuple(movements),
        clicks=tuple(clicks),
        average_velocity=mean(velocities) if velocities else 0.0,
        shape=_movement_shape(movements),
    )


def _movement_shape(movements: Sequence[PointerMove]) -> MovementShape:
    points = list(movements)
    if len(points) < 3:
        return "direct"
    changes = 0
    segments = 0
    for first, second, third in zip(points, points[1:], points[2:]):
        heading_a = math.atan2(second.y - first.y, second.x - first.x)
        heading_b = math.atan2(third.y - second.y, third.x - second.x)
        turn = abs(heading_b - heading_a)
        if turn > math.pi:
            turn = 2 * math.pi - turn
        if turn > math.pi / 4:
            changes += 1
        segments += 1
    ratio = changes / segments
    if ratio > 0.5:
        return "erratic"
    if ratio > 0.2:
        return "curved"
    return "direct"


def _confidence(typing: TypingPattern, mouse: MousePattern) -> float:
    score = 0.0
    if typing.key_count >= MINIMUM_KEY_SAMPLES:
        score += typing.consistency * 0.4
    score += _SHAPE_SCORES[mouse.shape] * 0.3
    complexity = (typing.key_count / 50 + len(mouse.movements) / 100) / 2
    score += min(1.0, complexity) * 0.3
    return round(min(1.0, score), 4)


def _relative_diff(current: float, stored: float) -> float:
    if stored == 0:
        return 0.0 if current == 0 else 1.0
    return abs(current - stored) / stored


def _compare_typing(current: TypingPattern, stored: Sequence[TypingPattern]) -> float:
    if not stored or current.key_count < MINIMUM_KEY_SAMPLES:
        return 0.0
    scores: List[float] = []
    for pattern in stored:
        distance = (
            _relative_diff(current.average_hold, pattern.average_hold) * 0.4
            + _relative_diff(current.average_flight, pattern.average_flight) * 0.4
            + abs(current.consistency - pattern.consistency) * 0.2
        )
        scores.append(max(0.0, min(1.0, 1.0 - distance)))
    return max(scores)


def _compare_mouse(current: MousePattern, stored: Sequence[MousePattern]) -> float:
    if not stored:
        return 0.0
    scores: List[float] = []
    for pattern in stored:
        shape_mismatch = 0.0 if current.shape == pattern.shape else 1.0
        distance = _relative_diff(current.average_velocity, pattern.average_velocity) * 0.7 + shape_mismatch * 0.3
        scores.append(max(0.0, min(1.0, 1.0 - distance)))
    return max(scores)


__all__ = [
    "BehavioralProfile",
    "BehavioralProfileStore",
    "DeviceCharacteristics",
    "MousePattern",
    "TypingPattern",
]
