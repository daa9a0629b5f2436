"""Samples, clock helpers and the per-subject state registry."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Generic, Iterable, Iterator, Literal, Mapping, Optional, Tuple, TypeVar

from .errors import SubjectNotFound


__all__ = [
    "Clock",
    "Sample",
    "SampleKind",
    "SubjectHandle",
    "SubjectRegistry",
    "ensure_aware",
    "utcnow",
]

SampleKind = Literal["device", "network", "location", "keystroke", "pointer"]
SAMPLE_KINDS: Tuple[str, ...] = ("device", "network", "location", "keystroke", "pointer")

Clock = Callable[[], datetime]

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Sample:
    """Immutable, timestamped measurement produced by a collector."""

    timestamp: datetime
    kind: SampleKind
    payload: Mapping[str, object]

    def __post_init__(self) -> None:
        if self.kind not in SAMPLE_KINDS:
            raise ValueError(f"unknown sample kind {self.kind!r}")

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "Sample":
        """Build a :class:`Sample` from a loosely typed mapping."""

        timestamp_raw = payload.get("timestamp")
        if isinstance(timestamp_raw, datetime):
            timestamp = ensure_aware(timestamp_raw)
        elif isinstance(timestamp_raw, str):
            timestamp = ensure_aware(datetime.fromisoformat(timestamp_raw.replace("Z", "+00:00")))
        elif isinstance(timestamp_raw, (int, float)):
            timestamp = datetime.fromtimestamp(float(timestamp_raw) / 1000.0, tz=timezone.utc)
        else:
            timestamp = utcnow()

        kind = str(payload.get("kind") or "device").lower()
        return cls(timestamp=timestamp, kind=kind, payload=_ensure_mapping(payload.get("payload")))  # type: ignore[arg-type]

    def to_payload(self) -> Dict[str, object]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
            "payload": dict(self.payload),
        }


def _ensure_mapping(value: object) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        return dict(value)
    if value is None:
        return {}
    if isinstance(value, list):
        return {str(item[0]): item[1] for item in value if isinstance(item, Iterable) and len(item) == 2}
    return {}


@dataclass
class SubjectHandle(Generic[T]):
    """Per-subject state guarded by its own lock."""

    subject_id: str
    state: T
    lock: threading.RLock = field(default_factory=threading.RLock)


class SubjectRegistry(Generic[T]):
    """Map from subject id to a lock-guarded state handle.

    The registry lock is only taken to insert a new subject; callers
    synchronise on ``handle.lock`` for reads and updates of existing state.
    """

    def __init__(self, factory: Callable[[str], T], *, name: str = "registry") -> None:
        self._factory = factory
        self._name = name
        self._handles: Dict[str, SubjectHandle[T]] = {}
        self._lock = threading.Lock()

    def handle(self, subject_id: str) -> SubjectHandle[T]:
        handle = self._handles.get(subject_id)
        if handle is not None:
            return handle
        with self._lock:
            handle = self._handles.get(subject_id)
            if handle is None:
                handle = SubjectHandle(subject_id=subject_id, state=self._factory(subject_id))
                self._handles[subject_id] = handle
            return handle

    def get(self, subject_id: str) -> SubjectHandle[T]:
        handle = self._handles.get(subject_id)
        if handle is None:
            raise SubjectNotFound(subject_id, self._name)
        return handle

    def find(self, subject_id: str) -> Optional[SubjectHandle[T]]:
        return self._handles.get(subject_id)

    def discard(self, subject_id: str) -> None:
        with self._lock:
            self._handles.pop(subject_id, None)

    def clear(self) -> None:
        with self._lock:
            self._handles.clear()

    def subjects(self) -> Tuple[str, ...]:
        return tuple(self._handles.keys())

    def __contains__(self, subject_id: object) -> bool:
        return subject_id in self._handles

    def __iter__(self) -> Iterator[SubjectHandle[T]]:
        return iter(tuple(self._handles.values()))

    def __len__(self) -> int:
        return len(self._handles)
