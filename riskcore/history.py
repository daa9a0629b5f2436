"""Bounded per-subject score history with trend extraction."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from statistics import mean
from typing import Callable, Deque, Dict, Generic, Literal, Optional, Protocol, Sequence, Tuple, TypeVar

from .state import SubjectRegistry

Trend = Literal["improving", "stable", "worsening"]

TREND_EPSILON = 0.1


class Scored(Protocol):
    score: float


S = TypeVar("S", bound=Scored)


@dataclass(frozen=True)
class AggregateRisk:
    average_score: float
    trend: Trend
    level: str
    count: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "average_score": self.average_score,
            "trend": self.trend,
            "level": self.level,
            "count": self.count,
        }


def regression_slope(values: Sequence[float]) -> float:
    """Ordinary least-squares slope of ``values`` against their index."""

    n = len(values)
    if n < 2:
        return 0.0
    mean_x = (n - 1) / 2
    mean_y = mean(values)
    numerator = sum((index - mean_x) * (value - mean_y) for index, value in enumerate(values))
    denominator = sum((index - mean_x) ** 2 for index in range(n))
    return numerator / denominator


def trend_of(values: Sequence[float], *, higher_is_worse: bool = True, epsilon: float = TREND_EPSILON) -> Trend:
    slope = regression_slope(values)
    if abs(slope) < epsilon:
        return "stable"
    rising = slope > 0
    return "worsening" if rising == higher_is_worse else "improving"


class AssessmentHistory(Generic[S]):
    """Keeps the last ``max_length`` scored items per subject, oldest first.

    Appends for a subject are serialised on that subject's lock, so the
    stored order is the order in which appends were submitted.
    """

    def __init__(
        self,
        *,
        max_length: int = 50,
        classify: Optional[Callable[[float], str]] = None,
        higher_is_worse: bool = True,
        empty_level: str = "medium",
    ) -> None:
        self._max_length = max_length
        self._classify = classify
        self._higher_is_worse = higher_is_worse
        self._empty_level = empty_level
        self._subjects: SubjectRegistry[Deque[S]] = SubjectRegistry(
            lambda _subject: deque(maxlen=self._max_length), name="history"
        )

    def append(self, subject_id: str, item: S) -> None:
        handle = self._subjects.handle(subject_id)
        with handle.lock:
            handle.state.append(item)

    def history(self, subject_id: str) -> Tuple[S, ...]:
        handle = self._subjects.find(subject_id)
        if handle is None:
            return ()
        with handle.lock:
            return tuple(handle.state)

    def aggregate(self, subject_id: str) -> AggregateRisk:
        scores = [float(item.score) for item in self.history(subject_id)]
        if not scores:
            return AggregateRisk(average_score=0.0, trend="stable", level=self._empty_level)
        average = mean(scores)
        level = self._classify(average) if self._classify else ""
        return AggregateRisk(
            average_score=round(average, 2),
            trend=trend_of(scores, higher_is_worse=self._higher_is_worse),
            level=level,
            count=len(scores),
        )

    def clear(self, subject_id: Optional[str] = None) -> None:
        if subject_id is None:
            self._subjects.clear()
        else:
            self._subjects.discard(subject_id)

    def __contains__(self, subject_id: object) -> bool:
        return subject_id in self._subjects


__all__ = [
    "AggregateRisk",
    "AssessmentHistory",
    "TREND_EPSILON",
    "regression_slope",
    "trend_of",
]
