"""Error taxonomy for the risk engine."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Optional


class RiskcoreError(RuntimeError):
    """Base error for every failure raised by the engine."""


class CollectorUnavailable(RiskcoreError):
    """Raised when a signal source could not be reached."""

    def __init__(self, source: str, reason: str = "unavailable") -> None:
        super().__init__(f"Collector {source} {reason}")
        self.source = source
        self.reason = reason


class CollectorTimeout(CollectorUnavailable):
    """Raised when a bounded collector wait was exceeded."""

    def __init__(self, source: str, timeout: float) -> None:
        super().__init__(source, f"timed out after {timeout:.2f}s")
        self.timeout = timeout


class Blocked(RiskcoreError):
    """Attempt guard refusal carrying the remaining lockout time."""

    def __init__(self, identifier: str, block_until: datetime, now: datetime) -> None:
        remaining = max(0.0, (block_until - now).total_seconds())
        self.identifier = identifier
        self.block_until = block_until
        self.remaining_seconds = int(math.ceil(remaining))
        super().__init__(
            f"Too many failed attempts for {identifier}; "
            f"try again in {self.remaining_seconds} seconds"
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "identifier": self.identifier,
            "block_until": self.block_until.isoformat(),
            "remaining_seconds": self.remaining_seconds,
        }


class InvalidConfiguration(RiskcoreError, ValueError):
    """Raised at construction time for inconsistent configuration."""


class SubjectNotFound(RiskcoreError, KeyError):
    """Raised by strict lookups for subjects that were never observed."""

    def __init__(self, subject_id: str, component: Optional[str] = None) -> None:
        where = f" in {component}" if component else ""
        super().__init__(f"Unknown subject {subject_id!r}{where}")
        self.subject_id = subject_id

    def __str__(self) -> str:  # KeyError quotes its argument otherwise
        return str(self.args[0])


__all__ = [
    "Blocked",
    "CollectorTimeout",
    "CollectorUnavailable",
    "InvalidConfiguration",
    "RiskcoreError",
    "SubjectNotFound",
]
