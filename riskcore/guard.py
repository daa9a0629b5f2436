"""Failed-attempt tracking with progressive lockout."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from .config import AttemptPolicy
from .errors import Blocked, InvalidConfiguration
from .models import AttemptOutcome
from .state import Clock, SubjectRegistry, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AttemptRecord:
    attempts: int = 0
    last_attempt_time: Optional[datetime] = None
    block_until: Optional[datetime] = None
    complexity: str = "normal"
    lockouts: int = 0

    def to_payload(self) -> Dict[str, object]:
        payload = asdict(self)
        for key in ("last_attempt_time", "block_until"):
            value = payload[key]
            payload[key] = value.isoformat() if value else None
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, object]) -> "AttemptRecord":
        def _stamp(value: object) -> Optional[datetime]:
            return datetime.fromisoformat(str(value)) if value else None

        return cls(
            attempts=int(payload.get("attempts", 0)),
            last_attempt_time=_stamp(payload.get("last_attempt_time")),
            block_until=_stamp(payload.get("block_until")),
            complexity=str(payload.get("complexity", "normal")),
            lockouts=int(payload.get("lockouts", 0)),
        )


class AttemptStore(Protocol):
    """Persistence port for attempt records."""

    def load(self, identifier: str) -> Optional[AttemptRecord]:
        ...

    def save(self, identifier: str, record: AttemptRecord) -> None:
        ...

    def delete(self, identifier: str) -> None:
        ...


class InMemoryAttemptStore:
    """Process-local attempt store; records are copied in and out."""

    def __init__(self) -> None:
        self._records: Dict[str, AttemptRecord] = {}
        self._lock = RLock()

    def load(self, identifier: str) -> Optional[AttemptRecord]:
        with self._lock:
            record = self._records.get(identifier)
            return replace(record) if record else None

    def save(self, identifier: str, record: AttemptRecord) -> None:
        with self._lock:
            self._records[identifier] = replace(record)

    def delete(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)


def _derive_fernet_key(secret: str) -> bytes:
    """Return a valid Fernet key from an arbitrary secret string."""

    if not secret:
        raise InvalidConfiguration("attempt store secret must not be empty")

    try:
        decoded = base64.urlsafe_b64decode(secret)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == 32:
        return base64.urlsafe_b64encode(decoded)

    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class EncryptedFileAttemptStore:
    """Persist attempt records as Fernet-encrypted JSON on disk."""

    def __init__(self, secret: str, storage_path: Path) -> None:
        self._fernet = Fernet(_derive_fernet_key(secret))
        self._storage_path = Path(storage_path)
        self._lock = RLock()
        self._records: Dict[str, AttemptRecord] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence helpers
    def _load(self) -> None:
        if not self._storage_path.exists():
            return
        try:
            payload = self._fernet.decrypt(self._storage_path.read_bytes())
        except InvalidToken as exc:
            raise InvalidConfiguration(
                "Unable to decrypt attempt store. Ensure the secret matches the original value."
            ) from exc
        data = json.loads(payload.decode("utf-8"))
        self._records = {
            identifier: AttemptRecord.from_payload(item) for identifier, item in data.get("records", {}).items()
        }

    def _persist(self) -> None:
        data = {"records": {identifier: record.to_payload() for identifier, record in self._records.items()}}
        encrypted = self._fernet.encrypt(json.dumps(data, separators=(",", ":")).encode("utf-8"))
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        self._storage_path.write_bytes(encrypted)

    # ------------------------------------------------------------------
    # AttemptStore
    def load(self, identifier: str) -> Optional[AttemptRecord]:
        with self._lock:
            record = self._records.get(identifier)
            return replace(record) if record else None

    def save(self, identifier: str, record: AttemptRecord) -> None:
        with self._lock:
            self._records[identifier] = replace(record)
            self._persist()

    def delete(self, identifier: str) -> None:
        with self._lock:
            if self._records.pop(identifier, None) is not None:
                self._persist()


class AttemptGuard:
    """Counts failed attempts per identifier inside a sliding window.

    Once the counter reaches ``max_attempts`` the identifier is blocked
    with an exponentially growing duration. While blocked, calls to
    :meth:`record_attempt` raise :class:`Blocked` without touching the
    record, so the remaining time only ever shrinks.
    """

    def __init__(
        self,
        policy: Optional[AttemptPolicy] = None,
        store: Optional[AttemptStore] = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._policy = policy or AttemptPolicy()
        self._store: AttemptStore = store if store is not None else InMemoryAttemptStore()
        self._clock = clock
        self._locks: SubjectRegistry[None] = SubjectRegistry(lambda _identifier: None, name="attempts")

    @property
    def policy(self) -> AttemptPolicy:
        return self._policy

    def record_attempt(self, identifier: str) -> AttemptOutcome:
        """Register a failed attempt; raises :class:`Blocked` on lockout."""

        now = self._clock()
        policy = self._policy
        with self._locks.handle(identifier).lock:
            record = self._store.load(identifier) or AttemptRecord()
            if record.block_until is not None and now < record.block_until:
                raise Blocked(identifier, record.block_until, now)

            if record.last_attempt_time is None or now - record.last_attempt_time > policy.attempt_window:
                record.attempts = 1
            else:
                record.attempts += 1
            record.last_attempt_time = now
            record.block_until = None
            record.complexity = self._complexity_for(record.attempts)

            if record.attempts >= policy.max_attempts:
                duration = self._block_duration(record)
                record.block_until = now + duration
                record.lockouts += 1
                self._store.save(identifier, record)
                logger.info(
                    "Locked out %s for %s after %d attempts (lockout #%d)",
                    identifier,
                    duration,
                    record.attempts,
                    record.lockouts,
                )
                raise Blocked(identifier, record.block_until, now)

            self._store.save(identifier, record)
            return _outcome(identifier, record)

    def ensure_open(self, identifier: str) -> None:
        """Raise :class:`Blocked` if ``identifier`` is currently locked out."""

        now = self._clock()
        with self._locks.handle(identifier).lock:
            record = self._store.load(identifier)
        if record is not None and record.block_until is not None and now < record.block_until:
            raise Blocked(identifier, record.block_until, now)

    def reset(self, identifier: str) -> None:
        """Forget every failure for ``identifier``, e.g. after a successful login."""

        with self._locks.handle(identifier).lock:
            self._store.delete(identifier)

    def required_complexity(self, identifier: str) -> str:
        now = self._clock()
        with self._locks.handle(identifier).lock:
            record = self._store.load(identifier)
        if record is None:
            return "normal"
        blocked = record.block_until is not None and now < record.block_until
        expired = record.last_attempt_time is None or now - record.last_attempt_time > self._policy.attempt_window
        if expired and not blocked:
            return "normal"
        return record.complexity

    def status(self, identifier: str) -> AttemptOutcome:
        with self._locks.handle(identifier).lock:
            record = self._store.load(identifier) or AttemptRecord()
        return _outcome(identifier, record)

    def failed_attempts(self, identifier: str) -> int:
        """Failures still counted inside the attempt window."""

        now = self._clock()
        with self._locks.handle(identifier).lock:
            record = self._store.load(identifier)
        if record is None or record.last_attempt_time is None:
            return 0
        if now - record.last_attempt_time > self._policy.attempt_window:
            return 0
        return record.attempts

    def remaining(self, identifier: str) -> int:
        """Seconds until ``identifier`` may try again (0 when not blocked)."""

        now = self._clock()
        with self._locks.handle(identifier).lock:
            record = self._store.load(identifier)
        if record is None or record.block_until is None or now >= record.block_until:
            return 0
        return Blocked(identifier, record.block_until, now).remaining_seconds

    def is_blocked(self, identifier: str) -> bool:
        return self.remaining(identifier) > 0

    # ------------------------------------------------------------------
    # Internal helpers
    def _complexity_for(self, attempts: int) -> str:
        if attempts >= self._policy.maximum_threshold:
            return "maximum"
        if attempts >= self._policy.enhanced_threshold:
            return "enhanced"
        return "normal"

    def _block_duration(self, record: AttemptRecord) -> timedelta:
        policy = self._policy
        if not policy.progressive:
            return policy.block_duration
        if policy.backoff_basis == "attempts":
            exponent = record.attempts // policy.max_attempts
        else:
            exponent = record.lockouts + 1
        return policy.block_duration * (2 ** min(exponent, policy.backoff_cap))


def _outcome(identifier: str, record: AttemptRecord) -> AttemptOutcome:
    return AttemptOutcome(
        identifier=identifier,
        attempts=record.attempts,
        complexity=record.complexity,
        last_attempt_time=record.last_attempt_time,
        block_until=record.block_until,
    )


__all__ = [
    "AttemptGuard",
    "AttemptRecord",
    "AttemptStore",
    "EncryptedFileAttemptStore",
    "InMemoryAttemptStore",
]
