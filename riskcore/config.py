"""Engine configuration and environment-backed settings."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import InvalidConfiguration

load_dotenv()

BackoffBasis = Literal["lockouts", "attempts"]

FACTOR_NAMES = (
    "location",
    "time",
    "device",
    "behavioral",
    "historical",
    "network",
    "anomaly",
)

DEFAULT_SEVERITIES = {
    "timing": "medium",
    "volume": "high",
    "resolution": "high",
    "pattern": "medium",
    "security": "critical",
}

_SEVERITIES = ("low", "medium", "high", "critical")


def _require_positive(name: str, value: timedelta | float | int) -> None:
    raw = value.total_seconds() if isinstance(value, timedelta) else value
    if raw <= 0:
        raise InvalidConfiguration(f"{name} must be positive, got {value!r}")


def _require_increasing(name: str, values: Mapping[str, float], *, upper: float = 100.0) -> None:
    previous = 0.0
    for key, value in values.items():
        if not 0.0 < value <= upper:
            raise InvalidConfiguration(f"{name}.{key} must be within (0, {upper}], got {value!r}")
        if value <= previous:
            raise InvalidConfiguration(f"{name} must be strictly increasing ({key}={value!r})")
        previous = value


@dataclass(frozen=True)
class FactorWeights:
    """Relative weight of each risk factor; every weight lies in (0, 1]."""

    location: float = 0.25
    time: float = 0.15
    device: float = 0.2
    behavioral: float = 0.25
    historical: float = 0.15
    network: float = 0.2
    anomaly: float = 0.2

    def __post_init__(self) -> None:
        for name in FACTOR_NAMES:
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise InvalidConfiguration(f"weight for {name} must be within (0, 1], got {value!r}")

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class LevelThresholds:
    """Score breakpoints: low < low_below <= medium < medium_below <= high < high_below <= critical."""

    low_below: float = 30.0
    medium_below: float = 60.0
    high_below: float = 80.0

    def __post_init__(self) -> None:
        _require_increasing(
            "levels",
            {"low_below": self.low_below, "medium_below": self.medium_below, "high_below": self.high_below},
        )

    def classify(self, score: float) -> str:
        if score >= self.high_below:
            return "critical"
        if score >= self.medium_below:
            return "high"
        if score >= self.low_below:
            return "medium"
        return "low"

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class AnomalyThresholds:
    """Detection thresholds for :class:`~riskcore.baseline.BaselineModel`."""

    query_rate: float = 2.0
    timing: float = 3.0
    failure: float = 0.2
    pattern: float = 0.3
    min_history: int = 5
    entropy: float = 4.5
    max_value_length: int = 200
    max_label_length: int = 30
    max_response_size: int = 512
    max_anomalies: int = 1000
    severities: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_SEVERITIES))

    def __post_init__(self) -> None:
        for name in ("query_rate", "timing", "failure", "pattern", "entropy"):
            _require_positive(name, getattr(self, name))
        for name in ("max_value_length", "max_label_length", "max_response_size", "max_anomalies"):
            _require_positive(name, getattr(self, name))
        if self.min_history < 1:
            raise InvalidConfiguration("min_history must be at least 1")
        if self.pattern > 1.0:
            raise InvalidConfiguration("pattern ratio must not exceed 1.0")
        for kind, severity in self.severities.items():
            if kind not in DEFAULT_SEVERITIES:
                raise InvalidConfiguration(f"unknown anomaly kind {kind!r}")
            if severity not in _SEVERITIES:
                raise InvalidConfiguration(f"unknown severity {severity!r} for {kind}")

    def severity_for(self, kind: str) -> str:
        return self.severities.get(kind, DEFAULT_SEVERITIES[kind])

    def as_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload["severities"] = dict(self.severities)
        return payload


@dataclass(frozen=True)
class AttemptPolicy:
    """Rate limiting and progressive lockout parameters."""

    max_attempts: int = 5
    block_duration: timedelta = timedelta(minutes=15)
    attempt_window: timedelta = timedelta(minutes=60)
    progressive: bool = True
    backoff_cap: int = 6
    backoff_basis: BackoffBasis = "lockouts"
    enhanced_threshold: int = 3
    maximum_threshold: int = 5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidConfiguration("max_attempts must be at least 1")
        _require_positive("block_duration", self.block_duration)
        _require_positive("attempt_window", self.attempt_window)
        if self.backoff_cap < 0:
            raise InvalidConfiguration("backoff_cap must not be negative")
        if self.backoff_basis not in ("lockouts", "attempts"):
            raise InvalidConfiguration(f"unknown backoff basis {self.backoff_basis!r}")
        if not 1 <= self.enhanced_threshold <= self.maximum_threshold:
            raise InvalidConfiguration("complexity thresholds must satisfy 1 <= enhanced <= maximum")

    def as_dict(self) -> Dict[str, object]:
        return {
            "max_attempts": self.max_attempts,
            "block_duration_seconds": self.block_duration.total_seconds(),
            "attempt_window_seconds": self.attempt_window.total_seconds(),
            "progressive": self.progressive,
            "backoff_cap": self.backoff_cap,
            "backoff_basis": self.backoff_basis,
            "enhanced_threshold": self.enhanced_threshold,
            "maximum_threshold": self.maximum_threshold,
        }


@dataclass(frozen=True)
class TrustPolicy:
    """Device trust weighting and step-up policy."""

    step_up_below: float = 60.0
    recent_activity: timedelta = timedelta(days=7)
    location_match_km: float = 100.0
    max_speed_kmh: float = 500.0
    min_login_history: int = 5
    weights: Mapping[str, int] = field(
        default_factory=lambda: {
            "known_device": 20,
            "recent_activity": 15,
            "location_match": 15,
            "platform_security": 10,
            "browser_security": 10,
            "network_security": 10,
            "time_pattern_match": 10,
            "device_integrity": 10,
        }
    )

    def __post_init__(self) -> None:
        if not 0.0 <= self.step_up_below <= 100.0:
            raise InvalidConfiguration("step_up_below must be within [0, 100]")
        _require_positive("recent_activity", self.recent_activity)
        _require_positive("location_match_km", self.location_match_km)
        _require_positive("max_speed_kmh", self.max_speed_kmh)
        if any(weight <= 0 for weight in self.weights.values()):
            raise InvalidConfiguration("trust weights must be positive")
        if sum(self.weights.values()) != 100:
            raise InvalidConfiguration("trust weights must sum to 100")

    def as_dict(self) -> Dict[str, object]:
        return {
            "step_up_below": self.step_up_below,
            "recent_activity_seconds": self.recent_activity.total_seconds(),
            "location_match_km": self.location_match_km,
            "max_speed_kmh": self.max_speed_kmh,
            "min_login_history": self.min_login_history,
            "weights": dict(self.weights),
        }


@dataclass(frozen=True)
class DecisionThresholds:
    """Caller-owned score thresholds for authentication decisions."""

    require_additional_auth: float = 60.0
    require_step_up_auth: float = 80.0
    block_access: float = 90.0

    def __post_init__(self) -> None:
        _require_increasing(
            "decisions",
            {
                "require_additional_auth": self.require_additional_auth,
                "require_step_up_auth": self.require_step_up_auth,
                "block_access": self.block_access,
            },
        )

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class EngineConfig:
    """Aggregates every tunable of the engine."""

    monitoring_interval: timedelta = timedelta(minutes=1)
    learning_period: timedelta = timedelta(days=7)
    sweep_interval: timedelta = timedelta(hours=1)
    collector_timeout: float = 3.0
    history_length: int = 50
    behavior_history: int = 10
    weights: FactorWeights = field(default_factory=FactorWeights)
    levels: LevelThresholds = field(default_factory=LevelThresholds)
    anomaly: AnomalyThresholds = field(default_factory=AnomalyThresholds)
    attempts: AttemptPolicy = field(default_factory=AttemptPolicy)
    trust: TrustPolicy = field(default_factory=TrustPolicy)
    decisions: DecisionThresholds = field(default_factory=DecisionThresholds)

    def __post_init__(self) -> None:
        _require_positive("monitoring_interval", self.monitoring_interval)
        _require_positive("learning_period", self.learning_period)
        _require_positive("sweep_interval", self.sweep_interval)
        _require_positive("collector_timeout", self.collector_timeout)
        if self.history_length < 1 or self.behavior_history < 1:
            raise InvalidConfiguration("history bounds must be at least 1")

    def as_dict(self) -> Dict[str, object]:
        return {
            "monitoring_interval_ms": int(self.monitoring_interval.total_seconds() * 1000),
            "learning_period_ms": int(self.learning_period.total_seconds() * 1000),
            "sweep_interval_ms": int(self.sweep_interval.total_seconds() * 1000),
            "collector_timeout": self.collector_timeout,
            "history_length": self.history_length,
            "behavior_history": self.behavior_history,
            "weights": self.weights.as_dict(),
            "levels": self.levels.as_dict(),
            "anomaly": self.anomaly.as_dict(),
            "attempts": self.attempts.as_dict(),
            "trust": self.trust.as_dict(),
            "decisions": self.decisions.as_dict(),
        }


def default_engine_config() -> EngineConfig:
    """Return the default engine configuration."""

    return EngineConfig()


class Settings(BaseSettings):
    """Environment-backed settings (``RISKCORE_*`` variables or ``.env``)."""

    model_config = SettingsConfigDict(
        env_prefix="RISKCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    monitoring_interval_ms: int = Field(default=60_000)
    learning_period_ms: int = Field(default=7 * 24 * 60 * 60 * 1000)
    sweep_interval_ms: int = Field(default=60 * 60 * 1000)
    collector_timeout_seconds: float = Field(default=3.0)

    weight_location: float = 0.25
    weight_time: float = 0.15
    weight_device: float = 0.2
    weight_behavioral: float = 0.25
    weight_historical: float = 0.15
    weight_network: float = 0.2
    weight_anomaly: float = 0.2

    level_low: float = 30.0
    level_medium: float = 60.0
    level_high: float = 80.0

    max_attempts: int = 5
    block_duration_minutes: float = 15.0
    attempt_window_minutes: float = 60.0
    progressive_backoff: bool = True
    backoff_cap: int = 6
    backoff_basis: BackoffBasis = "lockouts"

    anomaly_query_rate_sigma: float = 2.0
    anomaly_timing_sigma: float = 3.0
    anomaly_failure_delta: float = 0.2
    anomaly_pattern_ratio: float = 0.3

    attempt_store_path: Optional[Path] = None
    attempt_store_secret: Optional[str] = None

    doh_endpoint: str = "https://cloudflare-dns.com/dns-query"
    reputation_api_url: Optional[str] = None
    reputation_api_key: Optional[str] = None

    @field_validator("attempt_store_path", mode="before")
    @classmethod
    def _optional_path(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, str):
            return Path(value).expanduser()
        if isinstance(value, Path):
            return value.expanduser()
        raise ValueError("attempt_store_path must be a filesystem path")

    @field_validator("backoff_basis", mode="before")
    @classmethod
    def _lower_basis(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def to_engine_config(self) -> EngineConfig:
        """Build the validated :class:`EngineConfig`; raises :class:`InvalidConfiguration`."""

        return EngineConfig(
            monitoring_interval=timedelta(milliseconds=self.monitoring_interval_ms),
            learning_period=timedelta(milliseconds=self.learning_period_ms),
            sweep_interval=timedelta(milliseconds=self.sweep_interval_ms),
            collector_timeout=self.collector_timeout_seconds,
            weights=FactorWeights(
                location=self.weight_location,
                time=self.weight_time,
                device=self.weight_device,
                behavioral=self.weight_behavioral,
                historical=self.weight_historical,
                network=self.weight_network,
                anomaly=self.weight_anomaly,
            ),
            levels=LevelThresholds(
                low_below=self.level_low,
                medium_below=self.level_medium,
                high_below=self.level_high,
            ),
            anomaly=AnomalyThresholds(
                query_rate=self.anomaly_query_rate_sigma,
                timing=self.anomaly_timing_sigma,
                failure=self.anomaly_failure_delta,
                pattern=self.anomaly_pattern_ratio,
            ),
            attempts=AttemptPolicy(
                max_attempts=self.max_attempts,
                block_duration=timedelta(minutes=self.block_duration_minutes),
                attempt_window=timedelta(minutes=self.attempt_window_minutes),
                progressive=self.progressive_backoff,
                backoff_cap=self.backoff_cap,
                backoff_basis=self.backoff_basis,
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = [
    "AnomalyThresholds",
    "AttemptPolicy",
    "DecisionThresholds",
    "EngineConfig",
    "FACTOR_NAMES",
    "FactorWeights",
    "LevelThresholds",
    "Settings",
    "TrustPolicy",
    "default_engine_config",
    "get_settings",
]
