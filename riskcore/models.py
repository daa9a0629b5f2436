"""Pydantic models describing the collector input boundary."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .state import ensure_aware, utcnow


class GeoPoint(BaseModel):
    """A geolocation reading or a remembered location."""

    lat: float = Field(..., ge=-90.0, le=90.0, description="Latitude in decimal degrees")
    lng: float = Field(..., ge=-180.0, le=180.0, description="Longitude in decimal degrees")
    accuracy_meters: Optional[float] = Field(default=None, ge=0.0, description="Reported accuracy radius")
    timestamp: Optional[datetime] = Field(default=None, description="When the reading was taken")

    model_config = ConfigDict(frozen=True)


class DeviceInfo(BaseModel):
    """Device characteristics reported by external platform probes."""

    platform: str = ""
    os: str = ""
    browser: str = "Unknown"
    browser_version: Optional[str] = None
    device_label: str = "Desktop"
    screen_resolution: str = ""
    touch_support: bool = False
    hardware_concurrency: int = Field(default=4, ge=0)
    device_memory: Optional[float] = Field(default=None, ge=0.0)
    secure_context: bool = True
    timezone: Optional[str] = None
    user_agent: str = ""

    model_config = ConfigDict(frozen=True)


class ThreatIntel(BaseModel):
    """Best-effort threat intelligence verdict for an address."""

    malicious_activity: bool = False
    threat_types: List[str] = Field(default_factory=list)
    last_reported_at: Optional[str] = None


class NetworkDescriptor(BaseModel):
    """Network reputation descriptor for the client address."""

    ip: str
    isp: Optional[str] = None
    asn: Optional[str] = None
    vpn_detected: bool = False
    proxy_detected: bool = False
    tor_detected: bool = False
    datacenter_ip: bool = False
    threat_intel: ThreatIntel = Field(default_factory=ThreatIntel)


class BehavioralMetrics(BaseModel):
    """Summarised interaction metrics for the current session."""

    typing_speed: Optional[float] = None
    typing_consistency: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    mouse_movement_pattern: Optional[Literal["direct", "curved", "erratic"]] = None
    interaction_frequency: Optional[float] = Field(default=None, ge=0.0)


class HistoricalData(BaseModel):
    """Login history known for the subject."""

    last_login_time: Optional[datetime] = None
    failed_attempts: int = Field(default=0, ge=0)
    successful_logins: int = Field(default=0, ge=0)
    average_session_duration: Optional[float] = None
    common_login_hours: List[int] = Field(default_factory=list)
    known_locations: List[GeoPoint] = Field(default_factory=list)

    @field_validator("common_login_hours")
    @classmethod
    def _valid_hours(cls, value: List[int]) -> List[int]:
        for hour in value:
            if not 0 <= hour <= 23:
                raise ValueError(f"login hour {hour} outside 0-23")
        return value


class AssessmentContext(BaseModel):
    """Everything the scorers need for one assessment of a subject."""

    timestamp: datetime = Field(default_factory=utcnow)
    device: DeviceInfo = Field(default_factory=DeviceInfo)
    location: Optional[GeoPoint] = None
    network: Optional[NetworkDescriptor] = None
    ip_address: Optional[str] = None
    behavior: Optional[BehavioralMetrics] = None
    history: HistoricalData = Field(default_factory=HistoricalData)

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)


class AttemptOutcome(BaseModel):
    """Result body for a recorded authentication attempt."""

    identifier: str
    attempts: int
    complexity: Literal["normal", "enhanced", "maximum"]
    last_attempt_time: Optional[datetime] = None
    block_until: Optional[datetime] = None


__all__ = [
    "AssessmentContext",
    "AttemptOutcome",
    "BehavioralMetrics",
    "DeviceInfo",
    "GeoPoint",
    "HistoricalData",
    "NetworkDescriptor",
    "ThreatIntel",
]
