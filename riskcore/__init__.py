"""riskcore exports."""

from .baseline import Anomaly, BaselineModel, BaselineSnapshot, ResponseRecord
from .behavior import BehavioralProfile, BehavioralProfileStore, DeviceCharacteristics
from .collectors import HttpReputationProvider, Indicator, StaticReputationProvider, TelemetryCollector
from .config import (
    AnomalyThresholds,
    AttemptPolicy,
    DecisionThresholds,
    EngineConfig,
    FactorWeights,
    LevelThresholds,
    Settings,
    TrustPolicy,
    default_engine_config,
    get_settings,
)
from .dns import DohResolver, DomainMonitor
from .engine import Decision, EngineDecision, RiskEngine, decide
from .errors import (
    Blocked,
    CollectorTimeout,
    CollectorUnavailable,
    InvalidConfiguration,
    RiskcoreError,
    SubjectNotFound,
)
from .guard import AttemptGuard, AttemptRecord, EncryptedFileAttemptStore, InMemoryAttemptStore
from .history import AggregateRisk, AssessmentHistory
from .models import (
    AssessmentContext,
    BehavioralMetrics,
    DeviceInfo,
    GeoPoint,
    HistoricalData,
    NetworkDescriptor,
    ThreatIntel,
)
from .risk import RiskAssessment, RiskFactor, RiskScorer
from .scheduler import Monitor
from .state import Sample
from .trust import DeviceRegistry, TrustScore, TrustScorer

__all__ = [
    "AggregateRisk",
    "Anomaly",
    "AnomalyThresholds",
    "AssessmentContext",
    "AssessmentHistory",
    "AttemptGuard",
    "AttemptPolicy",
    "AttemptRecord",
    "BaselineModel",
    "BaselineSnapshot",
    "BehavioralMetrics",
    "BehavioralProfile",
    "BehavioralProfileStore",
    "Blocked",
    "CollectorTimeout",
    "CollectorUnavailable",
    "Decision",
    "DecisionThresholds",
    "DeviceCharacteristics",
    "DeviceInfo",
    "DeviceRegistry",
    "DohResolver",
    "DomainMonitor",
    "EncryptedFileAttemptStore",
    "EngineConfig",
    "EngineDecision",
    "FactorWeights",
    "GeoPoint",
    "HistoricalData",
    "HttpReputationProvider",
    "InMemoryAttemptStore",
    "Indicator",
    "InvalidConfiguration",
    "LevelThresholds",
    "Monitor",
    "NetworkDescriptor",
    "ResponseRecord",
    "RiskAssessment",
    "RiskEngine",
    "RiskFactor",
    "RiskScorer",
    "RiskcoreError",
    "Sample",
    "Settings",
    "StaticReputationProvider",
    "SubjectNotFound",
    "TelemetryCollector",
    "ThreatIntel",
    "TrustPolicy",
    "TrustScore",
    "TrustScorer",
    "decide",
    "default_engine_config",
    "get_settings",
]
