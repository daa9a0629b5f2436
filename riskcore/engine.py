"""Risk engine orchestration."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Sequence, Tuple, Union

from .baseline import Anomaly, BaselineModel, ResponseRecord
from .behavior import BehavioralProfile, BehavioralProfileStore
from .collectors import HttpReputationProvider, ReputationProvider, TelemetryCollector
from .config import DecisionThresholds, EngineConfig, Settings, get_settings
from .dns import DOH_ENDPOINTS, DohResolver, DomainMonitor
from .guard import AttemptGuard, AttemptStore, EncryptedFileAttemptStore
from .history import AggregateRisk, AssessmentHistory
from .models import AssessmentContext, AttemptOutcome, BehavioralMetrics
from .risk import RiskAssessment, RiskScorer
from .state import Clock, Sample, utcnow
from .trust import KnownDevice, TrustScore, TrustScorer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """Caller-side gate derived from a risk score."""

    require_additional_auth: bool
    require_step_up_auth: bool
    block_access: bool

    def as_dict(self) -> Dict[str, bool]:
        return {
            "require_additional_auth": self.require_additional_auth,
            "require_step_up_auth": self.require_step_up_auth,
            "block_access": self.block_access,
        }


def decide(score: float, thresholds: Optional[DecisionThresholds] = None) -> Decision:
    thresholds = thresholds or DecisionThresholds()
    return Decision(
        require_additional_auth=score >= thresholds.require_additional_auth,
        require_step_up_auth=score >= thresholds.require_step_up_auth,
        block_access=score >= thresholds.block_access,
    )


@dataclass
class EngineDecision:
    """Full decision artifact returned by :class:`RiskEngine`."""

    subject_id: str
    assessment: RiskAssessment
    trust: TrustScore
    decision: Decision
    network_degraded: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "subject_id": self.subject_id,
            "assessment": self.assessment.as_dict(),
            "trust": self.trust.as_dict(),
            "decision": self.decision.as_dict(),
        }
        if self.network_degraded is not None:
            payload["network_degraded"] = self.network_degraded
        return payload


class RiskEngine:
    """Wires collectors, profiles, baselines, scorers and the attempt guard."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        collector: Optional[TelemetryCollector] = None,
        attempt_store: Optional[AttemptStore] = None,
        resolver: Optional[DohResolver] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or EngineConfig()
        self.clock = clock
        self.collector = collector or TelemetryCollector(timeout=self.config.collector_timeout, clock=clock)
        self.behavior = BehavioralProfileStore(max_history=self.config.behavior_history, clock=clock)
        self.baseline = BaselineModel(
            self.config.anomaly, learning_period=self.config.learning_period, clock=clock
        )
        self.risk = RiskScorer(self.config.weights, self.config.levels, clock=clock)
        self.domains = DomainMonitor(
            resolver or DohResolver(DOH_ENDPOINTS["cloudflare"], timeout=self.config.collector_timeout),
            self.baseline,
        )
        self.trust = TrustScorer(self.config.trust, clock=clock)
        self.guard = AttemptGuard(self.config.attempts, attempt_store, clock=clock)
        self.risk_history: AssessmentHistory[RiskAssessment] = AssessmentHistory(
            max_length=self.config.history_length, classify=self.config.levels.classify
        )
        self.trust_history: AssessmentHistory[TrustScore] = AssessmentHistory(
            max_length=self.config.history_length,
            classify=lambda score: self.config.levels.classify(100.0 - score),
            higher_is_worse=False,
        )
        self._assess_locks: Dict[str, asyncio.Lock] = {}
        self._assess_pending: Dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, *, clock: Clock = utcnow) -> "RiskEngine":
        settings = settings or get_settings()
        config = settings.to_engine_config()
        reputation: Optional[ReputationProvider] = None
        if settings.reputation_api_url:
            reputation = HttpReputationProvider(
                settings.reputation_api_url,
                api_key=settings.reputation_api_key,
                timeout=config.collector_timeout,
            )
        store: Optional[AttemptStore] = None
        if settings.attempt_store_path and settings.attempt_store_secret:
            store = EncryptedFileAttemptStore(settings.attempt_store_secret, settings.attempt_store_path)
        collector = TelemetryCollector(reputation=reputation, timeout=config.collector_timeout, clock=clock)
        resolver = DohResolver(settings.doh_endpoint, timeout=config.collector_timeout)
        return cls(config, collector=collector, attempt_store=store, resolver=resolver, clock=clock)

    # ------------------------------------------------------------------
    # Assessment
    # ------------------------------------------------------------------
    async def assess(
        self,
        subject_id: str,
        context: AssessmentContext,
        *,
        identifier: Optional[str] = None,
    ) -> EngineDecision:
        """Score ``context`` for ``subject_id``.

        Raises :class:`~riskcore.errors.Blocked` when the attempt guard has
        locked out ``identifier`` (defaults to the subject id).
        """

        self.guard.ensure_open(identifier or subject_id)
        lock = self._assess_locks.setdefault(subject_id, asyncio.Lock())
        self._assess_pending[subject_id] = self._assess_pending.get(subject_id, 0) + 1
        try:
            async with lock:
                network, degraded = await self.collector.resolve_network(context)
                if context.behavior is None:
                    metrics = self._profile_metrics(subject_id)
                    if metrics is not None:
                        context = context.model_copy(update={"behavior": metrics})

                anomalies: Optional[Sequence[Anomaly]] = None
                if subject_id in self.baseline.subjects():
                    anomalies = self.baseline.anomalies(subject_id)
                failed = self.guard.failed_attempts(identifier or subject_id)

                assessment = self.risk.assess(
                    subject_id,
                    context,
                    network=network,
                    network_error=degraded,
                    anomalies=anomalies,
                    failed_attempts=failed,
                )
                trust = self.trust.assess(subject_id, context, failed_attempts=failed, network=network)
                self.risk_history.append(subject_id, assessment)
                self.trust_history.append(subject_id, trust)
        finally:
            self._release_lock(subject_id)

        if assessment.level in ("high", "critical"):
            logger.info("Subject %s assessed %s (%d)", subject_id, assessment.level, assessment.score)
        return EngineDecision(
            subject_id=subject_id,
            assessment=assessment,
            trust=trust,
            decision=decide(assessment.score, self.config.decisions),
            network_degraded=degraded,
        )

    def aggregate(self, subject_id: str) -> AggregateRisk:
        return self.risk_history.aggregate(subject_id)

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------
    def record_failure(self, identifier: str) -> AttemptOutcome:
        return self.guard.record_attempt(identifier)

    def record_success(
        self,
        identifier: str,
        *,
        subject_id: Optional[str] = None,
        context: Optional[AssessmentContext] = None,
    ) -> Optional[KnownDevice]:
        """Clear failures and enrol captured samples; given a context, also remember the device."""

        self.guard.reset(identifier)
        self._refresh_profile(subject_id or identifier)
        if context is None:
            return None
        return self.trust.record_login(subject_id or identifier, context)

    def required_complexity(self, identifier: str) -> str:
        return self.guard.required_complexity(identifier)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------
    def ingest(self, subject_id: str, sample: Sample) -> None:
        if sample.kind in ("keystroke", "pointer"):
            self.behavior.ingest(subject_id, sample)
        else:
            logger.debug("Ignoring %s sample for %s", sample.kind, subject_id)

    def observe(
        self,
        subject_id: str,
        category: str,
        records: Sequence[Union[ResponseRecord, str]],
        latency_ms: float,
        *,
        success_rate: float = 100.0,
        at: Optional[datetime] = None,
    ) -> Sequence[Anomaly]:
        return self.baseline.observe(subject_id, category, records, latency_ms, success_rate=success_rate, at=at)

    def logout(self, subject_id: str) -> None:
        """Clear session state; attempt records are left intact."""

        self.behavior.reset(subject_id)
        logger.info("Cleared session state for %s", subject_id)

    def sweep(self, now: Optional[datetime] = None) -> int:
        return self.baseline.sweep(now)

    def _release_lock(self, subject_id: str) -> None:
        pending = self._assess_pending.get(subject_id, 0) - 1
        if pending > 0:
            self._assess_pending[subject_id] = pending
            return
        self._assess_pending.pop(subject_id, None)
        self._assess_locks.pop(subject_id, None)

    def _refresh_profile(self, subject_id: str) -> Tuple[Optional[BehavioralProfile], Optional[float]]:
        """Fold captured samples into the profile, enrolling on first use.

        Returns the profile and, when one already existed, how well the
        captured samples matched it.
        """

        if subject_id not in self.behavior.subjects():
            return None, None
        if self.behavior.profile(subject_id) is None:
            return self.behavior.create_profile(subject_id), None
        match = self.behavior.verify(subject_id)
        return self.behavior.update_profile(subject_id), match

    def _profile_metrics(self, subject_id: str) -> Optional[BehavioralMetrics]:
        profile, match = self._refresh_profile(subject_id)
        if profile is None:
            return None
        consistency: Optional[float] = None
        if profile.typing_patterns:
            latest = profile.typing_patterns[-1][1]
            if latest.key_count:
                consistency = latest.consistency
        shape = profile.mouse_patterns[-1].shape if profile.mouse_patterns else None
        return BehavioralMetrics(
            typing_consistency=consistency,
            mouse_movement_pattern=shape,
            interaction_frequency=match,
        )


__all__ = ["Decision", "EngineDecision", "RiskEngine", "decide"]
