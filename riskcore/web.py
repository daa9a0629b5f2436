"""FastAPI application exposing the risk engine."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .baseline import ResponseRecord
from .engine import RiskEngine
from .errors import Blocked, SubjectNotFound
from .models import AssessmentContext, AttemptOutcome
from .scheduler import Monitor
from .state import Sample, ensure_aware


class RecordIn(BaseModel):
    type: str
    value: str
    ttl: int = 0


class ObservationIn(BaseModel):
    category: str
    records: List[RecordIn] = Field(default_factory=list)
    latency_ms: float = Field(..., ge=0.0)
    success_rate: float = Field(default=100.0, ge=0.0, le=100.0)


class SampleIn(BaseModel):
    kind: Literal["keystroke", "pointer"]
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None


class LoginSuccessIn(BaseModel):
    subject_id: Optional[str] = None
    context: Optional[AssessmentContext] = None


def create_app(engine: Optional[RiskEngine] = None, monitor: Optional[Monitor] = None) -> FastAPI:
    app = FastAPI(title="riskcore", version="0.1.0")
    app.state.engine = engine or RiskEngine.from_settings()
    app.state.monitor = monitor or Monitor(app.state.engine, lambda _subject: None)

    @app.on_event("startup")
    async def _startup() -> None:
        app.state.monitor.start_sweeper()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await app.state.monitor.stop_all()

    def get_engine(request: Request) -> RiskEngine:
        return request.app.state.engine

    @app.exception_handler(Blocked)
    async def _blocked(_request: Request, exc: Blocked) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), **exc.as_dict()},
            headers={"Retry-After": str(exc.remaining_seconds)},
        )

    @app.exception_handler(SubjectNotFound)
    async def _not_found(_request: Request, exc: SubjectNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.post("/subjects/{subject_id}/assessments")
    async def create_assessment(
        subject_id: str,
        context: AssessmentContext,
        identifier: Optional[str] = None,
        engine: RiskEngine = Depends(get_engine),
    ) -> Dict[str, Any]:
        decision = await engine.assess(subject_id, context, identifier=identifier)
        return decision.as_dict()

    @app.get("/subjects/{subject_id}/assessments")
    async def list_assessments(subject_id: str, engine: RiskEngine = Depends(get_engine)) -> Dict[str, Any]:
        return {
            "subject_id": subject_id,
            "assessments": [assessment.as_dict() for assessment in engine.risk_history.history(subject_id)],
        }

    @app.get("/subjects/{subject_id}/aggregate")
    async def aggregate(subject_id: str, engine: RiskEngine = Depends(get_engine)) -> Dict[str, Any]:
        return {"subject_id": subject_id, **engine.aggregate(subject_id).as_dict()}

    @app.post("/subjects/{subject_id}/observations")
    async def observe(
        subject_id: str, observation: ObservationIn, engine: RiskEngine = Depends(get_engine)
    ) -> Dict[str, Any]:
        anomalies = engine.observe(
            subject_id,
            observation.category,
            [ResponseRecord(type=r.type, value=r.value, ttl=r.ttl) for r in observation.records],
            observation.latency_ms,
            success_rate=observation.success_rate,
        )
        return {"subject_id": subject_id, "anomalies": [anomaly.as_dict() for anomaly in anomalies]}

    @app.get("/subjects/{subject_id}/anomalies")
    async def anomalies(
        subject_id: str,
        kind: Optional[str] = None,
        severity: Optional[str] = None,
        engine: RiskEngine = Depends(get_engine),
    ) -> Dict[str, Any]:
        found = engine.baseline.anomalies(subject_id, kind=kind, severity=severity)
        return {
            "subject_id": subject_id,
            "anomalies": [anomaly.as_dict() for anomaly in found],
            "stats": engine.baseline.anomaly_stats(subject_id),
        }

    @app.get("/subjects/{subject_id}/baseline")
    async def baseline(subject_id: str, engine: RiskEngine = Depends(get_engine)) -> Dict[str, Any]:
        return engine.baseline.baseline(subject_id, strict=True).as_dict()

    @app.post("/subjects/{subject_id}/samples")
    async def ingest_samples(
        subject_id: str, samples: List[SampleIn], engine: RiskEngine = Depends(get_engine)
    ) -> Dict[str, Any]:
        for sample in samples:
            stamp = ensure_aware(sample.timestamp) if sample.timestamp else engine.clock()
            engine.ingest(subject_id, Sample(stamp, sample.kind, sample.payload))
        return {"subject_id": subject_id, "accepted": len(samples)}

    @app.post("/subjects/{subject_id}/logout")
    async def logout(subject_id: str, request: Request) -> Dict[str, str]:
        request.app.state.monitor.logout(subject_id)
        return {"subject_id": subject_id, "status": "logged_out"}

    @app.post("/attempts/{identifier}/failure", response_model=AttemptOutcome)
    async def record_failure(identifier: str, engine: RiskEngine = Depends(get_engine)) -> AttemptOutcome:
        return engine.record_failure(identifier)

    @app.post("/attempts/{identifier}/success")
    async def record_success(
        identifier: str,
        payload: Optional[LoginSuccessIn] = Body(default=None),
        engine: RiskEngine = Depends(get_engine),
    ) -> Dict[str, Any]:
        device = engine.record_success(
            identifier,
            subject_id=payload.subject_id if payload else None,
            context=payload.context if payload else None,
        )
        return {
            "identifier": identifier,
            "complexity": engine.required_complexity(identifier),
            "device": device.as_dict() if device else None,
        }

    @app.get("/attempts/{identifier}/complexity")
    async def complexity(identifier: str, engine: RiskEngine = Depends(get_engine)) -> Dict[str, Any]:
        return {
            "identifier": identifier,
            "complexity": engine.required_complexity(identifier),
            "remaining_seconds": engine.guard.remaining(identifier),
        }

    @app.post("/domains/{domain}/checks")
    async def check_domain(
        domain: str, record_type: str = "A", engine: RiskEngine = Depends(get_engine)
    ) -> Dict[str, Any]:
        check = await engine.domains.check(domain, record_type.upper())
        return check.as_dict()

    @app.get("/domains/{domain}/audit")
    async def audit_domain(domain: str, engine: RiskEngine = Depends(get_engine)) -> Dict[str, Any]:
        audit = await engine.domains.audit(domain)
        return audit.as_dict()

    @app.get("/healthz")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    return app


__all__ = ["create_app"]
