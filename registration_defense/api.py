from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .admin import AdminControls
from .config import admin_token as configured_admin_token
from .errors import DependencyUnavailable, ValidationError
from .fingerprinting import derive_fingerprint
from .models import AttackPattern, BlockEntry, Decision, Outcome, PolicyState, PolicyTransition, ReasonCode
from .orchestrator import RegistrationOrchestrator, build_orchestrator
from .sweeper import Sweeper
from .tasks import CeleryAlertSink

logger = logging.getLogger(__name__)


class EvaluateRequest(BaseModel):
    email: str
    ip: Optional[str] = None
    fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    captcha_token: Optional[str] = None


class DecisionResponse(BaseModel):
    outcome: str
    reason: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    manual_review: bool = False


class ReasonRequest(BaseModel):
    reason: str = Field(min_length=1)


class BlockRequest(BaseModel):
    subject: str
    reason: str = "manual block"
    duration_minutes: Optional[int] = None
    permanent: bool = False


class DomainRequest(BaseModel):
    domain: str
    reason: str = "manual domain block"


class ConfigureRequest(BaseModel):
    thresholds: Optional[Dict[str, float]] = None
    rollout_percentage: Optional[float] = None


class BlockResponse(BaseModel):
    subject: str
    kind: str
    reason: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    permanent: bool
    created_by: str


class PolicyResponse(BaseModel):
    mode: str
    entered_at: datetime
    rollout_percentage: float
    thresholds: Dict[str, float]
    version: int
    manual: bool
    operator: Optional[str] = None
    reason: Optional[str] = None


class TransitionResponse(BaseModel):
    from_mode: str
    to_mode: str
    at: datetime
    version: int
    reason: str
    manual: bool
    operator: Optional[str] = None


class PatternResponse(BaseModel):
    pattern_id: str
    type: str
    confidence: float
    window_start: datetime
    window_end: datetime
    subject: Optional[str] = None
    contributing_attempts: int
    details: Dict[str, Any]


class SweepResponse(BaseModel):
    counters: int
    blocks: int
    attempts: int
    patterns: int
    reputation_entries: int


def decision_status(decision: Decision) -> int:
    if decision.outcome is Outcome.ALLOWED:
        return 200
    if decision.outcome is Outcome.CHALLENGED:
        return 428
    if decision.reason is ReasonCode.RATE_LIMIT_EXCEEDED:
        return 429
    if decision.reason in (ReasonCode.REGISTRATION_DISABLED, ReasonCode.SERVICE_UNAVAILABLE):
        return 503
    return 403


def _serialize_decision(decision: Decision) -> DecisionResponse:
    return DecisionResponse(
        outcome=decision.outcome.value,
        reason=decision.reason.value if decision.reason else None,
        retry_after_seconds=decision.retry_after_seconds,
        manual_review=decision.manual_review,
    )


def _serialize_block(entry: BlockEntry) -> BlockResponse:
    return BlockResponse(
        subject=entry.subject,
        kind=entry.kind.value,
        reason=entry.reason,
        created_at=entry.created_at,
        expires_at=entry.expires_at,
        permanent=entry.permanent,
        created_by=entry.created_by,
    )


def _serialize_policy(state: PolicyState) -> PolicyResponse:
    return PolicyResponse(
        mode=state.mode.label,
        entered_at=state.entered_at,
        rollout_percentage=state.rollout_percentage,
        thresholds=dict(state.thresholds),
        version=state.version,
        manual=state.manual,
        operator=state.operator,
        reason=state.reason,
    )


def _serialize_transition(transition: PolicyTransition) -> TransitionResponse:
    return TransitionResponse(
        from_mode=transition.from_mode.label,
        to_mode=transition.to_mode.label,
        at=transition.at,
        version=transition.version,
        reason=transition.reason,
        manual=transition.manual,
        operator=transition.operator,
    )


def _serialize_pattern(pattern: AttackPattern) -> PatternResponse:
    return PatternResponse(
        pattern_id=pattern.pattern_id,
        type=pattern.type.value,
        confidence=pattern.confidence,
        window_start=pattern.window_start,
        window_end=pattern.window_end,
        subject=pattern.subject,
        contributing_attempts=len(pattern.contributing_attempt_ids),
        details=dict(pattern.details),
    )


def _time_range(start: Optional[datetime], end: Optional[datetime]) -> tuple[datetime, datetime]:
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(hours=1)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return start, end


def create_app(
    orchestrator: RegistrationOrchestrator | None = None,
    admin_token: str | None = None,
) -> FastAPI:
    app = FastAPI(title="Registration Defense API", version="1.0.0")
    app.state.orchestrator = orchestrator or build_orchestrator(alerts=CeleryAlertSink())
    app.state.admin = AdminControls(app.state.orchestrator)
    app.state.sweeper = Sweeper(app.state.orchestrator)
    app.state.admin_token = admin_token or configured_admin_token()

    @app.exception_handler(ValidationError)
    def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"error": exc.code, "message": exc.message, "field": exc.field})

    @app.exception_handler(DependencyUnavailable)
    def handle_dependency_unavailable(request: Request, exc: DependencyUnavailable) -> JSONResponse:
        logger.warning("Request failed on unavailable dependency %s", exc.dependency)
        return JSONResponse(
            status_code=503,
            content={"error": exc.code, "message": f"{exc.dependency} unavailable"},
            headers={"Retry-After": str(app.state.orchestrator.config.rate_limits.unavailable_retry_after)},
        )

    def require_operator(
        x_admin_token: Optional[str] = Header(default=None),
        x_operator: Optional[str] = Header(default=None),
    ) -> str:
        expected = app.state.admin_token
        if expected and x_admin_token != expected:
            raise HTTPException(status_code=401, detail="invalid admin token")
        return x_operator or "admin"

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/registrations/evaluate", response_model=DecisionResponse)
    def evaluate(request: EvaluateRequest, http_request: Request) -> JSONResponse:
        ip = request.ip or (http_request.client.host if http_request.client else "")
        fingerprint = request.fingerprint or derive_fingerprint(
            request.user_agent, ip, http_request.headers.get("accept-language")
        )
        decision = app.state.orchestrator.evaluate_attempt(
            ip,
            request.email,
            fingerprint,
            user_agent=request.user_agent,
            captcha_token=request.captcha_token,
        )
        headers = {}
        if decision.retry_after_seconds:
            headers["Retry-After"] = str(decision.retry_after_seconds)
        return JSONResponse(
            status_code=decision_status(decision),
            content=_serialize_decision(decision).model_dump(),
            headers=headers,
        )

    @app.get("/admin/policy", response_model=PolicyResponse)
    def get_policy(operator: str = Depends(require_operator)) -> PolicyResponse:
        return _serialize_policy(app.state.admin.policy())

    @app.get("/admin/transitions", response_model=List[TransitionResponse])
    def list_transitions(limit: int = Query(50, ge=1, le=500), operator: str = Depends(require_operator)):
        return [_serialize_transition(t) for t in app.state.admin.transitions(limit)]

    @app.post("/admin/emergency-disable", response_model=PolicyResponse)
    def emergency_disable(request: ReasonRequest, operator: str = Depends(require_operator)) -> PolicyResponse:
        return _serialize_policy(app.state.admin.emergency_disable(request.reason, operator))

    @app.post("/admin/restore", response_model=PolicyResponse)
    def restore_normal(request: ReasonRequest, operator: str = Depends(require_operator)) -> PolicyResponse:
        return _serialize_policy(app.state.admin.restore_normal(request.reason, operator))

    @app.put("/admin/config", response_model=PolicyResponse)
    def configure(request: ConfigureRequest, operator: str = Depends(require_operator)) -> PolicyResponse:
        state = app.state.admin.configure(request.thresholds, request.rollout_percentage, operator=operator)
        return _serialize_policy(state)

    @app.get("/admin/blocks", response_model=List[BlockResponse])
    def list_blocks(operator: str = Depends(require_operator)):
        return [_serialize_block(entry) for entry in app.state.admin.list_blocks()]

    @app.post("/admin/blocks", response_model=BlockResponse, status_code=201)
    def block_subject(request: BlockRequest, operator: str = Depends(require_operator)) -> BlockResponse:
        entry = app.state.admin.block_subject(
            request.subject,
            duration_minutes=request.duration_minutes,
            reason=request.reason,
            permanent=request.permanent,
            operator=operator,
        )
        return _serialize_block(entry)

    @app.delete("/admin/blocks/{subject:path}")
    def unblock_subject(subject: str, operator: str = Depends(require_operator)) -> Dict[str, bool]:
        return {"removed": app.state.admin.unblock_subject(subject, operator=operator)}

    @app.post("/admin/domains/blacklist", response_model=BlockResponse, status_code=201)
    def blacklist_domain(request: DomainRequest, operator: str = Depends(require_operator)) -> BlockResponse:
        return _serialize_block(app.state.admin.blacklist_domain(request.domain, request.reason, operator=operator))

    @app.post("/admin/domains/whitelist")
    def whitelist_domain(request: DomainRequest, operator: str = Depends(require_operator)) -> Dict[str, bool]:
        return {"removed": app.state.admin.whitelist_domain(request.domain, operator=operator)}

    @app.get("/admin/metrics")
    def get_metrics(
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        operator: str = Depends(require_operator),
    ) -> Dict[str, Any]:
        start, end = _time_range(start, end)
        metrics = app.state.admin.get_metrics(start, end)
        metrics["start"], metrics["end"] = start.isoformat(), end.isoformat()
        return metrics

    @app.get("/admin/patterns", response_model=List[PatternResponse])
    def get_attack_patterns(
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        operator: str = Depends(require_operator),
    ):
        start, end = _time_range(start, end)
        return [_serialize_pattern(p) for p in app.state.admin.get_attack_patterns(start, end)]

    @app.post("/admin/sweep", response_model=SweepResponse)
    def run_sweep(operator: str = Depends(require_operator)) -> SweepResponse:
        report = app.state.sweeper.run_once()
        return SweepResponse(
            counters=report.counters,
            blocks=report.blocks,
            attempts=report.attempts,
            patterns=report.patterns,
            reputation_entries=report.reputation_entries,
        )

    return app
