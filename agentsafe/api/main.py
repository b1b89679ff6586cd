"""
HTTP surface of the action governor.

Every route is a thin adapter over the governor, ledger and stream store.
Rejections are returned as {ok: false, code, reason} with a status code
derived from the rejection code; infrastructure faults reach the global
exception handler.
"""

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import logging

from .schemas import (
    ActionRequest,
    VetoRequest,
    ExecuteRequest,
    StreamWebhookRequest,
    StageResultResponse,
    PipelineRunResponse,
    QueuedActionResponse,
    QueuedActionListResponse,
    RejectionResponse,
    StreamEventResponse,
    LiquidationAlertResponse,
    StreamEventListResponse,
    LiquidationAlertListResponse,
    StreamWebhookResponse,
    StreamStatusResponse,
    BudgetResponse,
    AuditEventResponse,
    AuditListResponse,
    HealthResponse,
)
from ..core import heartbeat
from ..core.config import VERSION, debug_enabled, is_heartbeat_enabled, validate_config
from ..core.governor import GovernorRuntime, build_runtime
from ..core.schema import (
    ActionKind,
    ActionStatus,
    LiquidationAlert,
    PipelineRun,
    QueuedAction,
    Rejection,
    RejectionCode,
    StreamEvent,
)
from ..util.logging import logger


REJECTION_STATUS_CODES = {
    RejectionCode.NOT_FOUND: 404,
    RejectionCode.SAFETY_BLOCKED: 422,
    RejectionCode.EXECUTOR_FAILED: 502,
}


REJECTION_RESPONSES = {
    status_code: {"model": RejectionResponse}
    for status_code in sorted(set(REJECTION_STATUS_CODES.values()) | {409})
}


def rejection_response(rejection: Rejection) -> JSONResponse:
    """Map a typed rejection to its JSON body and status code (409 unless listed)."""
    body = RejectionResponse(code=rejection.code.value, reason=rejection.reason)
    return JSONResponse(
        status_code=REJECTION_STATUS_CODES.get(rejection.code, 409),
        content=body.model_dump(),
    )


def _action_response(action: QueuedAction) -> QueuedActionResponse:
    return QueuedActionResponse(**action.to_dict())


def _run_response(run: PipelineRun) -> PipelineRunResponse:
    return PipelineRunResponse(
        id=run.id,
        kind=run.kind.value,
        fingerprint=run.fingerprint,
        cost_usd=run.cost_usd,
        created_at=run.created_at,
        stages=[
            StageResultResponse(name=s.name, result=s.result.value, detail=s.detail)
            for s in run.stages
        ],
        verdict=run.verdict.value,
        reason=run.reason,
    )


def _event_response(event: StreamEvent) -> StreamEventResponse:
    return StreamEventResponse(
        id=event.id,
        timestamp=event.timestamp,
        health_factor=event.health_factor,
        protocol=event.protocol,
        debt_position=event.debt_position,
        chain_id=event.chain_id,
    )


def _alert_response(alert: LiquidationAlert) -> LiquidationAlertResponse:
    return LiquidationAlertResponse(
        id=alert.id,
        timestamp=alert.timestamp,
        event_id=alert.event_id,
        health_factor=alert.health_factor,
        protocol=alert.protocol,
        debt_position=alert.debt_position,
        intent=alert.intent.value,
        per_tx_cap_respected=alert.per_tx_cap_respected,
        risk_level=alert.risk_level.value,
        shortfall_amount=alert.shortfall_amount,
        daily_advisory_cap_note=alert.daily_advisory_cap_note,
    )


def create_app(runtime: GovernorRuntime = None) -> FastAPI:
    """Build the FastAPI application around a runtime (built from config when omitted)."""
    runtime = runtime or build_runtime()
    governor = runtime.governor

    app = FastAPI(
        title="AgentSafe Governor API",
        version=VERSION,
        description="Risk-gated action governor with veto window, safety pipeline and budget ledger",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None
    )
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def startup():
        issues = validate_config()
        for issue in issues:
            logger.warning(f"Config issue: {issue}")

        if is_heartbeat_enabled() and heartbeat.register_expiry_sweep(governor):
            heartbeat.start_background()

        logger.log_operation("api.startup", "success", {"version": VERSION})

    @app.on_event("shutdown")
    def shutdown():
        heartbeat.stop()

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint():
        """Check system health."""
        store_health = runtime.store.health_check()
        queued_count = len(runtime.store.list(ActionStatus.QUEUED)) if store_health else 0

        return HealthResponse(
            status="healthy" if store_health else "unhealthy",
            version=VERSION,
            store_health=store_health,
            queued_count=queued_count,
            config_issues=validate_config(),
        )

    # Governor

    @app.post("/recommend", response_model=PipelineRunResponse)
    def recommend_endpoint(request: ActionRequest):
        """Evaluate a proposed action without queuing it."""
        run = governor.recommend(request.action_kind, request.payload)
        return _run_response(run)

    @app.post("/queue", response_model=QueuedActionResponse, responses=REJECTION_RESPONSES)
    def queue_endpoint(request: ActionRequest):
        """Queue an action behind the veto window."""
        outcome = governor.queue(request.action_kind, request.payload)
        if not outcome.ok:
            return rejection_response(outcome.rejection)
        return _action_response(outcome.action)

    # Define /queued (list) before /queued/{action_id}
    @app.get("/queued", response_model=QueuedActionListResponse)
    def list_queued_endpoint(status: Optional[ActionStatus] = None, kind: Optional[ActionKind] = None):
        """List actions newest first."""
        actions = governor.list_actions(status=status, kind=kind)
        return QueuedActionListResponse(actions=[_action_response(a) for a in actions])

    @app.get("/queued/{action_id}", response_model=QueuedActionResponse)
    def get_queued_endpoint(action_id: str):
        action = governor.get(action_id)
        if not action:
            raise HTTPException(status_code=404, detail="Action not found")
        return _action_response(action)

    @app.post("/veto", response_model=QueuedActionResponse, responses=REJECTION_RESPONSES)
    def veto_endpoint(request: VetoRequest):
        """Veto a queued action."""
        outcome = governor.veto(request.action_id, request.reason)
        if not outcome.ok:
            return rejection_response(outcome.rejection)
        return _action_response(outcome.action)

    @app.post("/execute", responses=REJECTION_RESPONSES)
    def execute_endpoint(request: ExecuteRequest):
        """Execute a queued action whose veto window has elapsed."""
        result = governor.execute(request.action_id)
        if not result.ok:
            return rejection_response(result.rejection)
        return result.to_dict()

    # Streams

    @app.get("/stream/events", response_model=StreamEventListResponse)
    def stream_events_endpoint(limit: int = 20):
        events = runtime.streams.get_recent_events(limit)
        return StreamEventListResponse(events=[_event_response(e) for e in events])

    @app.get("/stream/alerts", response_model=LiquidationAlertListResponse)
    def stream_alerts_endpoint(limit: int = 20):
        alerts = runtime.streams.get_recent_alerts(limit)
        return LiquidationAlertListResponse(alerts=[_alert_response(a) for a in alerts])

    @app.post("/stream/webhook", response_model=StreamWebhookResponse, status_code=202)
    def stream_webhook_endpoint(request: StreamWebhookRequest):
        """Ingest a protocol health event and derive any liquidation alert."""
        raw = dict(request.raw or {})
        if request.shortfall_amount is not None:
            raw["shortfallAmount"] = request.shortfall_amount

        event, alert = runtime.streams.ingest(
            health_factor=request.health_factor,
            protocol=request.protocol,
            debt_position=request.debt_position,
            chain_id=request.chain_id,
            raw=raw,
        )
        return StreamWebhookResponse(
            event=_event_response(event),
            alert=_alert_response(alert) if alert else None,
        )

    @app.get("/stream/status", response_model=StreamStatusResponse)
    def stream_status_endpoint():
        return StreamStatusResponse(**runtime.streams.status())

    # Ledger and audit

    @app.get("/budget", response_model=BudgetResponse)
    def budget_endpoint():
        """Ledger snapshot with runway projection."""
        return BudgetResponse(**runtime.ledger.snapshot())

    @app.get("/audit", response_model=AuditListResponse)
    def audit_endpoint(limit: int = 100):
        """Governance audit trail, newest first."""
        events = runtime.store.list_events(limit)
        return AuditListResponse(events=[AuditEventResponse(**e.to_dict()) for e in events])

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Handle all unhandled exceptions."""
        logging.getLogger("agentsafe").error(f"Unhandled exception: {exc}")
        content = {"detail": "Internal server error"}
        if debug_enabled():
            content["debug"] = str(exc)
        return JSONResponse(
            status_code=500,
            content=content,
        )

    return app


app = None


def get_app() -> FastAPI:
    """Module-level application, built on first use (``uvicorn agentsafe.api.main:get_app --factory``)."""
    global app
    if app is None:
        app = create_app()
    return app
