"""
FastAPI server over the TrustPulse pipeline facade.

Submissions, read-only queries (deltas, snapshots, alerts, rewards, fusion,
export, metrics) and admin operations. The pipeline is built in create_app()
or lazily on first request; the lifespan starts/stops the background runtime.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend_trustpulse import __version__
from backend_trustpulse.agent_worker.runtime import TrustPulseRuntime
from backend_trustpulse.alerts.models import AlertSeverity, AlertState
from backend_trustpulse.config.settings import get_settings
from backend_trustpulse.core.exceptions import RejectionReason
from backend_trustpulse.database.models import Submission, Target
from backend_trustpulse.gateway.gateway import Accepted
from backend_trustpulse.pipeline import TrustPulsePipeline, build_pipeline
from backend_trustpulse.trustpulse_logging import get_logger

logger = get_logger(__name__)

REJECTION_STATUS = {
    RejectionReason.INTEGRITY_VIOLATION: 400,
    RejectionReason.TIMESTAMP_DRIFT: 400,
    RejectionReason.RATE_LIMITED: 429,
    RejectionReason.STORAGE_FAILURE: 503,
}


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------


class TargetModel(BaseModel):
    group_id: str = Field(..., min_length=1, max_length=128, description="Deck / group identifier")
    sub_id: str | None = Field(None, max_length=128, description="Module identifier")
    item_id: str | None = Field(None, max_length=128, description="Component identifier (requires sub_id)")


class SubmissionRequest(BaseModel):
    """POST /submissions body."""

    target: TargetModel
    feedback_type: Literal["support", "dissent"]
    intensity: int = Field(..., ge=1, le=5)
    submitter_id: str = Field(..., min_length=1, max_length=256, description="Anonymous submitter identity")
    submitter_tier: Literal["T1", "T2", "T3"]
    integrity_proof: str = Field(..., min_length=1, max_length=512)
    submitted_at: float = Field(..., allow_inf_nan=False, description="Unix seconds")
    explanation: str | None = Field(None, max_length=2000)
    submission_id: str | None = Field(None, max_length=128, description="Client id for idempotent retries")


class RegisterTargetResponse(BaseModel):
    target_id: str
    group_id: str
    total_submissions: int


class ConfigUpdateRequest(BaseModel):
    """PATCH /admin/config body. Omitted fields are left unchanged."""

    volatility_threshold: float | None = Field(None, ge=0)
    alert_critical_threshold: float | None = Field(None, ge=0)
    alert_moderate_threshold: float | None = Field(None, ge=0)
    alert_broadcast_threshold: float | None = Field(None, ge=0)
    reward_enabled: bool | None = None
    reward_thresholds: dict[str, float] | None = None
    reward_amounts: dict[str, float] | None = None
    reward_cooldown_sec: float | None = Field(None, ge=0)
    reward_max_per_hour: int | None = Field(None, ge=0)
    fusion_min_trust_level: float | None = Field(None, ge=0)
    fusion_dampening_factor: float | None = Field(None, ge=0)
    rate_window_sec: float | None = Field(None, ge=0)
    rate_max_per_window: int | None = Field(None, ge=1)
    max_drift_sec: float | None = Field(None, ge=0)


class StatusResponse(BaseModel):
    id: str
    status: str


# -----------------------------------------------------------------------------
# App factory, lifespan and dependency
# -----------------------------------------------------------------------------


def create_app(pipeline: TrustPulsePipeline | None = None, *, start_runtime: bool | None = None) -> FastAPI:
    """
    Build the FastAPI app. pipeline: injected instance (tests); default is built
    from env on startup. start_runtime: run background tasks in the lifespan
    (default: TRUSTPULSE_RUNTIME_ENABLED).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        if getattr(app.state, "pipeline", None) is None:
            app.state.pipeline = build_pipeline(settings)
        run_bg = settings.runtime_enabled if start_runtime is None else start_runtime
        runtime = None
        if run_bg:
            runtime = TrustPulseRuntime(app.state.pipeline)
            runtime.start()
            logger.info("api_runtime_started")
        yield
        if runtime is not None:
            runtime.stop()
            logger.info("api_runtime_stopped")

    app = FastAPI(
        title="TrustPulse API",
        description="Trust sentiment intake, volatility alerts, reward signals and fusion summaries.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    _register_routes(app)
    return app


def get_pipeline(request: Request) -> TrustPulsePipeline:
    """Dependency: the app-scoped pipeline (built on first use when the lifespan did not run)."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = build_pipeline(get_settings())
        request.app.state.pipeline = pipeline
    return pipeline


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health() -> dict[str, str]:
        """Liveness check: API is up."""
        return {"status": "ok"}

    @app.post("/submissions")
    def submit(body: SubmissionRequest, pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> JSONResponse:
        """
        Admit one submission. 202 accepted; 400 integrity/drift; 429 rate limited
        (Retry-After header); 503 store unavailable.
        """
        try:
            submission = Submission(
                target=Target(**body.target.model_dump()),
                feedback_type=body.feedback_type,
                intensity=body.intensity,
                submitter_id=body.submitter_id,
                submitter_tier=body.submitter_tier,
                integrity_proof=body.integrity_proof,
                submitted_at=body.submitted_at,
                explanation=body.explanation,
                submission_id=body.submission_id or "",
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        result = pipeline.submit(submission)
        if isinstance(result, Accepted):
            return JSONResponse(status_code=202, content=result.to_dict())
        headers = {}
        if result.reset_time is not None:
            retry_after = max(0, int(result.reset_time - pipeline.now()))
            headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=REJECTION_STATUS.get(result.reason, 400),
            content=result.to_dict(),
            headers=headers,
        )

    @app.post("/targets", status_code=201, response_model=RegisterTargetResponse)
    def register_target(body: TargetModel, pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> RegisterTargetResponse:
        """Register a target so it is aggregated before its first submission."""
        try:
            target = Target(**body.model_dump())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        delta = pipeline.register_target(target)
        return RegisterTargetResponse(
            target_id=delta.target_id,
            group_id=delta.group_id,
            total_submissions=delta.total_submissions,
        )

    @app.get("/deltas/{target_id}")
    def get_delta(target_id: str, pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> dict[str, Any]:
        delta = pipeline.get_delta(target_id)
        if delta is None:
            raise HTTPException(status_code=404, detail=f"No delta for target {target_id}")
        return {**delta.to_dict(), "net_sentiment": delta.net_sentiment}

    @app.get("/snapshots/{target_id}")
    def get_snapshot(
        target_id: str,
        history: int = Query(0, ge=0, le=100, description="Also return this many past snapshots"),
        pipeline: TrustPulsePipeline = Depends(get_pipeline),
    ) -> dict[str, Any]:
        snapshot = pipeline.get_snapshot(target_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"No snapshot for target {target_id}")
        data = snapshot.to_dict()
        if history:
            data["history"] = [s.to_dict() for s in pipeline.aggregation.get_history(target_id, limit=history)]
        return data

    @app.get("/alerts")
    def get_alerts(
        severity: Literal["low", "medium", "high", "critical"] | None = None,
        since_hours: float = Query(24.0, gt=0),
        pipeline: TrustPulsePipeline = Depends(get_pipeline),
    ) -> list[dict[str, Any]]:
        alerts = pipeline.get_alerts(
            severity=AlertSeverity(severity) if severity else None,
            since_hours=since_hours,
        )
        return [a.to_dict() for a in alerts]

    @app.get("/rewards")
    def get_rewards(
        processed: bool | None = None,
        pipeline: TrustPulsePipeline = Depends(get_pipeline),
    ) -> list[dict[str, Any]]:
        return [s.to_dict() for s in pipeline.get_reward_signals(processed=processed)]

    @app.get("/fusion/summary")
    def fusion_summary(pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> dict[str, Any]:
        return pipeline.get_fusion_summary()

    @app.get("/export")
    def export(pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> dict[str, Any]:
        return pipeline.export()

    @app.get("/throttle/{submitter_id}")
    def throttle_status(submitter_id: str, pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> dict[str, Any]:
        return pipeline.throttle_status(submitter_id)

    @app.get("/metrics")
    def metrics(pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> dict[str, Any]:
        return pipeline.metrics()

    @app.post("/admin/rewards/{signal_id}/processed", response_model=StatusResponse)
    def mark_reward_processed(signal_id: str, pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> StatusResponse:
        """404 unknown signal; 409 already processed."""
        if pipeline.rewards.get_signal(signal_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown reward signal {signal_id}")
        if not pipeline.mark_reward_processed(signal_id):
            raise HTTPException(status_code=409, detail="Reward signal already processed")
        return StatusResponse(id=signal_id, status="processed")

    @app.post("/admin/alerts/{alert_id}/ack", response_model=StatusResponse)
    def acknowledge_broadcast(alert_id: str, pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> StatusResponse:
        """404 unknown alert; 409 when the alert is not awaiting broadcast."""
        alert = pipeline.alerts.get_alert(alert_id)
        if alert is None:
            raise HTTPException(status_code=404, detail=f"Unknown alert {alert_id}")
        if not pipeline.acknowledge_broadcast(alert_id):
            raise HTTPException(status_code=409, detail=f"Alert is {alert.state.value}, not pending broadcast")
        return StatusResponse(id=alert_id, status=AlertState.BROADCAST_COMPLETE.value)

    @app.patch("/admin/config")
    def update_config(body: ConfigUpdateRequest, pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> dict[str, Any]:
        try:
            return pipeline.update_config(**body.model_dump(exclude_none=True))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/admin/aggregate")
    def run_aggregation(pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> dict[str, Any]:
        """Run one aggregation cycle now (alerts and rewards react to it)."""
        return pipeline.run_aggregation_cycle().to_dict()

    @app.post("/admin/fusion/sync")
    def run_fusion(pipeline: TrustPulsePipeline = Depends(get_pipeline)) -> dict[str, Any]:
        return pipeline.run_fusion_sync().to_dict()


app = create_app()
