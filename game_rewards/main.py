import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from game_rewards.balance import BalanceStore
from game_rewards.config import GameProvider, ProviderRegistry, Settings, parse_provider
from game_rewards.database import Base, build_engine, build_session_factory, get_db
from game_rewards.errors import GameRewardsError, MalformedCallback
from game_rewards.fraud import FraudGate, VelocityFraudGate
from game_rewards.helpers import (
    generate_request_id,
    serialize_discrepancy,
    serialize_provider,
    serialize_report,
    serialize_transaction,
)
from game_rewards.ledger import (
    CreditingLedger,
    get_unreconciled_transactions,
    list_transactions,
    update_reconciliation_status,
)
from game_rewards.logging_config import get_logger
from game_rewards.metrics import MetricEntry, MetricsRecorder, SqlMetricsSink, get_dashboard_stats, get_provider_metrics
from game_rewards.pipeline import CallbackPipeline
from game_rewards.reconciliation import (
    generate_daily_report,
    get_reconciliation_reports,
    get_report_discrepancies,
    mark_report_reviewed,
    parse_report_date,
)
from game_rewards.schemas.api_schemas import (
    CallbackResponse,
    GameStartRequest,
    GameStartResponse,
    ReconciliationUpdateRequest,
    ReportReviewRequest,
)
from game_rewards.security import require_bearer_token
from game_rewards.sessions import SessionManager


logger = get_logger(__name__)

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Game Reward Hub metrics worker")
    app.state.metrics.start()
    try:
        yield
    finally:
        logger.info("Flushing metrics before shutdown")
        await app.state.metrics.aclose()


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ProviderRegistry] = None,
    fraud_gate: Optional[FraudGate] = None,
    balance_store: Optional[BalanceStore] = None,
) -> FastAPI:
    """
    Build the hub. Configuration is read once here and handed to every
    collaborator; nothing below this point reads the environment.
    """
    settings = settings or Settings()
    registry = registry or ProviderRegistry.from_env()

    engine = build_engine(settings.db_url)
    Base.metadata.create_all(bind=engine)
    session_factory = build_session_factory(engine)

    sessions = SessionManager(registry, ttl_seconds=settings.game_session_expiry_seconds)
    app = FastAPI(title="Game Reward Hub", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.sessions = sessions
    app.state.pipeline = CallbackPipeline(
        registry,
        sessions,
        fraud_gate or VelocityFraudGate.from_settings(settings),
        CreditingLedger(balance_store),
        fraud_reject_threshold=settings.fraud_reject_threshold,
    )
    app.state.metrics = MetricsRecorder(
        SqlMetricsSink(session_factory),
        flush_threshold=settings.metrics_flush_threshold,
        max_buffer=settings.metrics_max_buffer,
        flush_interval_seconds=settings.metrics_flush_interval_seconds,
    )
    _register_routes(app)
    return app


def _require_provider(value: str) -> GameProvider:
    provider = parse_provider(value)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"unknown provider: {value}")
    return provider


async def _read_callback_payload(request: Request) -> dict:
    if request.method == "GET":
        return dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        body = await request.json()
    except ValueError as exc:
        raise MalformedCallback("Invalid payload") from exc
    if not isinstance(body, dict):
        raise MalformedCallback("Invalid payload")
    return body


def _register_routes(app: FastAPI) -> None:
    @app.post("/games/start", response_model=GameStartResponse)
    async def start_game(request: GameStartRequest, db: Session = Depends(get_db)):
        sessions: SessionManager = app.state.sessions
        try:
            grant = sessions.create_session(db, request.userId, request.provider, request.gameId)
        except GameRewardsError as exc:
            logger.warning(
                "Session creation failed userId=%s provider=%s error=%s",
                request.userId,
                request.provider.value,
                exc.detail,
            )
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return {
            "success": True,
            "sessionToken": grant.session_token,
            "launchUrl": grant.launch_url,
            "sdkConfig": grant.sdk_config,
            "expiresAt": grant.expires_at,
        }

    @app.api_route("/games/callback/{provider}", methods=["GET", "POST"], response_model=CallbackResponse)
    async def game_callback(
        provider: str,
        request: Request,
        db: Session = Depends(get_db),
        x_signature: str | None = Header(None),
    ):
        game_provider = _require_provider(provider)
        request_id = generate_request_id()
        started = time.monotonic()
        metrics: MetricsRecorder = app.state.metrics
        pipeline: CallbackPipeline = app.state.pipeline

        def track(success: bool, rejected: bool, points: Optional[int] = None):
            metrics.record(MetricEntry(
                provider=game_provider.value,
                success=success,
                latency_ms=(time.monotonic() - started) * 1000,
                rejected=rejected,
                points_credited=points,
            ))

        try:
            payload = await _read_callback_payload(request)
            result = pipeline.process(db, game_provider, payload, x_signature, request_id)
        except GameRewardsError as exc:
            track(False, exc.status_code in (400, 403))
            logger.warning(
                "Callback rejected requestId=%s provider=%s status=%s error=%s",
                request_id,
                game_provider.value,
                exc.status_code,
                exc.detail,
            )
            return JSONResponse(
                status_code=exc.status_code,
                content=CallbackResponse(success=False, error=exc.detail).model_dump(),
            )
        except Exception:  # noqa: BLE001
            track(False, False)
            logger.exception("event=callback_error requestId=%s provider=%s", request_id, game_provider.value)
            return JSONResponse(
                status_code=500,
                content=CallbackResponse(success=False, error="Failed to process callback").model_dump(),
            )

        track(True, False, result.points_credited)
        return CallbackResponse(
            success=True,
            message=result.message,
            transactionId=result.transaction_id,
            pointsCredited=result.points_credited,
            isDuplicate=result.is_duplicate,
        )

    @app.get("/admin/games/providers")
    async def list_providers(_auth=Depends(require_bearer_token)):
        registry: ProviderRegistry = app.state.registry
        return [serialize_provider(config) for config in registry.all()]

    @app.get("/admin/games/transactions")
    async def admin_transactions(
        provider: str | None = None,
        user_id: str | None = Query(None, alias="userId"),
        status: str | None = None,
        start_date: datetime | None = Query(None, alias="startDate"),
        end_date: datetime | None = Query(None, alias="endDate"),
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=100),
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        game_provider = _require_provider(provider) if provider else None
        records, total = list_transactions(
            db,
            provider=game_provider,
            user_id=user_id,
            status=status,
            start=start_date,
            end=end_date,
            page=page,
            limit=limit,
        )
        return {
            "transactions": [serialize_transaction(r) for r in records],
            "total": total,
            "page": page,
            "limit": limit,
        }

    @app.get("/admin/games/transactions/unreconciled")
    async def admin_unreconciled_transactions(
        provider: str,
        limit: int = Query(100, ge=1, le=500),
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        records = get_unreconciled_transactions(db, _require_provider(provider), limit)
        return [serialize_transaction(r) for r in records]

    @app.patch("/admin/games/transactions/{transaction_id}/reconciliation")
    async def admin_update_reconciliation(
        transaction_id: str,
        body: ReconciliationUpdateRequest,
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        try:
            record = update_reconciliation_status(db, transaction_id, body.status, body.notes)
        except GameRewardsError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return serialize_transaction(record)

    @app.get("/admin/games/metrics")
    async def admin_metrics(
        hours: int = Query(24, ge=1, le=24 * 31),
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        return get_dashboard_stats(db, hours)

    @app.get("/admin/games/metrics/{provider}")
    async def admin_provider_metrics(
        provider: str,
        start: datetime,
        end: datetime | None = None,
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        metrics = get_provider_metrics(db, _require_provider(provider), start, end)
        return {
            "provider": metrics.provider,
            "totalWebhooks": metrics.total_webhooks,
            "successfulWebhooks": metrics.successful_webhooks,
            "failedWebhooks": metrics.failed_webhooks,
            "rejectedWebhooks": metrics.rejected_webhooks,
            "avgProcessingTimeMs": metrics.avg_processing_time_ms,
            "totalPointsCredited": metrics.total_points_credited,
            "successRate": metrics.success_rate,
        }

    @app.post("/admin/reconciliation/{provider}/{report_date}")
    async def run_reconciliation(
        provider: str,
        report_date: str,
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        game_provider = _require_provider(provider)
        try:
            day = parse_report_date(report_date)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD") from exc
        report = generate_daily_report(db, game_provider, day)
        return serialize_report(report)

    @app.get("/admin/reconciliation/reports")
    async def list_reports(
        provider: str | None = None,
        limit: int = Query(30, ge=1, le=365),
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        game_provider = _require_provider(provider) if provider else None
        return [serialize_report(r) for r in get_reconciliation_reports(db, game_provider, limit)]

    @app.get("/admin/reconciliation/reports/{report_id}/discrepancies")
    async def list_discrepancies(
        report_id: int,
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        try:
            records = get_report_discrepancies(db, report_id)
        except GameRewardsError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return [serialize_discrepancy(r) for r in records]

    @app.patch("/admin/reconciliation/reports/{report_id}")
    async def review_report(
        report_id: int,
        body: ReportReviewRequest,
        _auth=Depends(require_bearer_token),
        db: Session = Depends(get_db),
    ):
        try:
            report = mark_report_reviewed(db, report_id, body.notes, body.status)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except GameRewardsError as exc:
            raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
        return serialize_report(report)

    @app.get("/health")
    async def health():
        return {"status": "ok"}
