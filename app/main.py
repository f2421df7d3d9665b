import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.dispatchers import build_dispatchers
from app.errors import PlatformDispatchFailure
from app.forward_settings import ForwardSettingStore
from app.forwarder import ForwardOrchestrator
from app.heartbeat import HeartbeatMonitor
from app.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from app.metrics import record_webhook_event, get_metrics, get_metrics_content_type
from app.models import MessageType, Platform
from app.pipeline import EventPipeline, offline_callback
from app.state_store import StateStore
from app.storage import init_db, check_db_health, get_db, get_messages
from app.schemas import (
    ErrorResponse,
    ForwardTestRequest,
    ForwardTestResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    StatsResponse,
    WebhookResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, seed platform settings, start the event workers
    - Shutdown: drain the queue, stop workers and heartbeat timers
    """
    init_db()

    settings_store = ForwardSettingStore()
    settings_store.ensure_defaults()

    state_store = StateStore()
    heartbeat = HeartbeatMonitor(
        on_expire=offline_callback(state_store),
        timeout=settings.HEARTBEAT_TIMEOUT_SECONDS,
    )
    forwarder = ForwardOrchestrator(
        settings_store,
        build_dispatchers(settings.DISPATCH_TIMEOUT_SECONDS, settings.WEBHOOK_MAX_TIMEOUT_SECONDS),
    )
    pipeline = EventPipeline(
        state_store,
        heartbeat,
        forwarder,
        workers=settings.EVENT_WORKERS,
        queue_size=settings.EVENT_QUEUE_SIZE,
    )

    app.state.settings_store = settings_store
    app.state.forwarder = forwarder
    app.state.heartbeat = heartbeat
    app.state.pipeline = pipeline

    await pipeline.start()
    yield
    await pipeline.stop()


app = FastAPI(
    title="SMS Forwarder",
    description="Receives SMS/call events from gateway devices and forwards them to notification platforms",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness check: always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness check: returns 200 only if:
    1. DB is reachable and schema is applied
    2. The event workers are running

    Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None or not pipeline.running:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Event workers not running")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

@app.post("/webhook", response_model=WebhookResponse)
async def webhook(request: Request) -> WebhookResponse:
    """
    Accept a device event and queue it for processing.

    Always answers 200: the event is processed after the response by the
    worker pool, and any failure there is logged, never returned.
    """
    received_at = datetime.now(timezone.utc).isoformat()
    raw_body = await request.body()

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Webhook body is not valid JSON: {e}", extra={"body_size": len(raw_body)})
        record_webhook_event("invalid")
        log_webhook_data(request=request, queued=False)
        return WebhookResponse(timestamp=received_at)

    event_type = payload.get("type") if isinstance(payload, dict) else None
    dev_id = payload.get("devId") if isinstance(payload, dict) else None
    logger.debug(f"Webhook received: type={event_type}, devId={dev_id}")

    queued = request.app.state.pipeline.submit(payload)
    log_webhook_data(request=request, event_type=event_type, dev_id=dev_id, queued=queued)

    return WebhookResponse(timestamp=received_at)


# =============================================================================
# Messages Route
# =============================================================================

@app.get("/messages", response_model=MessagesListResponse)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    msg_type: Annotated[MessageType | None, Query(description="sms or call")] = None,
    phone: Annotated[str | None, Query(description="Sender/caller number (substring)")] = None,
    q: Annotated[str | None, Query(description="Free-text search in message body (case-insensitive)")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List persisted SMS and call records, newest first.
    """
    messages, total = get_messages(
        db=db,
        limit=limit,
        offset=offset,
        msg_type=msg_type.value if msg_type else None,
        phone=phone,
        q=q
    )

    return MessagesListResponse(
        data=[MessageResponse.model_validate(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset
    )


# =============================================================================
# Forwarding Routes
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def forward_statistics(request: Request) -> StatsResponse:
    """
    Forwarding counters per platform plus overall success rate.
    """
    stats = request.app.state.settings_store.statistics()
    return StatsResponse.model_validate(stats, from_attributes=True)


@app.post(
    "/forward/{platform}/test",
    response_model=ForwardTestResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown platform or invalid config"},
        502: {"model": ErrorResponse, "description": "Platform rejected the test message"},
    }
)
async def test_forward(platform: str, body: ForwardTestRequest, request: Request) -> ForwardTestResponse:
    """
    Send a test message with the supplied config; counters are not touched.
    """
    try:
        target = Platform(platform)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"unsupported platform: {platform}")

    try:
        await request.app.state.forwarder.test_forward(target, body.config)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PlatformDispatchFailure as e:
        logger.warning("Test forward failed", extra={"platform": target.value, "error": e.detail})
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.detail)

    return ForwardTestResponse(success=True, message="测试消息发送成功")


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
