"""
Structured JSON logging and the per-request access log.

Every record carries `ts` (UTC, millisecond ISO-8601) and `level`; records
emitted while a request is being served also carry its `request_id`.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request

JSON_LOG_FORMAT = "%(ts)s %(level)s %(name)s %(message)s"
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
# httpx logs each request URL at INFO; Telegram URLs carry the bot token
QUIET_LOGGERS = ("httpx", "httpcore")
UNMETERED_PATHS = frozenset({"/metrics"})
REQUEST_ID_HEADER = "X-Request-ID"

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

access_log = logging.getLogger("app.requests")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ts, level and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("ts", _utc_timestamp())
        log_record["level"] = record.levelname
        if "request_id" not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log record to stdout as one JSON object per line.

    Uvicorn's loggers share the handler; its access log is switched off
    because RequestLoggingMiddleware writes one line per request instead.
    Non-ASCII message text (SMS bodies, device names) is kept unescaped.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter(JSON_LOG_FORMAT, json_ensure_ascii=False))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One "Request completed" line per HTTP request.

    Log keys: request_id, method, path, status, latency_ms. Webhook requests
    add event_type, dev_id and queued (see `log_webhook_data`).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = request.url.path
            if path not in UNMETERED_PATHS:
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=elapsed,
                )

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                **getattr(request.state, "webhook_log_data", {}),
            }
            access_log.log(_level_for(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, event_type: Any = None, dev_id: Optional[str] = None, queued: bool = False):
    """
    Attach webhook fields to the request so the access log line includes them.

    Args:
        request: FastAPI request object
        event_type: Raw `type` value from the payload
        dev_id: Device identifier from the payload
        queued: Whether the event was accepted by the worker queue
    """
    fields: dict[str, Any] = {"queued": queued}
    if event_type is not None:
        fields["event_type"] = event_type
    if dev_id is not None:
        fields["dev_id"] = dev_id
    request.state.webhook_log_data = fields
