"""
Structured JSON logging.

Every line carries `ts`, `level` and `logger`, plus whichever scope is
active: `request_id` for HTTP requests, `session_id` for realtime
sessions. Scopes are tracked in context variables so core modules can
log with plain `logging.getLogger(__name__)`.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from relaychat.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_id_ctx: ContextVar[Optional[str]] = ContextVar("session_id", default=None)

# Server loggers that get the JSON handler instead of their own
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Chatty client libraries, capped at WARNING unless LOG_LEVEL is DEBUG
NOISY_LOGGERS = ("sqlalchemy.engine", "urllib3", "cloudinary", "httpx")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds `ts`, `level`, `logger` and the active request/session scope."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["ts"] = log_record.get("ts") or _utc_timestamp()
        log_record["level"] = record.levelname
        log_record["logger"] = log_record.pop("name", record.name)

        for key, ctx in (("request_id", request_id_ctx), ("session_id", session_id_ctx)):
            value = ctx.get()
            if value and key not in log_record:
                log_record[key] = value


def setup_logging(log_level: str = "INFO", quiet: Iterable[str] = NOISY_LOGGERS) -> logging.Logger:
    """
    Route the root logger and the uvicorn loggers to one JSON handler on
    stdout. Uvicorn's access log is disabled; RequestLoggingMiddleware
    writes one line per request instead.
    """
    level = log_level.upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    if level != "DEBUG":
        for name in quiet:
            logging.getLogger(name).setLevel(logging.WARNING)

    return root


request_logger = logging.getLogger("relaychat.requests")


def _route_path(request: Request) -> str:
    """Route template such as /api/chats/{chat_id}/messages; raw path when unrouted."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One JSON line per HTTP request: request_id, method, path, status and
    latency_ms, plus message_id / chat_id / result when the route called
    log_message_data. Also feeds the HTTP request metrics, labelled by
    route template so chat ids do not explode the label space.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            elapsed = time.perf_counter() - started

            if request.url.path != "/metrics":
                record_http_request(request.method, _route_path(request), response.status_code, elapsed)

            fields = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "message_log_data", {}))
            request_logger.log(_level_for_status(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_message_data(request: Request, message_id=None, chat_id=None, result: Optional[str] = None) -> None:
    """
    Attach message fields to the request log line written by the middleware.

    result is one of sent, status_updated, status_ignored, marked_read,
    deleted_for_me, deleted_for_everyone. None values are left out.
    """
    fields = {"message_id": message_id, "chat_id": chat_id, "result": result}
    request.state.message_log_data = {key: str(value) for key, value in fields.items() if value is not None}
