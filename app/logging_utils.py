"""
Structured JSON logging.

Every record carries `ts`, `level` and, when known, the `request_id` and
`user_id` of the HTTP request or feed connection it was written under.
One summary line per HTTP request is written by RequestLoggingMiddleware.
"""

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request
from app.utils import format_timestamp, utc_now


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

_CONTEXT_FIELDS = (("request_id", request_id_ctx), ("user_id", user_id_ctx))

request_logger = logging.getLogger("app.requests")


class ChatJsonFormatter(jsonlogger.JsonFormatter):
    """Adds ts (same format as message timestamps), level and context ids."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = format_timestamp(utc_now())
        log_record["level"] = record.levelname
        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value and field not in log_record:
                log_record[field] = value


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers to one JSON handler on
    stdout. uvicorn's access log is disabled; the middleware replaces it.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ChatJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    return root


@contextmanager
def bind_log_context(request_id: Optional[str] = None, user_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag every record logged inside the block with a request id (generated
    when not given) and the caller's user id. Yields the request id.
    """
    request_id = request_id or str(uuid.uuid4())
    request_token = request_id_ctx.set(request_id)
    user_token = user_id_ctx.set(user_id)
    try:
        yield request_id
    finally:
        user_id_ctx.reset(user_token)
        request_id_ctx.reset(request_token)


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one "Request completed" line per HTTP request with method, path,
    status and latency_ms, plus anything the route attached through
    log_request_data. A client-supplied X-Request-ID is reused.

    WebSocket connections bypass this middleware; the feed binds its own
    context with bind_log_context.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        with bind_log_context(
            request_id=request.headers.get("X-Request-ID"),
            user_id=request.headers.get("X-User-Id"),
        ) as request_id:
            request.state.request_id = request_id
            started = time.perf_counter()

            response = await call_next(request)

            latency_seconds = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            # /metrics scrapes would otherwise dominate the request counters
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "route_log_data", {}))
            request_logger.log(_level_for_status(response.status_code), "Request completed", extra=log_data)

            return response


def log_request_data(request: Request, **fields) -> None:
    """
    Attach route-specific fields (message_id, result, marked, ...) to the
    request log line. None values are skipped.
    """
    data = getattr(request.state, "route_log_data", {})
    data.update({key: value for key, value in fields.items() if value is not None})
    request.state.route_log_data = data
