import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from sms_booking.metrics import record_http_request


# request_id of the request being handled, picked up by every log line
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


@contextmanager
def request_context(request_id: Optional[str]):
    """Bind request_id to log lines emitted inside the block, e.g. by background delivery."""
    token = request_id_ctx.set(request_id)
    try:
        yield
    finally:
        request_id_ctx.reset(token)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 `ts`, the level and the request_id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.now(timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        if "request_id" not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    logger.addHandler(json_handler)

    # Route Uvicorn through the same JSON handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # The middleware below logs every request itself
    logging.getLogger("uvicorn.access").disabled = True

    # Gateway calls are recorded on the message; keep httpx quiet
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys: ts, level, request_id, method, path, status, latency_ms.

    For /webhook requests, also includes:
    - processed / successful / failed: per-message counts of the batch
    - result: ok, invalid_signature, invalid_payload, error
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        with request_context(request_id):
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            elapsed = time.perf_counter() - started

            # scrapes of /metrics would dominate the request counters
            if request.url.path != "/metrics":
                record_http_request(request.method, request.url.path, response.status_code, elapsed)

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                **getattr(request.state, "webhook_log_data", {}),
            }
            level = logging.INFO
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            logging.getLogger("sms_booking.requests").log(level, "Request completed", extra=log_data)

        return response


def log_webhook_data(
    request: Request,
    result: str,
    processed: int = 0,
    successful: int = 0,
    failed: int = 0,
):
    """
    Attach webhook batch summary to the request state.
    This data will be included in the request log by the middleware.
    """
    request.state.webhook_log_data = {
        "result": result,
        "processed": processed,
        "successful": successful,
        "failed": failed,
    }
