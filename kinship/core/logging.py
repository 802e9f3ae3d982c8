"""
Logging for Kinship Backend

structlog on top of stdlib logging. Production emits one JSON object per
line, development a console renderer. Every HTTP request and websocket
session carries a request id, taken from the X-Request-ID header when the
client sends one.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from kinship.core.config import settings

REQUEST_ID_HEADER = b"x-request-id"

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def add_request_id(logger: Any, method_name: str, event_dict: dict) -> dict:
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def setup_logging() -> None:
    """Configure stdlib and structlog once per app instance."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    json_output = settings.is_production

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s %(request_id)s")
        if json_output
        else logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    handler._kinship_handler = True

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    # tests build several apps; keep a single kinship handler on the root
    for existing in list(root_logger.handlers):
        if getattr(existing, "_kinship_handler", False):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_request_id,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def _incoming_request_id(scope) -> Optional[str]:
    for key, value in scope.get("headers") or []:
        if key == REQUEST_ID_HEADER and value:
            return value.decode("latin-1")
    return None


class RequestIDMiddleware:
    """Bind a request id for HTTP requests and websocket sessions.

    HTTP responses echo the id back in X-Request-ID.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        request_id = _incoming_request_id(scope) or uuid.uuid4().hex
        token = request_id_var.set(request_id)

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                message["headers"] = [*message.get("headers", []), (REQUEST_ID_HEADER, request_id.encode())]
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(token)


class RequestLoggingMiddleware:
    def __init__(self, app):
        self.app = app
        self.logger = get_logger("kinship.request")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = time.perf_counter()
        status_code = None
        method, path = scope.get("method"), scope.get("path")

        async def send_with_status(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status")
            await send(message)

        try:
            await self.app(scope, receive, send_with_status)
        except Exception:
            self.logger.exception("request.error", method=method, path=path)
            raise
        finally:
            self.logger.info(
                "request.end",
                method=method,
                path=path,
                status_code=status_code or 500,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )


class LatencyLogger:
    """Log how long a block took, and whether it raised."""

    def __init__(self, operation: str, logger: structlog.stdlib.BoundLogger, **fields: Any):
        self.operation = operation
        self.logger = logger
        self.fields = fields
        self._started = 0.0

    def __enter__(self) -> "LatencyLogger":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        latency_ms = round((time.perf_counter() - self._started) * 1000, 2)
        if exc_type is None:
            self.logger.info(f"{self.operation}.done", latency_ms=latency_ms, **self.fields)
        else:
            self.logger.warning(
                f"{self.operation}.failed", latency_ms=latency_ms, error=exc_type.__name__, **self.fields
            )
