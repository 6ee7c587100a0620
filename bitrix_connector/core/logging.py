"""Application logging configuration and middleware.

Logging is configured through ``logging.config.dictConfig`` with key-value
formatting. A FastAPI middleware assigns a request ID to every inbound
webhook so the records emitted while one Bitrix24 event is processed
(including its background dispatch) can be correlated. Records also carry
the Bitrix24 event name once the webhook handler has parsed it.
"""

from __future__ import annotations

import logging
import logging.config
import os
import uuid
from contextvars import ContextVar
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from bitrix_connector.settings import is_development_mode

request_id_ctx_var: ContextVar[str | None] = ContextVar("request_id", default=None)
# Set by the webhook handler; copied into the detached processing task
event_ctx_var: ContextVar[str | None] = ContextVar("bitrix_event", default=None)


class RequestContextFilter(logging.Filter):
    """Inject the request ID and Bitrix24 event name into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx_var.get() or "-"
        record.bitrix_event = event_ctx_var.get() or "-"
        return True


def _build_config(log_level: str) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"request_context": {"()": RequestContextFilter}},
        "formatters": {
            "kv": {
                "format": (
                    "level=%(levelname)s logger=%(name)s request_id=%(request_id)s "
                    "event=%(bitrix_event)s message=%(message)s"
                )
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "kv",
                "filters": ["request_context"],
                "level": log_level,
            }
        },
        "root": {"handlers": ["default"], "level": log_level},
    }


def setup_logging() -> None:
    """Configure root logging; ``LOG_LEVEL`` controls the level (DEBUG in development mode)."""

    default_level = "DEBUG" if is_development_mode() else "INFO"
    log_level = os.getenv("LOG_LEVEL", default_level).upper()
    logging.config.dictConfig(_build_config(log_level))


def mask_secret(value: str | None) -> str:
    """Render a secret for logs without revealing it."""
    return "***" if value else "empty"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Populate a unique request ID for each incoming HTTP request.

    Uses the ``X-Request-ID`` header if provided, otherwise a new UUID4. The
    ID is echoed back in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        token = request_id_ctx_var.set(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_ctx_var.reset(token)


__all__ = [
    "RequestIdMiddleware",
    "event_ctx_var",
    "mask_secret",
    "request_id_ctx_var",
    "setup_logging",
]
