import json
import logging
import os
import time
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from simple_proxy.errors import ProxyConfigurationError
from simple_proxy.utils import client_ip
from simple_proxy.vars import LOG_MAX_DAYS

ACCESS_LOGGER_NAME = "simple_proxy.access"
ACCESS_LOG_FILENAME = "access.log"


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line, taken from the record's ``access`` attribute."""

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, "access", None)
        if event is None:
            event = {
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname,
                "message": record.getMessage(),
            }
        return json.dumps(event, separators=(",", ":"))


def configure_access_log(
    log_dir: str, max_days: int = LOG_MAX_DAYS
) -> TimedRotatingFileHandler:
    """
    Write access events to ``<log_dir>/access.log``, rotated at midnight.

    Rotated files are suffixed with their date and only the last ``max_days``
    are kept. Returns the installed handler so callers can detach it.
    """
    if max_days <= 0:
        raise ProxyConfigurationError("max_days must be a positive number")
    os.makedirs(log_dir, exist_ok=True)
    filename = os.path.abspath(os.path.join(log_dir, ACCESS_LOG_FILENAME))

    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.setLevel(logging.INFO)
    for existing in access_logger.handlers:
        if getattr(existing, "baseFilename", None) == filename:
            return existing

    handler = TimedRotatingFileHandler(
        filename,
        when="midnight",
        backupCount=max_days,
        encoding="utf-8",
    )
    handler.setFormatter(JsonLineFormatter())
    access_logger.addHandler(handler)
    return handler


class AccessLogMiddleware(BaseHTTPMiddleware):
    """
    Emits one structured event per finished response:
    ``{timestamp, clientIP, method, path, statusCode, durationMs}``.
    """

    def __init__(self, app: ASGIApp, logger: Optional[logging.Logger] = None):
        super().__init__(app)
        self.logger = logger or logging.getLogger(ACCESS_LOGGER_NAME)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "clientIP": client_ip(request),
            "method": request.method,
            "path": request.url.path,
            "statusCode": response.status_code,
            "durationMs": round((time.perf_counter() - started) * 1000, 2),
        }
        self.logger.info(
            f"{event['method']} {event['path']} {event['statusCode']} {event['durationMs']}ms",
            extra={"access": event},
        )
        return response
