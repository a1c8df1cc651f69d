"""
Structured logging

Request logging middleware plus the JSON formatter used in production.
"""

import json
import logging
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .correlation_id import RequestIdFilter

logger = logging.getLogger(__name__)

# LogRecord attributes that are not user supplied extras
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request with method, path, status and duration

    Webhook bodies are never logged; only whether a signature header came
    with the request.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        # Start timer
        start_time = time.time()
        # Get correlation ID from request state
        correlation_id = getattr(request.state, "correlation_id", None)

        # Log request, never the body
        logger.info(
            "Request started",
            extra={
                "event": "request_started",
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "client_host": request.client.host if request.client else None,
                "signed": "stripe-signature" in request.headers,
            },
        )

        # Process request
        try:
            response = await call_next(request)
        except Exception as exc:
            # Log exception
            duration = time.time() - start_time
            logger.error(
                "Request failed",
                extra={
                    "event": "request_failed",
                    "correlation_id": correlation_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round(duration * 1000, 2),
                    "exception_type": type(exc).__name__,
                },
                exc_info=True,
            )
            raise

        # Calculate duration and log response
        duration = time.time() - start_time
        logger.info(
            "Request completed",
            extra={
                "event": "request_completed",
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
            },
        )

        # Add timing header
        response.headers["X-Response-Time"] = f"{round(duration * 1000, 2)}ms"
        return response


def logging_middleware(app):
    """Add structured logging middleware to FastAPI app"""
    app.add_middleware(StructuredLoggingMiddleware)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, including every extra field"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add all extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def configure_logging(log_level: str = "INFO", log_format: str = "json"):
    """
    Configure root logging

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured output, anything else for plain text
    """
    # Remove existing handlers
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console handler with JSON or plain formatter
    console_handler = logging.StreamHandler()
    console_handler.addFilter(RequestIdFilter())
    if log_format == "json":
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"
            )
        )

    # Set level and add handler
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.addHandler(console_handler)

    logger.info("Logging configured", extra={"log_level": log_level, "log_format": log_format})
