"""
Request correlation ID middleware

Tags each webhook delivery with an X-Request-ID that follows it into
every log record and Sentry event raised while handling it.
"""
from contextvars import ContextVar
from typing import Optional
import logging
import uuid

import sentry_sdk
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Correlation ID of the request being handled, if any"""
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Adds the current correlation ID to every log record"""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = _request_id.get()
        return True


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add correlation IDs to requests

    Accepts an X-Request-ID from the caller or generates one, and echoes
    it on the response.
    """

    async def dispatch(self, request: Request, call_next):
        # Get or generate correlation ID
        correlation_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        # Store for logging and Sentry
        request.state.correlation_id = correlation_id
        token = _request_id.set(correlation_id)
        sentry_sdk.set_tag("request_id", correlation_id)

        # Process request
        try:
            response = await call_next(request)
        finally:
            _request_id.reset(token)

        # Add to response headers
        response.headers["X-Request-ID"] = correlation_id
        return response


def correlation_id_middleware(app):
    """Add correlation ID middleware to FastAPI app"""
    app.add_middleware(CorrelationIdMiddleware)
