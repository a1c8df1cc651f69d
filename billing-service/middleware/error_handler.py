"""
Global error handlers

Render every failure that escapes an endpoint as a structured JSON body
carrying the request id.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from utils.exceptions import BillingServiceException

logger = logging.getLogger(__name__)


def _with_request_id(request: Request, body: dict) -> dict:
    correlation_id = getattr(request.state, "correlation_id", None)
    if correlation_id:
        body["request_id"] = correlation_id
    return body


async def billing_exception_handler(
    request: Request, exc: BillingServiceException
) -> JSONResponse:
    """
    Handle BillingServiceException

    Client errors (rejected webhook deliveries) are logged as warnings,
    server errors as errors.
    """
    level = logging.WARNING if exc.status_code < 500 else logging.ERROR
    logger.log(
        level,
        f"{type(exc).__name__}: {exc.error_code} - {exc.message}",
        extra={
            "error_code": exc.error_code,
            "details": exc.details,
            "path": request.url.path,
        },
    )

    return JSONResponse(
        status_code=exc.status_code, content=_with_request_id(request, exc.to_dict())
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors"""
    logger.warning(
        f"Validation error on {request.url.path}",
        extra={"path": request.url.path, "errors": exc.errors()},
    )

    body = {
        "error": "VALIDATION_ERROR",
        "message": "Request validation failed",
        "details": {"errors": exc.errors()},
    }
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_with_request_id(request, body),
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Handle HTTP exceptions such as 404 and 405"""
    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra={"status_code": exc.status_code, "path": request.url.path},
    )

    body = {"error": "HTTP_ERROR", "message": str(exc.detail), "details": {}}
    return JSONResponse(
        status_code=exc.status_code, content=_with_request_id(request, body)
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {str(exc)}",
        extra={"path": request.url.path, "exception_type": type(exc).__name__},
        exc_info=True,
    )

    body = {
        "error": "INTERNAL_ERROR",
        "message": "An internal error occurred",
        "details": {"type": type(exc).__name__},
    }
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_with_request_id(request, body),
    )


def error_handler_middleware(app):
    """Register the error handlers on a FastAPI app"""
    app.add_exception_handler(BillingServiceException, billing_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("Error handlers registered")
