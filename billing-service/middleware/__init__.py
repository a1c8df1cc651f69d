"""
Middleware for the Billing Webhook Service
"""

from .error_handler import error_handler_middleware
from .correlation_id import correlation_id_middleware, get_request_id
from .logging_middleware import logging_middleware, configure_logging

__all__ = [
    "error_handler_middleware",
    "correlation_id_middleware",
    "get_request_id",
    "logging_middleware",
    "configure_logging",
]
