"""
Utilities for the Billing Webhook Service
"""

from .exceptions import (
    BillingServiceException,
    ValidationError,
    SignatureError,
    PayloadError,
    MissingMetadataError,
    InternalServiceError,
    DatabaseError,
    PersistenceError,
    ExternalServiceError,
    UpstreamLookupError,
    NotificationError,
)

__all__ = [
    "BillingServiceException",
    "ValidationError",
    "SignatureError",
    "PayloadError",
    "MissingMetadataError",
    "InternalServiceError",
    "DatabaseError",
    "PersistenceError",
    "ExternalServiceError",
    "UpstreamLookupError",
    "NotificationError",
]
