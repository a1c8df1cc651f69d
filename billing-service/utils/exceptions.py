"""
Custom exception hierarchy for the Billing Webhook Service

Provides structured error handling with proper HTTP status codes and error context.
Only verification failures ever reach the webhook caller; everything raised
past the verifier is contained by the dispatcher.
"""

from typing import Optional, Dict, Any
from datetime import datetime


class BillingServiceException(Exception):
    """
    Base exception for all billing service errors

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        status_code: HTTP status code
        details: Additional error context
        timestamp: When the error occurred
    """

    def __init__(
        self,
        message: str,
        error_code: str = "BILLING_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.utcnow().isoformat()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


# 400 - Client Errors
class ValidationError(BillingServiceException):
    """Invalid input data"""

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details,
        )


class SignatureError(ValidationError):
    """Webhook signature header missing or invalid"""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Webhook signature verification failed: {reason}",
            error_code="INVALID_SIGNATURE",
            details={"reason": reason},
        )


class PayloadError(ValidationError):
    """Signed payload could not be decoded into a known event shape"""

    def __init__(self, reason: str, event_type: Optional[str] = None):
        details = {"reason": reason}
        if event_type:
            details["event_type"] = event_type
        super().__init__(
            message=f"Invalid webhook payload: {reason}",
            error_code="INVALID_PAYLOAD",
            details=details,
        )


# Handler no-op
class MissingMetadataError(BillingServiceException):
    """Provider object carries no user_id metadata; the event is skipped"""

    def __init__(self, object_type: str, object_id: Optional[str] = None):
        super().__init__(
            message=f"No user_id in {object_type} metadata",
            error_code="MISSING_METADATA",
            status_code=200,
            details={"object_type": object_type, "object_id": object_id},
        )


# 500 - Internal Server Errors
class InternalServiceError(BillingServiceException):
    """Internal service error"""

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if service:
            error_details["service"] = service
        super().__init__(
            message=message,
            error_code="INTERNAL_ERROR",
            status_code=500,
            details=error_details,
        )


class DatabaseError(InternalServiceError):
    """Database operation failed"""

    def __init__(self, operation: str, error: str):
        super().__init__(
            message=f"Database {operation} failed: {error}",
            service="database",
            details={"operation": operation, "error": error},
        )


class PersistenceError(DatabaseError):
    """Subscription or user write failed"""

    def __init__(self, operation: str, error: str, user_id: Optional[str] = None):
        super().__init__(operation=operation, error=error)
        if user_id:
            self.details["user_id"] = user_id


# 502 - External Service Errors
class ExternalServiceError(BillingServiceException):
    """External service or dependency error"""

    def __init__(
        self, service: str, message: str, details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        error_details["service"] = service
        super().__init__(
            message=f"{service} error: {message}",
            error_code="EXTERNAL_SERVICE_ERROR",
            status_code=502,
            details=error_details,
        )


class UpstreamLookupError(ExternalServiceError):
    """Stripe API call failed"""

    def __init__(
        self, operation: str, error: str, details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        error_details["operation"] = operation
        super().__init__(
            service="stripe",
            message=f"Stripe {operation} failed: {error}",
            details=error_details,
        )


class NotificationError(ExternalServiceError):
    """Email delivery failed. Never propagated past the notifier."""

    def __init__(self, template: str, error: str):
        super().__init__(
            service="email",
            message=f"Failed to send '{template}' email: {error}",
            details={"template": template},
        )
