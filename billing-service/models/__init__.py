"""
Database models for the Billing Webhook Service
"""
from .database import Base, engine, SessionLocal, get_db
from .billing import (
    User,
    Subscription,
    SubscriptionTier,
    SubscriptionStatus,
    AccountStatus,
)
from .audit import (
    AuditLog,
    AuditCategory,
    PaymentEventType,
    SecurityEventType,
    PAYMENT_ATTEMPT_TYPES,
)
from .webhook_event import ProcessedWebhookEvent, WebhookEventStatus

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "get_db",
    "User",
    "Subscription",
    "SubscriptionTier",
    "SubscriptionStatus",
    "AccountStatus",
    "AuditLog",
    "AuditCategory",
    "PaymentEventType",
    "SecurityEventType",
    "PAYMENT_ATTEMPT_TYPES",
    "ProcessedWebhookEvent",
    "WebhookEventStatus",
]
