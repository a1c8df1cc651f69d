"""
Append-only audit log
"""
from sqlalchemy import Column, String, Integer, DateTime, Enum, Text, Boolean, JSON, Uuid
from datetime import datetime
import uuid
import enum

from .database import Base


class AuditCategory(str, enum.Enum):
    """Audit record category"""
    PAYMENT = "payment"
    SECURITY = "security"
    WEBHOOK = "webhook"


class PaymentEventType(str, enum.Enum):
    """Payment audit event types"""
    PAYMENT_ATTEMPT = "PAYMENT_ATTEMPT"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILURE = "PAYMENT_FAILURE"
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
    PAYMENT_METHOD_UPDATED = "PAYMENT_METHOD_UPDATED"
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"


class SecurityEventType(str, enum.Enum):
    """Security audit event types"""
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    FRAUD_CHECK = "FRAUD_CHECK"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    ACCOUNT_RESTORED = "ACCOUNT_RESTORED"


# Audit types that count as a payment attempt for velocity checks
PAYMENT_ATTEMPT_TYPES = (
    PaymentEventType.PAYMENT_ATTEMPT.value,
    PaymentEventType.PAYMENT_SUCCESS.value,
    PaymentEventType.PAYMENT_FAILURE.value,
)


class AuditLog(Base):
    """Audit trail entry. Rows are only ever inserted."""
    __tablename__ = "audit_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    category = Column(Enum(AuditCategory), nullable=False, index=True)
    event_type = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)

    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    event_metadata = Column(JSON, nullable=True)

    # Stripe references
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), nullable=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)

    # Amounts in minor units
    amount = Column(Integer, nullable=True)
    currency = Column(String(8), nullable=True)

    ip_address = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog {self.id} - {self.category.value}:{self.event_type}>"

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": str(self.id),
            "category": self.category.value,
            "event_type": self.event_type,
            "user_id": self.user_id,
            "success": self.success,
            "error": self.error,
            "metadata": self.event_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
