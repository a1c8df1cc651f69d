"""
Billing and subscription models
"""
from sqlalchemy import Column, String, DateTime, Enum, Boolean, Uuid
from datetime import datetime
import uuid
import enum

from .database import Base


class SubscriptionTier(str, enum.Enum):
    """Plan level, tracked independently of subscription status"""
    FREE = "free"
    PAID = "paid"


class SubscriptionStatus(str, enum.Enum):
    """Subscription status"""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class AccountStatus(str, enum.Enum):
    """User account status"""
    ACTIVE = "active"
    SUSPENDED = "suspended"


class User(Base):
    """Denormalized billing view of a user"""
    __tablename__ = "users"

    # External auth provider id, carried as `user_id` in Stripe metadata
    id = Column(String(64), primary_key=True)

    email = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=True)

    # Mirror of the subscription tier
    tier = Column(Enum(SubscriptionTier), nullable=False, default=SubscriptionTier.FREE, index=True)
    onboarding_complete = Column(Boolean, default=False, nullable=False)

    # Account status
    account_status = Column(Enum(AccountStatus), nullable=False, default=AccountStatus.ACTIVE, index=True)
    suspended_reason = Column(String(100), nullable=True)
    suspended_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<User {self.id} - {self.tier.value if self.tier else None}>"

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "tier": self.tier.value if self.tier else None,
            "onboarding_complete": self.onboarding_complete,
            "account_status": self.account_status.value if self.account_status else None,
            "suspended_reason": self.suspended_reason,
            "suspended_at": self.suspended_at.isoformat() if self.suspended_at else None,
        }


class Subscription(Base):
    """Subscription state for a user"""
    __tablename__ = "subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, unique=True, index=True)

    # Subscription details
    tier = Column(Enum(SubscriptionTier), nullable=False, default=SubscriptionTier.FREE, index=True)
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)

    # Stripe integration
    stripe_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_customer_id = Column(String(255), nullable=True, index=True)

    # Period tracking
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)

    # Trial
    trial_end = Column(DateTime, nullable=True)

    # Cancellation
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Subscription {self.id} - {self.tier.value} ({self.status.value})>"

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_customer_id": self.stripe_customer_id,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
