"""
Subscription and user persistence

Partial updates: only the keys passed are written, and an explicit None
clears a column.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    AccountStatus,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    User,
)
from utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

SUBSCRIPTION_FIELDS = {
    "tier": SubscriptionTier,
    "status": SubscriptionStatus,
    "stripe_subscription_id": None,
    "stripe_customer_id": None,
    "trial_end": None,
    "current_period_start": None,
    "current_period_end": None,
    "cancel_at_period_end": None,
}

USER_FIELDS = {
    "email": None,
    "name": None,
    "tier": SubscriptionTier,
    "onboarding_complete": None,
    "account_status": AccountStatus,
    "suspended_reason": None,
    "suspended_at": None,
}


def _coerce(allowed: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)}")
    values = {}
    for key, value in fields.items():
        enum_type = allowed[key]
        if enum_type is not None and value is not None:
            value = enum_type(value)
        values[key] = value
    return values


class BillingRepository:
    """
    Subscription and user store

    Each write commits on its own unless it runs inside atomic(), in which
    case everything inside the block commits or rolls back together.
    """

    def __init__(self, db: Session):
        self.db = db
        self._in_transaction = False

    @contextmanager
    def atomic(self) -> Iterator["BillingRepository"]:
        """Run several writes as one transaction"""
        # Nested blocks join the outer transaction
        if self._in_transaction:
            yield self
            return

        self._in_transaction = True
        try:
            yield self
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Transaction rolled back: {e}")
            raise PersistenceError("transaction", str(e))
        except Exception:
            self.db.rollback()
            raise
        finally:
            self._in_transaction = False

    def _save(self, operation: str, user_id: str):
        try:
            # Inside atomic() the block commits
            if self._in_transaction:
                self.db.flush()
            else:
                self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Database {operation} failed for user {user_id}: {e}")
            raise PersistenceError(operation, str(e), user_id=user_id)

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        try:
            return self.db.query(User).filter(User.id == user_id).first()
        except SQLAlchemyError as e:
            raise PersistenceError("user lookup", str(e), user_id=user_id)

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        try:
            return (
                self.db.query(Subscription)
                .filter(Subscription.user_id == user_id)
                .first()
            )
        except SQLAlchemyError as e:
            raise PersistenceError("subscription lookup", str(e), user_id=user_id)

    def update_subscription(
        self, user_id: str, fields: Dict[str, Any], guard_canceled: bool = False
    ) -> Subscription:
        """
        Partially update a user's subscription, creating it if missing

        Args:
            user_id: Owning user id
            fields: Columns to write; None clears a column
            guard_canceled: Keep a stored canceled status unchanged

        Returns:
            The updated subscription
        """
        values = _coerce(SUBSCRIPTION_FIELDS, fields)
        subscription = self.get_subscription(user_id)

        # Upsert
        if subscription is None:
            subscription = Subscription(user_id=user_id)
            self.db.add(subscription)
            logger.info(f"Creating subscription record for user {user_id}")

        # Canceled is terminal for mirrored updates
        if (
            guard_canceled
            and subscription.status == SubscriptionStatus.CANCELED
            and values.get("status", SubscriptionStatus.CANCELED) != SubscriptionStatus.CANCELED
        ):
            logger.warning(
                f"Ignoring status change to {values['status'].value} for canceled subscription of user {user_id}"
            )
            values.pop("status")

        # Only the given fields are written
        for key, value in values.items():
            setattr(subscription, key, value)

        self._save("subscription update", user_id)
        return subscription

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        """
        Partially update a user

        Returns:
            The updated user, or None if no such user exists
        """
        values = _coerce(USER_FIELDS, fields)
        user = self.get_user_by_id(user_id)
        if user is None:
            logger.warning(f"User not found: {user_id}")
            return None

        for key, value in values.items():
            setattr(user, key, value)

        self._save("user update", user_id)
        return user
