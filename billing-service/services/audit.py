"""
Payment and security audit trail

Audit writes never raise: a failed write is logged and sent to the alert
service, and the caller carries on.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional
import json
import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import AuditCategory, AuditLog, PaymentEventType
from services.alerts import AlertService
from utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)


def _json_safe(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    return json.loads(json.dumps(metadata, default=str))


class AuditLogger:
    """Append-only writer for the audit_logs table"""

    def __init__(self, db: Session, alerts: AlertService):
        self.db = db
        self.alerts = alerts

    def _write(self, record: AuditLog) -> Optional[AuditLog]:
        try:
            self.db.add(record)
            self.db.commit()
            return record
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Failed to write {record.category.value} audit record {record.event_type}: {e}",
                extra={"user_id": record.user_id},
            )
            self.alerts.capture_exception(
                e,
                tags={"component": "audit", "event_type": record.event_type},
                user_id=record.user_id,
            )
            return None

    def log_payment_event(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
        stripe_payment_intent_id: Optional[str] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """Record a payment or subscription lifecycle event"""
        return self._write(
            AuditLog(
                category=AuditCategory.PAYMENT,
                event_type=str(getattr(event_type, "value", event_type)),
                user_id=user_id,
                success=success,
                error=error,
                event_metadata=_json_safe(metadata),
                stripe_customer_id=stripe_customer_id,
                stripe_subscription_id=stripe_subscription_id,
                stripe_payment_intent_id=stripe_payment_intent_id,
                amount=amount,
                currency=currency,
                ip_address=ip_address,
            )
        )

    def log_security_event(
        self,
        event_type: str,
        user_id: Optional[str] = None,
        success: bool = False,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """Record a fraud or account security event"""
        return self._write(
            AuditLog(
                category=AuditCategory.SECURITY,
                event_type=str(getattr(event_type, "value", event_type)),
                user_id=user_id,
                success=success,
                error=error,
                event_metadata=_json_safe(metadata),
                ip_address=ip_address,
            )
        )

    def log_webhook_received(
        self, event_id: str, event_type: str, ip_address: Optional[str] = None
    ) -> Optional[AuditLog]:
        """Record an accepted webhook delivery"""
        return self._write(
            AuditLog(
                category=AuditCategory.WEBHOOK,
                event_type=PaymentEventType.WEBHOOK_RECEIVED.value,
                success=True,
                event_metadata={"event_id": event_id, "stripe_event_type": event_type},
                ip_address=ip_address,
            )
        )

    def count_events(
        self, user_id: str, event_types: Iterable[str], since: datetime
    ) -> int:
        """
        Count a user's audit records of the given types since a point in time

        Raises:
            PersistenceError: The count query failed
        """
        try:
            return (
                self.db.query(func.count(AuditLog.id))
                .filter(
                    AuditLog.user_id == user_id,
                    AuditLog.event_type.in_(list(event_types)),
                    AuditLog.created_at >= since,
                )
                .scalar()
                or 0
            )
        except SQLAlchemyError as e:
            raise PersistenceError("audit count", str(e), user_id=user_id)
