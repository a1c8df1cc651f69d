"""
Security Responder

Reacts to Stripe Radar fraud warnings and manual reviews: suspends
accounts on actionable fraud warnings and restores them when a review
is approved. Independent of the subscription state machine.
"""
from datetime import datetime
from typing import Optional, Tuple
import logging

from models import AccountStatus, SecurityEventType
from services.alerts import AlertService
from services.audit import AuditLogger
from services.email_templates import account_links
from services.events import FraudWarningCreated, ReviewClosed, ReviewOpened
from services.notifier import EmailNotifier
from services.persistence import BillingRepository
from services.stripe_client import StripeClient
from utils.exceptions import UpstreamLookupError

logger = logging.getLogger(__name__)

FRAUD_WARNING_REASON = "fraud_warning"


class SecurityResponder:
    """Fraud warning and review handlers"""

    def __init__(
        self,
        repository: BillingRepository,
        stripe_client: StripeClient,
        notifier: EmailNotifier,
        audit: AuditLogger,
        alerts: AlertService,
        app_url: str,
    ):
        self.repository = repository
        self.stripe = stripe_client
        self.notifier = notifier
        self.audit = audit
        self.alerts = alerts
        self.links = account_links(app_url)

    def resolve_payment_user(
        self, charge_id: Optional[str], payment_intent_id: Optional[str] = None
    ) -> Tuple[Optional[str], Optional[str]]:
        """
        Find the user behind a charge via its payment intent metadata

        Returns:
            (user_id, payment_intent_id); either may be None when a lookup fails
        """
        try:
            if not payment_intent_id and charge_id:
                charge = self.stripe.retrieve_charge(charge_id)
                payment_intent = charge.get("payment_intent")
                if isinstance(payment_intent, dict):
                    payment_intent = payment_intent.get("id")
                payment_intent_id = payment_intent

            if not payment_intent_id:
                return None, None

            intent = self.stripe.retrieve_payment_intent(payment_intent_id)
        except UpstreamLookupError as e:
            logger.warning(f"Could not resolve user for charge {charge_id}: {e.message}")
            return None, payment_intent_id

        user_id = (intent.get("metadata") or {}).get("user_id") or None
        return user_id, payment_intent_id

    async def handle_fraud_warning_created(self, event: FraudWarningCreated):
        """Record and alert on a fraud warning; suspend the account if actionable"""
        warning = event.obj
        logger.warning(f"Processing radar.early_fraud_warning.created: {warning.id}")

        # Lookup failures leave the user unresolved
        user_id, payment_intent_id = self.resolve_payment_user(
            warning.charge, warning.payment_intent
        )

        # Always recorded and alerted, whatever the user lookup found
        self.audit.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            user_id=user_id,
            success=False,
            error="Early fraud warning received from Stripe Radar",
            metadata={
                "warning_id": warning.id,
                "charge_id": warning.charge,
                "payment_intent_id": payment_intent_id,
                "fraud_type": warning.fraud_type,
                "actionable": warning.actionable,
                "created": warning.created,
            },
        )
        self.alerts.capture_message(
            "Stripe Radar fraud warning received",
            level="error",
            tags={"component": "fraud-detection", "event": "radar_fraud_warning"},
            user_id=user_id,
            extra={
                "warning_id": warning.id,
                "charge_id": warning.charge,
                "fraud_type": warning.fraud_type,
                "actionable": warning.actionable,
            },
        )

        # Suspend account
        if user_id and warning.actionable:
            await self._suspend(user_id, warning.id)

        logger.info(f"Fraud warning processed: {warning.id}")

    async def _suspend(self, user_id: str, warning_id: str):
        try:
            user = self.repository.update_user(
                user_id,
                {
                    "account_status": AccountStatus.SUSPENDED,
                    "suspended_reason": FRAUD_WARNING_REASON,
                    "suspended_at": datetime.utcnow(),
                },
            )
            if user is None:
                return

            self.audit.log_security_event(
                SecurityEventType.ACCOUNT_SUSPENDED,
                user_id=user_id,
                success=True,
                metadata={"reason": FRAUD_WARNING_REASON, "warning_id": warning_id},
            )

            # Notify user
            if user.email:
                await self.notifier.send_email(
                    to=user.email,
                    subject="Account security alert: verification required",
                    template="fraud-alert",
                    data={"name": user.name or "there", **self.links},
                )

            logger.info(f"User {user_id} account suspended due to fraud warning")
        except Exception as e:
            logger.error(f"Error taking action on fraud warning for user {user_id}: {e}")
            self.alerts.capture_exception(
                e,
                tags={"component": "fraud-detection", "operation": "suspend-account"},
                user_id=user_id,
                extra={"warning_id": warning_id},
            )

    async def handle_review_opened(self, event: ReviewOpened):
        """Record and alert on a payment entering manual review"""
        review = event.obj
        logger.info(f"Processing review.opened: {review.id}")

        user_id, payment_intent_id = self.resolve_payment_user(
            review.charge, review.payment_intent
        )

        self.audit.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            user_id=user_id,
            success=False,
            error="Payment under manual review",
            metadata={
                "review_id": review.id,
                "charge_id": review.charge,
                "payment_intent_id": payment_intent_id,
                "reason": review.reason,
                "opened_reason": review.opened_reason,
            },
        )
        self.alerts.capture_message(
            "Payment under manual review",
            level="warning",
            tags={"component": "fraud-detection", "event": "review_opened"},
            user_id=user_id,
            extra={
                "review_id": review.id,
                "charge_id": review.charge,
                "reason": review.reason,
                "opened_reason": review.opened_reason,
            },
        )

    async def handle_review_closed(self, event: ReviewClosed):
        """Restore a suspended account on approval; alert on any other outcome"""
        review = event.obj
        logger.info(f"Processing review.closed: {review.id}")

        user_id, payment_intent_id = self.resolve_payment_user(
            review.charge, review.payment_intent
        )
        approved = review.reason == "approved"

        self.audit.log_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            user_id=user_id,
            success=approved,
            error=None if approved else f"Review closed: {review.reason}",
            metadata={
                "review_id": review.id,
                "charge_id": review.charge,
                "payment_intent_id": payment_intent_id,
                "reason": review.reason,
                "closed_reason": review.closed_reason,
            },
        )

        # Restore on approval, otherwise escalate
        if approved:
            logger.info(f"Review approved: {review.id}")
            if user_id:
                await self._restore(user_id, review.id)
        else:
            self.alerts.capture_message(
                "Payment review declined",
                level="error",
                tags={"component": "fraud-detection", "event": "review_declined"},
                user_id=user_id,
                extra={
                    "review_id": review.id,
                    "charge_id": review.charge,
                    "reason": review.reason,
                    "closed_reason": review.closed_reason,
                },
            )

        logger.info(f"Review closed: {review.id} with reason: {review.reason}")

    async def _restore(self, user_id: str, review_id: str):
        try:
            user = self.repository.get_user_by_id(user_id)
            # Only suspended accounts are restored
            if user is None or user.account_status != AccountStatus.SUSPENDED:
                return

            self.repository.update_user(
                user_id,
                {
                    "account_status": AccountStatus.ACTIVE,
                    "suspended_reason": None,
                    "suspended_at": None,
                },
            )
            self.audit.log_security_event(
                SecurityEventType.ACCOUNT_RESTORED,
                user_id=user_id,
                success=True,
                metadata={"review_id": review_id},
            )

            # Notify user
            if user.email:
                await self.notifier.send_email(
                    to=user.email,
                    subject="Account restored: welcome back",
                    template="account-restored",
                    data={"name": user.name or "there", **self.links},
                )

            logger.info(f"User {user_id} account restored after review {review_id}")
        except Exception as e:
            logger.error(f"Error restoring user account {user_id}: {e}")
            self.alerts.capture_exception(
                e,
                tags={"component": "fraud-detection", "operation": "restore-account"},
                user_id=user_id,
                extra={"review_id": review_id},
            )
