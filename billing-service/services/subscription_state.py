"""
Subscription State Machine

Applies Stripe billing lifecycle events to the stored subscription and
user. Tier (free/paid) is tracked separately from subscription status.

Handlers raise MissingMetadataError when an event cannot be tied to a user.
Any other failure writes a failed audit record and is re-raised for the
dispatcher to contain.
"""
from typing import Any, Dict, Optional
import logging

from models import (
    PaymentEventType,
    SecurityEventType,
    SubscriptionStatus,
    SubscriptionTier,
    User,
)
from services.alerts import AlertService
from services.audit import AuditLogger
from services.downgrade_policy import should_downgrade_immediately
from services.email_templates import account_links
from services.events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentMethodAttached,
    ProviderSubscription,
    SetupIntentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    from_unix,
)
from services.notifier import EmailNotifier
from services.persistence import BillingRepository
from services.risk import RiskAssessor, RiskLevel
from services.scheduler import TaskScheduler
from services.stripe_client import StripeClient
from utils.exceptions import MissingMetadataError, UpstreamLookupError

logger = logging.getLogger(__name__)

# Stripe statuses outside our subscription model
PROVIDER_STATUS_MAP = {
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

# Free tier carries no Stripe subscription, trial or billing period
FREE_TIER_FIELDS: Dict[str, Any] = {
    "tier": SubscriptionTier.FREE,
    "status": SubscriptionStatus.ACTIVE,
    "stripe_subscription_id": None,
    "trial_end": None,
    "current_period_start": None,
    "current_period_end": None,
    "cancel_at_period_end": False,
}


def map_provider_status(status: str) -> SubscriptionStatus:
    """Map a Stripe subscription status onto the stored status enum"""
    if status in PROVIDER_STATUS_MAP:
        return PROVIDER_STATUS_MAP[status]
    return SubscriptionStatus(status)


def _require_user_id(obj, object_type: str) -> str:
    user_id = obj.user_id
    if not user_id:
        raise MissingMetadataError(object_type, obj.id)
    return user_id


class SubscriptionStateMachine:
    """Per-event subscription transitions"""

    def __init__(
        self,
        repository: BillingRepository,
        stripe_client: StripeClient,
        risk: RiskAssessor,
        notifier: EmailNotifier,
        audit: AuditLogger,
        alerts: AlertService,
        scheduler: TaskScheduler,
        app_url: str,
    ):
        self.repository = repository
        self.stripe = stripe_client
        self.risk = risk
        self.notifier = notifier
        self.audit = audit
        self.alerts = alerts
        self.scheduler = scheduler
        self.links = account_links(app_url)

    def _tracks(self, user_id: str, stripe_subscription_id: str) -> bool:
        """Whether the stored subscription is the given Stripe subscription"""
        stored = self.repository.get_subscription(user_id)
        return stored is not None and stored.stripe_subscription_id == stripe_subscription_id

    def _superseded(self, user_id: str, stripe_subscription_id: str) -> bool:
        """Whether the user has since moved to a different Stripe subscription"""
        stored = self.repository.get_subscription(user_id)
        return (
            stored is not None
            and bool(stored.stripe_subscription_id)
            and stored.stripe_subscription_id != stripe_subscription_id
        )

    def _record_failure(
        self,
        event_type: PaymentEventType,
        user_id: str,
        error: Exception,
        metadata: Dict[str, Any],
    ):
        logger.error(
            f"Error processing {event_type.value} for user {user_id}: {error}",
            exc_info=True,
        )
        self.audit.log_payment_event(
            event_type,
            user_id=user_id,
            success=False,
            error=str(error),
            metadata=metadata,
        )

    # ===== Checkout =====

    async def handle_checkout_completed(self, event: CheckoutCompleted):
        """
        Start a paid subscription after checkout

        The upstream subscription decides between trialing (trial end kept)
        and active (trial end cleared).
        """
        session = event.obj
        logger.info(f"Processing checkout.session.completed: {session.id}")

        user_id = _require_user_id(session, "checkout session")
        if not session.subscription:
            logger.warning(f"Checkout session {session.id} has no subscription, ignoring")
            return

        try:
            # Fetch the subscription to decide between trial and active
            subscription = self.stripe.retrieve_subscription(session.subscription)
            customer_id = subscription.customer or session.customer

            # Pattern analysis only flags, it never blocks the upgrade
            analysis = self.risk.analyze_subscription_patterns(user_id, customer_id)
            if analysis.suspicious:
                logger.warning(
                    f"Suspicious subscription patterns for user {user_id}: {analysis.patterns}"
                )
                self.audit.log_security_event(
                    SecurityEventType.SUSPICIOUS_ACTIVITY,
                    user_id=user_id,
                    success=False,
                    metadata={
                        "patterns": analysis.patterns,
                        "risk_factors": analysis.risk_factors,
                        "stripe_session_id": session.id,
                        "context": "checkout_completion",
                    },
                )
                self.alerts.capture_message(
                    "Suspicious subscription patterns detected",
                    level="warning",
                    tags={"component": "fraud-detection", "event": "checkout_completed"},
                    user_id=user_id,
                    extra={
                        "session_id": session.id,
                        "patterns": analysis.patterns,
                        "risk_factors": analysis.risk_factors,
                    },
                )

            # A trial without an end date cannot be tracked, store it as active
            trialing = subscription.status == SubscriptionStatus.TRIALING.value
            if trialing and subscription.trial_end is None:
                logger.warning(
                    f"Subscription {subscription.id} is trialing without a trial end, storing as active"
                )
                trialing = False

            fields = {
                "tier": SubscriptionTier.PAID,
                "status": SubscriptionStatus.TRIALING if trialing else SubscriptionStatus.ACTIVE,
                "stripe_subscription_id": subscription.id,
                "stripe_customer_id": customer_id,
                "current_period_start": from_unix(subscription.current_period_start),
                "current_period_end": from_unix(subscription.current_period_end),
                "trial_end": from_unix(subscription.trial_end) if trialing else None,
                "cancel_at_period_end": subscription.cancel_at_period_end,
            }

            # Subscription and user change together
            with self.repository.atomic():
                self.repository.update_subscription(user_id, fields)
                self.repository.update_user(
                    user_id, {"tier": SubscriptionTier.PAID, "onboarding_complete": True}
                )

            # Log success
            self.audit.log_payment_event(
                PaymentEventType.SUBSCRIPTION_CREATED,
                user_id=user_id,
                success=True,
                stripe_customer_id=customer_id,
                stripe_subscription_id=subscription.id,
                metadata={
                    "session_id": session.id,
                    "tier": SubscriptionTier.PAID.value,
                    "trial_end": subscription.trial_end,
                },
            )
            logger.info(f"Checkout completed for user {user_id}, subscription {subscription.id}")

        except Exception as e:
            self._record_failure(
                PaymentEventType.SUBSCRIPTION_CREATED, user_id, e, {"session_id": session.id}
            )
            raise

    # ===== Invoices =====

    def _invoice_subscription(self, invoice) -> Optional[ProviderSubscription]:
        if not invoice.subscription:
            logger.info(f"Invoice {invoice.id} is not for a subscription, ignoring")
            return None
        return self.stripe.retrieve_subscription(invoice.subscription)

    async def handle_invoice_payment_succeeded(self, event: InvoicePaymentSucceeded):
        """Activate the subscription and refresh its billing period"""
        invoice = event.obj
        logger.info(f"Processing invoice.payment_succeeded: {invoice.id}")

        subscription = self._invoice_subscription(invoice)
        if subscription is None:
            return
        user_id = _require_user_id(subscription, "subscription")

        try:
            # Risk check on the captured payment
            if invoice.payment_intent:
                fraud_check = self.risk.assess_payment_risk(
                    invoice.payment_intent,
                    user_id,
                    {
                        "invoice_id": invoice.id,
                        "billing_reason": invoice.billing_reason,
                        "amount": invoice.amount_paid,
                    },
                )
                if not fraud_check.passed:
                    assessment = fraud_check.assessment
                    logger.warning(
                        f"Payment {invoice.payment_intent} for user {user_id} failed fraud check"
                    )
                    self.audit.log_security_event(
                        SecurityEventType.SUSPICIOUS_ACTIVITY,
                        user_id=user_id,
                        success=False,
                        error="Payment succeeded but failed fraud check",
                        metadata={
                            "payment_intent_id": invoice.payment_intent,
                            "invoice_id": invoice.id,
                            **fraud_check.to_dict(),
                        },
                    )
                    if assessment.risk_level == RiskLevel.VERY_HIGH:
                        self.alerts.capture_message(
                            "Very high risk payment succeeded",
                            level="error",
                            tags={"component": "fraud-prevention", "event": "payment_succeeded"},
                            user_id=user_id,
                            extra={
                                "invoice_id": invoice.id,
                                "payment_intent_id": invoice.payment_intent,
                                "risk_assessment": assessment.to_dict(),
                            },
                        )

            # Refresh status and billing period of the stored subscription
            if self._tracks(user_id, subscription.id):
                fields: Dict[str, Any] = {"status": SubscriptionStatus.ACTIVE}
                if subscription.current_period_start is not None:
                    fields["current_period_start"] = from_unix(subscription.current_period_start)
                if subscription.current_period_end is not None:
                    fields["current_period_end"] = from_unix(subscription.current_period_end)
                self.repository.update_subscription(user_id, fields)
            else:
                logger.info(
                    f"Subscription {subscription.id} is not the stored subscription of user {user_id}, not updating"
                )

            self.audit.log_payment_event(
                PaymentEventType.PAYMENT_SUCCESS,
                user_id=user_id,
                success=True,
                stripe_customer_id=subscription.customer,
                stripe_subscription_id=subscription.id,
                stripe_payment_intent_id=invoice.payment_intent,
                amount=invoice.amount_paid,
                currency=invoice.currency,
                metadata={
                    "invoice_id": invoice.id,
                    "billing_reason": invoice.billing_reason,
                },
            )

            # Receipts go out for renewals only
            if invoice.billing_reason == "subscription_cycle":
                await self._send_payment_success(user_id, invoice, subscription)

            logger.info(f"Payment succeeded for user {user_id}, subscription {subscription.id}")

        except Exception as e:
            self._record_failure(
                PaymentEventType.PAYMENT_SUCCESS, user_id, e, {"invoice_id": invoice.id}
            )
            raise

    async def _send_payment_success(self, user_id: str, invoice, subscription: ProviderSubscription):
        user = self.repository.get_user_by_id(user_id)
        if not user or not user.email:
            return
        period_end = from_unix(subscription.current_period_end)
        await self.notifier.send_email(
            to=user.email,
            subject="Payment successful",
            template="payment-success",
            data={
                "name": user.name or "there",
                "amount": f"{invoice.amount_paid / 100:.2f}",
                "currency": invoice.currency.upper(),
                "next_billing_date": period_end.strftime("%B %d, %Y") if period_end else "",
                **self.links,
            },
        )

    async def handle_invoice_payment_failed(self, event: InvoicePaymentFailed):
        """Downgrade on a first or trial failure, otherwise mark past due"""
        invoice = event.obj
        logger.info(f"Processing invoice.payment_failed: {invoice.id}")

        subscription = self._invoice_subscription(invoice)
        if subscription is None:
            return
        user_id = _require_user_id(subscription, "subscription")

        user = self.repository.get_user_by_id(user_id)
        if user is None:
            logger.error(f"User not found: {user_id}")
            return

        # Stripe omits attempt_count on some invoices
        attempt_count = invoice.attempt_count or 1
        trialing = subscription.status == SubscriptionStatus.TRIALING.value

        try:
            if self._superseded(user_id, subscription.id):
                # Late failure for a replaced subscription; the current one stays
                action = "ignored"
                logger.info(
                    f"Subscription {subscription.id} is not the stored subscription of user {user_id}, not downgrading"
                )
            elif should_downgrade_immediately(subscription.status, attempt_count):
                action = "downgraded"
                reason = (
                    "Card verification failed during your trial period"
                    if trialing
                    else "Payment method was declined"
                )
                await self._downgrade(user, subscription, reason)
            elif self._tracks(user_id, subscription.id):
                action = "past_due"
                self.repository.update_subscription(
                    user_id, {"status": SubscriptionStatus.PAST_DUE}
                )
                logger.info(f"Subscription {subscription.id} marked as past_due")
            else:
                action = "ignored"
                logger.info(
                    f"Subscription {subscription.id} is not the stored subscription of user {user_id}, not marking past_due"
                )

            self.audit.log_payment_event(
                PaymentEventType.PAYMENT_FAILURE,
                user_id=user_id,
                success=False,
                error=f"Invoice payment failed (attempt {attempt_count})",
                stripe_customer_id=subscription.customer,
                stripe_subscription_id=subscription.id,
                stripe_payment_intent_id=invoice.payment_intent,
                amount=invoice.amount_due,
                currency=invoice.currency,
                metadata={
                    "invoice_id": invoice.id,
                    "attempt_count": attempt_count,
                    "trialing": trialing,
                    "action": action,
                },
            )

        except Exception as e:
            self._record_failure(
                PaymentEventType.PAYMENT_FAILURE,
                user_id,
                e,
                {"invoice_id": invoice.id, "attempt_count": attempt_count},
            )
            raise

    async def _downgrade(self, user: User, subscription: ProviderSubscription, reason: str):
        user_id = user.id
        logger.info(f"Downgrading user {user_id} to the free tier due to payment failure")

        with self.repository.atomic():
            self.repository.update_subscription(
                user_id, {**FREE_TIER_FIELDS, "stripe_customer_id": subscription.customer}
            )
            self.repository.update_user(user_id, {"tier": SubscriptionTier.FREE})

        # Runs after commit; a failed cancel is retried by the worker
        try:
            self.stripe.cancel_subscription(subscription.id)
        except UpstreamLookupError as e:
            logger.error(f"Failed to cancel Stripe subscription {subscription.id}: {e}")
            try:
                self.scheduler.schedule_upstream_cancel(subscription.id)
            except Exception as schedule_error:
                self.alerts.capture_exception(
                    schedule_error,
                    tags={"component": "webhooks", "operation": "schedule-upstream-cancel"},
                    user_id=user_id,
                    extra={"subscription_id": subscription.id},
                )

        # Notify user
        if not user.email:
            return

        await self.notifier.send_email(
            to=user.email,
            subject="Payment issue: switched to the free plan",
            template="payment-failure-downgrade",
            data={"name": user.name or "there", "reason": reason, **self.links},
        )

        # Durable reminder, re-checked against the tier when it fires
        try:
            self.scheduler.schedule_upgrade_reminder(user_id)
        except Exception as e:
            logger.error(f"Failed to schedule upgrade reminder for user {user_id}: {e}")
            self.alerts.capture_exception(
                e,
                tags={"component": "webhooks", "operation": "schedule-upgrade-reminder"},
                user_id=user_id,
            )

        logger.info(f"User {user_id} downgraded to the free tier due to payment failure")

    # ===== Subscription lifecycle =====

    async def handle_subscription_updated(self, event: SubscriptionUpdated):
        """
        Mirror Stripe's subscription fields

        Only fields present in the payload are written. Updates for a
        subscription other than the stored one are stale and ignored, and
        a stored canceled status is never moved by the mirror.
        """
        subscription = event.obj
        logger.info(f"Processing customer.subscription.updated: {subscription.id}")

        user_id = _require_user_id(subscription, "subscription")
        if not self._tracks(user_id, subscription.id):
            logger.info(
                f"Ignoring update for subscription {subscription.id}, not the stored subscription of user {user_id}"
            )
            return

        # Status is always present; other fields only when sent
        provided = subscription.provided_fields()
        fields: Dict[str, Any] = {"status": map_provider_status(subscription.status)}
        for key in ("trial_end", "current_period_start", "current_period_end"):
            if key in provided:
                fields[key] = from_unix(getattr(subscription, key))
        if "cancel_at_period_end" in provided:
            fields["cancel_at_period_end"] = subscription.cancel_at_period_end

        self.repository.update_subscription(user_id, fields, guard_canceled=True)
        logger.info(f"Subscription {subscription.id} updated for user {user_id}")

    async def handle_subscription_deleted(self, event: SubscriptionDeleted):
        """Return the user to the free tier; repeat deliveries change nothing"""
        subscription = event.obj
        logger.info(f"Processing customer.subscription.deleted: {subscription.id}")

        user_id = _require_user_id(subscription, "subscription")

        try:
            # A cleared id still applies so repeat deliveries are no-ops
            if self._superseded(user_id, subscription.id):
                logger.info(
                    f"Ignoring deletion of subscription {subscription.id}, not the stored subscription of user {user_id}"
                )
                return

            with self.repository.atomic():
                self.repository.update_subscription(user_id, dict(FREE_TIER_FIELDS))
                self.repository.update_user(user_id, {"tier": SubscriptionTier.FREE})

            self.audit.log_payment_event(
                PaymentEventType.SUBSCRIPTION_CANCELLED,
                user_id=user_id,
                success=True,
                stripe_customer_id=subscription.customer,
                stripe_subscription_id=subscription.id,
            )
            logger.info(
                f"Subscription {subscription.id} deleted, user {user_id} downgraded to the free tier"
            )

        except Exception as e:
            self._record_failure(
                PaymentEventType.SUBSCRIPTION_CANCELLED,
                user_id,
                e,
                {"subscription_id": subscription.id},
            )
            raise

    # ===== Card verification =====

    async def handle_payment_method_attached(self, event: PaymentMethodAttached):
        payment_method = event.obj
        logger.info(
            f"Processing payment_method.attached: {payment_method.id} (customer {payment_method.customer})"
        )

    async def handle_setup_intent_succeeded(self, event: SetupIntentSucceeded):
        setup_intent = event.obj
        logger.info(f"Processing setup_intent.succeeded: {setup_intent.id}")
        if setup_intent.user_id:
            logger.info(f"Card verification successful for user {setup_intent.user_id}")
