"""
Celery tasks for billing follow-up work

Work that must outlive the webhook request: the delayed upgrade reminder
and the retried Stripe cancel after a downgrade.
"""

from celery import Task
from typing import Any, Dict
import asyncio
import logging

from .celery_app import celery_app
from config.settings import settings
from models import SessionLocal, SubscriptionTier
from services.alerts import AlertService
from services.container import build_notifier
from services.email_templates import account_links
from services.persistence import BillingRepository
from services.stripe_client import StripeClient
from utils.exceptions import UpstreamLookupError

logger = logging.getLogger(__name__)


class BillingTask(Task):
    """Base task that reports final failures to Sentry"""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Handle task failure"""
        logger.error(f"Task {self.name} [{task_id}] failed: {exc}")
        AlertService().capture_exception(
            exc,
            tags={"component": "worker", "task": self.name},
            extra={"task_id": task_id, "args": list(args or [])},
        )

    def on_success(self, retval, task_id, args, kwargs):
        """Handle task success"""
        logger.info(f"Task {self.name} [{task_id}] succeeded: {retval}")


@celery_app.task(base=BillingTask, bind=True, name="billing.send_upgrade_reminder")
def send_upgrade_reminder(self, user_id: str) -> Dict[str, Any]:
    """
    Send the upgrade reminder after a payment failure downgrade

    Skipped when the user has upgraded again in the meantime.

    Args:
        user_id: User downgraded to the free tier

    Returns:
        Dict with "sent" and, when skipped, "reason"
    """
    db = SessionLocal()
    try:
        user = BillingRepository(db).get_user_by_id(user_id)

        # Re-check the user, the reminder fires days after the downgrade
        if user is None:
            logger.warning(f"Upgrade reminder skipped, user {user_id} not found")
            return {"sent": False, "reason": "user_not_found"}
        if user.tier == SubscriptionTier.PAID:
            logger.info(f"Upgrade reminder skipped, user {user_id} is on the paid tier")
            return {"sent": False, "reason": "already_paid"}
        if not user.email:
            return {"sent": False, "reason": "no_email"}

        # Send email
        notifier = build_notifier(settings)
        sent = asyncio.run(
            notifier.send_email(
                to=user.email,
                subject="Missing your paid plan? Upgrading is easy",
                template="upgrade-reminder",
                data={"name": user.name or "there", **account_links(settings.app_url)},
            )
        )
        return {"sent": sent}
    finally:
        db.close()


@celery_app.task(
    base=BillingTask,
    bind=True,
    name="billing.cancel_upstream_subscription",
    autoretry_for=(UpstreamLookupError,),
    retry_backoff=True,
    retry_backoff_max=3600,
    retry_jitter=True,
    max_retries=settings.upstream_cancel_max_retries,
)
def cancel_upstream_subscription(self, stripe_subscription_id: str) -> Dict[str, Any]:
    """
    Cancel a Stripe subscription whose inline cancel failed during a downgrade

    Retried with exponential backoff on Stripe errors. Canceling an already
    canceled subscription succeeds.

    Args:
        stripe_subscription_id: Stripe subscription ID

    Returns:
        Dict with the subscription id and resulting Stripe status
    """
    logger.info(
        f"Canceling Stripe subscription {stripe_subscription_id} (attempt {self.request.retries + 1})"
    )
    status = StripeClient(settings.stripe_secret_key).cancel_subscription(
        stripe_subscription_id
    )
    return {"subscription_id": stripe_subscription_id, "status": status}
