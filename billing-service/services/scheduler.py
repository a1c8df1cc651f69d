"""
Durable follow-up work on the Celery queue
"""
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Enqueues billing follow-up tasks on the persistent broker"""

    def __init__(self, reminder_delay_seconds: int = 259200):
        self.reminder_delay_seconds = reminder_delay_seconds

    def schedule_upgrade_reminder(self, user_id: str) -> Optional[str]:
        """Queue the upgrade reminder email for after the reminder delay"""
        from workers.tasks import send_upgrade_reminder

        result = send_upgrade_reminder.apply_async(
            args=[user_id], countdown=self.reminder_delay_seconds
        )
        logger.info(
            f"Scheduled upgrade reminder for user {user_id} in {self.reminder_delay_seconds}s [{result.id}]"
        )
        return result.id

    def schedule_upstream_cancel(self, stripe_subscription_id: str) -> Optional[str]:
        """Queue a retrying cancel for a Stripe subscription that failed to cancel inline"""
        from workers.tasks import cancel_upstream_subscription

        result = cancel_upstream_subscription.delay(stripe_subscription_id)
        logger.info(
            f"Scheduled upstream cancel for subscription {stripe_subscription_id} [{result.id}]"
        )
        return result.id
