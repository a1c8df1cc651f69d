"""
Periodic cleanup of the processed webhook event ledger
"""

import logging
from typing import Dict

from config.settings import settings
from models import SessionLocal
from services.idempotency import ProcessedEventStore
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="cleanup.purge_processed_webhook_events")
def purge_processed_webhook_events(days: int = settings.processed_event_retention_days) -> Dict[str, int]:
    """
    Delete finished webhook event records older than the retention window.

    Stripe stops redelivering an event after a few days, so older ids no
    longer need deduplicating.

    Args:
        days: Delete records received more than this many days ago

    Returns:
        Dict with cleanup statistics
    """
    logger.info(f"Purging processed webhook events older than {days} days")

    stats = {"events_deleted": 0, "errors": 0}

    db = SessionLocal()
    try:
        stats["events_deleted"] = ProcessedEventStore(db).purge_older_than(days)
        logger.info(f"Deleted {stats['events_deleted']} processed webhook events")
    except Exception as e:
        logger.error(f"Error purging processed webhook events: {e}", exc_info=True)
        stats["errors"] += 1
    finally:
        db.close()

    return stats
