"""
Processed webhook event store

Stripe delivers at least once. Each event id is claimed here before
dispatch so a redelivered event is acknowledged without running its
handler again.
"""
from datetime import datetime, timedelta
from typing import Optional
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import ProcessedWebhookEvent, WebhookEventStatus
from utils.exceptions import DatabaseError

logger = logging.getLogger(__name__)


class ProcessedEventStore:
    """
    Claims and completes provider event ids

    A processed event is never dispatched again. A failed event, or one
    stuck in processing for longer than stale_after_seconds, may be claimed
    again on redelivery.
    """

    def __init__(self, db: Session, stale_after_seconds: int = 600):
        self.db = db
        self.stale_after_seconds = stale_after_seconds

    def _get(self, event_id: str) -> Optional[ProcessedWebhookEvent]:
        return (
            self.db.query(ProcessedWebhookEvent)
            .filter(ProcessedWebhookEvent.stripe_event_id == event_id)
            .first()
        )

    def begin(self, event_id: str, event_type: str) -> bool:
        """
        Claim an event for processing

        Returns:
            False if the event was already processed or is being processed

        Raises:
            DatabaseError: The store could not be read or written
        """
        try:
            record = self._get(event_id)
            if record is not None:
                # Already handled, or still being handled elsewhere
                if record.status == WebhookEventStatus.PROCESSED:
                    return False
                if record.status == WebhookEventStatus.PROCESSING and not self._is_stale(record):
                    return False
                # Failed or abandoned, run it again
                logger.info(f"Reclaiming {record.status.value} event {event_id}")
                record.status = WebhookEventStatus.PROCESSING
                record.error_message = None
                record.received_at = datetime.utcnow()
                self.db.commit()
                return True

            # First delivery
            self.db.add(
                ProcessedWebhookEvent(
                    stripe_event_id=event_id,
                    event_type=event_type,
                    status=WebhookEventStatus.PROCESSING,
                )
            )
            self.db.commit()
            return True

        except IntegrityError:
            # Another delivery of the same event claimed it first
            self.db.rollback()
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to claim webhook event {event_id}: {e}")
            raise DatabaseError("webhook event claim", str(e))

    def _is_stale(self, record: ProcessedWebhookEvent) -> bool:
        cutoff = datetime.utcnow() - timedelta(seconds=self.stale_after_seconds)
        return record.received_at < cutoff

    def mark_finished(self, event_id: str, success: bool, error: Optional[str] = None):
        """Record the handler outcome. Failures here are logged only."""
        try:
            record = self._get(event_id)
            if record is None:
                logger.warning(f"No claim found for webhook event {event_id}")
                return
            record.status = WebhookEventStatus.PROCESSED if success else WebhookEventStatus.FAILED
            record.error_message = error
            record.processed_at = datetime.utcnow()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to mark webhook event {event_id} finished: {e}")

    def purge_older_than(self, days: int) -> int:
        """
        Delete finished event records received more than `days` ago

        Returns:
            Number of records deleted
        """
        cutoff = datetime.utcnow() - timedelta(days=days)
        try:
            # In-flight records are kept
            deleted = (
                self.db.query(ProcessedWebhookEvent)
                .filter(
                    ProcessedWebhookEvent.received_at < cutoff,
                    ProcessedWebhookEvent.status != WebhookEventStatus.PROCESSING,
                )
                .delete(synchronize_session=False)
            )
            self.db.commit()
            return deleted
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("webhook event purge", str(e))
