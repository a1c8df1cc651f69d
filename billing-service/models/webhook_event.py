"""
Processed webhook event ledger

One row per provider event id. The unique constraint on stripe_event_id
is what detects redelivered events.
"""
from sqlalchemy import Column, String, DateTime, Enum, Text, Uuid
from datetime import datetime
import uuid
import enum

from .database import Base


class WebhookEventStatus(str, enum.Enum):
    """Processing status of a provider event"""
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class ProcessedWebhookEvent(Base):
    """Provider event seen by the webhook endpoint"""
    __tablename__ = "processed_webhook_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)

    status = Column(Enum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.PROCESSING, index=True)
    error_message = Column(Text, nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ProcessedWebhookEvent {self.stripe_event_id} - {self.status.value}>"
