"""
Webhook event dispatcher

Routes a verified event to the one handler registered for its type.
Handler failures are contained here so a recognized event is always
acknowledged to Stripe; redelivery would not fix them.
"""
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging

from services.alerts import AlertService
from services.events import BaseEvent, EventType
from services.security_responder import SecurityResponder
from services.subscription_state import SubscriptionStateMachine
from utils.exceptions import MissingMetadataError

logger = logging.getLogger(__name__)

Handler = Callable[[BaseEvent], Awaitable[None]]


def _run_handler(handler: Handler, event: BaseEvent):
    """Run a handler to completion on a private event loop"""
    return asyncio.run(handler(event))


@dataclass
class DispatchResult:
    """Outcome of dispatching one event"""
    event_id: str
    event_type: str
    handled: bool
    success: bool
    error: Optional[str] = None


class WebhookDispatcher:
    """Handler registry keyed by Stripe event type"""

    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        security: SecurityResponder,
        alerts: AlertService,
    ):
        self.alerts = alerts
        self.handlers: Dict[str, Handler] = {}

        self.register(EventType.CHECKOUT_SESSION_COMPLETED, state_machine.handle_checkout_completed)
        self.register(EventType.INVOICE_PAYMENT_SUCCEEDED, state_machine.handle_invoice_payment_succeeded)
        self.register(EventType.INVOICE_PAYMENT_FAILED, state_machine.handle_invoice_payment_failed)
        self.register(EventType.SUBSCRIPTION_UPDATED, state_machine.handle_subscription_updated)
        self.register(EventType.SUBSCRIPTION_DELETED, state_machine.handle_subscription_deleted)
        self.register(EventType.PAYMENT_METHOD_ATTACHED, state_machine.handle_payment_method_attached)
        self.register(EventType.SETUP_INTENT_SUCCEEDED, state_machine.handle_setup_intent_succeeded)
        self.register(EventType.EARLY_FRAUD_WARNING_CREATED, security.handle_fraud_warning_created)
        self.register(EventType.REVIEW_OPENED, security.handle_review_opened)
        self.register(EventType.REVIEW_CLOSED, security.handle_review_closed)

    def register(self, event_type: EventType, handler: Handler):
        """Register the handler for an event type, replacing any existing one"""
        self.handlers[event_type.value] = handler
        logger.debug(f"Registered webhook handler for {event_type.value}")

    async def dispatch(self, event: BaseEvent) -> DispatchResult:
        """
        Run the handler for an event

        Never raises: unknown types and handler failures are reported in
        the result.
        """
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info(
                f"Unhandled event type: {event.type}",
                extra={"stripe_event_id": event.id},
            )
            return DispatchResult(event.id, event.type, handled=False, success=True)

        logger.info(
            f"Dispatching {event.type} to handler",
            extra={"stripe_event_id": event.id},
        )

        try:
            # Handlers make blocking Stripe and database calls, so each runs
            # in a worker thread and other deliveries keep being served
            await asyncio.to_thread(_run_handler, handler, event)
        except MissingMetadataError as e:
            logger.warning(
                f"{e.message}, skipping {event.type}",
                extra={"stripe_event_id": event.id},
            )
            return DispatchResult(event.id, event.type, handled=True, success=True)
        except Exception as e:
            logger.error(
                f"Error handling {event.type}: {e}",
                exc_info=True,
                extra={"stripe_event_id": event.id},
            )
            self.alerts.capture_exception(
                e,
                tags={"component": "webhooks", "event_type": event.type},
                extra={"event_id": event.id},
            )
            return DispatchResult(
                event.id, event.type, handled=True, success=False, error=str(e)
            )

        return DispatchResult(event.id, event.type, handled=True, success=True)
