"""
Typed Stripe webhook events

Decodes a verified webhook body into one event class per handled type.
Only the fields the handlers read are modelled; everything else in the
Stripe payload is ignored. Types we do not handle decode to
UnrecognizedEvent so the dispatcher can acknowledge them.
"""

from typing import Annotated, Any, Dict, Generic, Literal, Optional, TypeVar, Union
from datetime import datetime, timezone
from enum import Enum
import json
import logging

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from utils.exceptions import PayloadError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Stripe event types handled by the service"""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"
    EARLY_FRAUD_WARNING_CREATED = "radar.early_fraud_warning.created"
    REVIEW_OPENED = "review.opened"
    REVIEW_CLOSED = "review.closed"


HANDLED_EVENT_TYPES = frozenset(event_type.value for event_type in EventType)


def from_unix(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to a naive UTC datetime"""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)


def _expandable_id(value: Any) -> Any:
    # Stripe sends either the id or the expanded object
    if isinstance(value, dict):
        return value.get("id")
    return value


ExpandableId = Annotated[Optional[str], BeforeValidator(_expandable_id)]


# ===== Stripe objects =====


class StripeObject(BaseModel):
    """Common fields of a Stripe API object"""

    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def metadata_default(cls, v):
        return v or {}

    @property
    def user_id(self) -> Optional[str]:
        """Owning user id carried in metadata, if any"""
        return self.metadata.get("user_id") or None


class CheckoutSession(StripeObject):
    customer: ExpandableId = None
    subscription: ExpandableId = None
    client_reference_id: Optional[str] = None
    customer_email: Optional[str] = None


class Invoice(StripeObject):
    customer: ExpandableId = None
    subscription: ExpandableId = None
    payment_intent: ExpandableId = None
    billing_reason: Optional[str] = None
    attempt_count: int = 0
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    status: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def lift_nested_references(cls, data):
        """Newer API versions move subscription and payment intent under nested objects"""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("subscription"):
            details = (data.get("parent") or {}).get("subscription_details") or {}
            if details.get("subscription"):
                data["subscription"] = details["subscription"]
        if not data.get("payment_intent"):
            payments = (data.get("payments") or {}).get("data") or []
            for entry in payments:
                payment = entry.get("payment") or {}
                if payment.get("payment_intent"):
                    data["payment_intent"] = payment["payment_intent"]
                    break
        return data


class ProviderSubscription(StripeObject):
    customer: ExpandableId = None
    status: str
    trial_end: Optional[int] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False

    @model_validator(mode="before")
    @classmethod
    def lift_item_periods(cls, data):
        """Newer API versions report billing periods on the subscription item"""
        if not isinstance(data, dict):
            return data
        items = (data.get("items") or {}).get("data") or []
        if items and "current_period_start" not in data:
            data = dict(data)
            for key in ("current_period_start", "current_period_end"):
                if key in items[0]:
                    data[key] = items[0][key]
        return data

    def provided_fields(self) -> set:
        """Fields actually present in the payload"""
        return set(self.model_fields_set)


class PaymentMethod(StripeObject):
    customer: ExpandableId = None
    type: Optional[str] = None


class SetupIntent(StripeObject):
    customer: ExpandableId = None
    payment_method: ExpandableId = None
    status: Optional[str] = None


class EarlyFraudWarning(StripeObject):
    charge: ExpandableId = None
    payment_intent: ExpandableId = None
    fraud_type: Optional[str] = None
    actionable: bool = False
    created: Optional[int] = None


class Review(StripeObject):
    charge: ExpandableId = None
    payment_intent: ExpandableId = None
    reason: Optional[str] = None
    opened_reason: Optional[str] = None
    closed_reason: Optional[str] = None


# ===== Events =====

T = TypeVar("T")


class EventData(BaseModel, Generic[T]):
    model_config = ConfigDict(extra="ignore")

    object: T


class BaseEvent(BaseModel):
    """Stripe event envelope"""

    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False

    @property
    def obj(self):
        return self.data.object


class CheckoutCompleted(BaseEvent):
    type: Literal["checkout.session.completed"]
    data: EventData[CheckoutSession]


class InvoicePaymentSucceeded(BaseEvent):
    type: Literal["invoice.payment_succeeded"]
    data: EventData[Invoice]


class InvoicePaymentFailed(BaseEvent):
    type: Literal["invoice.payment_failed"]
    data: EventData[Invoice]


class SubscriptionUpdated(BaseEvent):
    type: Literal["customer.subscription.updated"]
    data: EventData[ProviderSubscription]


class SubscriptionDeleted(BaseEvent):
    type: Literal["customer.subscription.deleted"]
    data: EventData[ProviderSubscription]


class PaymentMethodAttached(BaseEvent):
    type: Literal["payment_method.attached"]
    data: EventData[PaymentMethod]


class SetupIntentSucceeded(BaseEvent):
    type: Literal["setup_intent.succeeded"]
    data: EventData[SetupIntent]


class FraudWarningCreated(BaseEvent):
    type: Literal["radar.early_fraud_warning.created"]
    data: EventData[EarlyFraudWarning]


class ReviewOpened(BaseEvent):
    type: Literal["review.opened"]
    data: EventData[Review]


class ReviewClosed(BaseEvent):
    type: Literal["review.closed"]
    data: EventData[Review]


class UnrecognizedEvent(BaseEvent):
    """Any event type the service does not handle"""

    data: Any = None

    @property
    def obj(self):
        if isinstance(self.data, dict):
            return self.data.get("object")
        return None


ProviderEvent = Annotated[
    Union[
        CheckoutCompleted,
        InvoicePaymentSucceeded,
        InvoicePaymentFailed,
        SubscriptionUpdated,
        SubscriptionDeleted,
        PaymentMethodAttached,
        SetupIntentSucceeded,
        FraudWarningCreated,
        ReviewOpened,
        ReviewClosed,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(ProviderEvent)


def parse_event(payload: bytes) -> BaseEvent:
    """
    Decode a verified webhook body

    Args:
        payload: Raw request body

    Returns:
        Typed event for handled types, UnrecognizedEvent otherwise

    Raises:
        PayloadError: Body is not JSON or a handled event is malformed
    """
    try:
        envelope = json.loads(payload)
    except ValueError as e:
        raise PayloadError(f"body is not valid JSON: {e}")

    if not isinstance(envelope, dict):
        raise PayloadError("event envelope is not an object")

    event_type = envelope.get("type")
    if not isinstance(event_type, str) or not envelope.get("id"):
        raise PayloadError("event id or type missing")

    if event_type not in HANDLED_EVENT_TYPES:
        try:
            return UnrecognizedEvent.model_validate(envelope)
        except ValidationError as e:
            raise PayloadError(str(e), event_type=event_type)

    try:
        return _event_adapter.validate_python(envelope)
    except ValidationError as e:
        logger.warning(
            f"Malformed {event_type} payload: {e.error_count()} validation errors",
            extra={"event_type": event_type, "event_id": envelope.get("id")},
        )
        raise PayloadError(
            f"{e.error_count()} validation errors in {event_type} payload",
            event_type=event_type,
        )
