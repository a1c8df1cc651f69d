"""
Service layer for Stripe webhook processing
"""
from .events import EventType, parse_event
from .verifier import WebhookVerifier
from .stripe_client import StripeClient
from .persistence import BillingRepository
from .alerts import AlertService
from .audit import AuditLogger
from .notifier import EmailNotifier
from .risk import RiskAssessor, RiskAssessment, FraudCheckResult, RiskLevel, RiskOutcome
from .downgrade_policy import should_downgrade_immediately
from .subscription_state import SubscriptionStateMachine
from .security_responder import SecurityResponder
from .dispatcher import WebhookDispatcher, DispatchResult
from .idempotency import ProcessedEventStore
from .scheduler import TaskScheduler
from .container import BillingServices, build_billing_services

__all__ = [
    "EventType",
    "parse_event",
    "WebhookVerifier",
    "StripeClient",
    "BillingRepository",
    "AlertService",
    "AuditLogger",
    "EmailNotifier",
    "RiskAssessor",
    "RiskAssessment",
    "FraudCheckResult",
    "RiskLevel",
    "RiskOutcome",
    "should_downgrade_immediately",
    "SubscriptionStateMachine",
    "SecurityResponder",
    "WebhookDispatcher",
    "DispatchResult",
    "ProcessedEventStore",
    "TaskScheduler",
    "BillingServices",
    "build_billing_services",
]
