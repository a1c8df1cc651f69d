"""
Service wiring

Builds the webhook service graph for one database session. Tests pass
their own collaborators instead of the defaults.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from config.settings import Settings, settings as default_settings
from services.alerts import AlertService
from services.audit import AuditLogger
from services.dispatcher import WebhookDispatcher
from services.idempotency import ProcessedEventStore
from services.notifier import EmailNotifier
from services.persistence import BillingRepository
from services.risk import RiskAssessor
from services.scheduler import TaskScheduler
from services.security_responder import SecurityResponder
from services.stripe_client import StripeClient
from services.subscription_state import SubscriptionStateMachine


@dataclass
class BillingServices:
    """Everything a webhook delivery needs"""
    repository: BillingRepository
    stripe: StripeClient
    notifier: EmailNotifier
    audit: AuditLogger
    alerts: AlertService
    scheduler: TaskScheduler
    risk: RiskAssessor
    state_machine: SubscriptionStateMachine
    security: SecurityResponder
    dispatcher: WebhookDispatcher
    events: ProcessedEventStore


def build_notifier(config: Settings) -> EmailNotifier:
    return EmailNotifier(
        api_url=config.email_api_url,
        api_key=config.email_api_key,
        from_address=config.email_from_address,
        from_name=config.email_from_name,
        timeout=config.email_timeout,
    )


def build_billing_services(
    db: Session,
    config: Optional[Settings] = None,
    stripe_client: Optional[StripeClient] = None,
    notifier: Optional[EmailNotifier] = None,
    alerts: Optional[AlertService] = None,
    scheduler: Optional[TaskScheduler] = None,
) -> BillingServices:
    """
    Build the service graph

    Args:
        db: Database session shared by repository, audit and event store
        config: Settings; defaults to the process settings
        stripe_client, notifier, alerts, scheduler: Optional replacements
    """
    config = config or default_settings
    stripe_client = stripe_client or StripeClient(config.stripe_secret_key)
    notifier = notifier or build_notifier(config)
    alerts = alerts or AlertService()
    scheduler = scheduler or TaskScheduler(config.upgrade_reminder_delay_seconds)

    repository = BillingRepository(db)
    audit = AuditLogger(db, alerts)
    risk = RiskAssessor(
        stripe_client,
        repository,
        audit,
        alerts,
        velocity_window_minutes=config.velocity_window_minutes,
        velocity_max_attempts=config.velocity_max_attempts,
        risk_score_threshold=config.risk_score_threshold,
    )
    state_machine = SubscriptionStateMachine(
        repository, stripe_client, risk, notifier, audit, alerts, scheduler, config.app_url
    )
    security = SecurityResponder(
        repository, stripe_client, notifier, audit, alerts, config.app_url
    )

    return BillingServices(
        repository=repository,
        stripe=stripe_client,
        notifier=notifier,
        audit=audit,
        alerts=alerts,
        scheduler=scheduler,
        risk=risk,
        state_machine=state_machine,
        security=security,
        dispatcher=WebhookDispatcher(state_machine, security, alerts),
        events=ProcessedEventStore(db, config.processing_stale_after_seconds),
    )
