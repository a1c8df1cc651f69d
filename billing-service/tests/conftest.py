"""
Pytest configuration and shared fixtures for Billing Webhook Service tests.
"""
import os
import sys
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config.settings import Settings
from models import AccountStatus, Subscription, SubscriptionStatus, SubscriptionTier, User
from models.database import Base
from services.alerts import AlertService
from services.container import build_billing_services
from services.events import ProviderSubscription
from services.notifier import EmailNotifier
from services.scheduler import TaskScheduler
from services.stripe_client import StripeClient
from tests.fixtures.stripe_fixtures import TEST_WEBHOOK_SECRET, payment_intent, provider_subscription


@pytest.fixture
def test_db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_db_engine) -> Generator:
    """Create a new database session for a test."""
    TestingSessionLocal = sessionmaker(
        autocommit=False, autoflush=False, bind=test_db_engine
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with test values, independent of the environment."""
    return Settings(
        database_url="sqlite://",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        email_api_key="re_test_key",
        app_url="https://app.example.com",
        velocity_window_minutes=60,
        velocity_max_attempts=3,
        risk_score_threshold=80,
        processing_stale_after_seconds=600,
    )


@pytest.fixture
def mock_stripe(mocker):
    """Stripe client returning a low-risk active subscription by default."""
    client = mocker.create_autospec(StripeClient, instance=True)
    client.retrieve_subscription.return_value = ProviderSubscription.model_validate(
        provider_subscription()
    )
    client.retrieve_payment_intent.return_value = payment_intent()
    client.list_customer_subscriptions.return_value = []
    client.cancel_subscription.return_value = "canceled"
    return client


@pytest.fixture
def mock_notifier(mocker):
    """Email notifier whose sends always succeed."""
    notifier = mocker.create_autospec(EmailNotifier, instance=True)
    notifier.send_email.return_value = True
    return notifier


@pytest.fixture
def mock_alerts(mocker):
    return mocker.create_autospec(AlertService, instance=True)


@pytest.fixture
def mock_scheduler(mocker):
    scheduler = mocker.create_autospec(TaskScheduler, instance=True)
    scheduler.schedule_upgrade_reminder.return_value = "task-reminder"
    scheduler.schedule_upstream_cancel.return_value = "task-cancel"
    return scheduler


@pytest.fixture
def billing_services(
    db_session, test_settings, mock_stripe, mock_notifier, mock_alerts, mock_scheduler
):
    """Service graph over the test database with external calls mocked."""
    return build_billing_services(
        db_session,
        config=test_settings,
        stripe_client=mock_stripe,
        notifier=mock_notifier,
        alerts=mock_alerts,
        scheduler=mock_scheduler,
    )


@pytest.fixture
def make_user(db_session):
    """Factory for stored users."""

    def _make_user(
        user_id: str = "user_1",
        email: str = "jane@example.com",
        name: str = "Jane",
        tier: SubscriptionTier = SubscriptionTier.FREE,
        account_status: AccountStatus = AccountStatus.ACTIVE,
        **fields,
    ) -> User:
        user = User(
            id=user_id,
            email=email,
            name=name,
            tier=tier,
            account_status=account_status,
            **fields,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_subscription(db_session):
    """Factory for stored subscriptions."""

    def _make_subscription(
        user_id: str = "user_1",
        stripe_subscription_id: str = "sub_123",
        tier: SubscriptionTier = SubscriptionTier.PAID,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        stripe_customer_id: str = "cus_123",
        **fields,
    ) -> Subscription:
        subscription = Subscription(
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            tier=tier,
            status=status,
            stripe_customer_id=stripe_customer_id,
            **fields,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make_subscription
