"""
Unit tests for the billing repository, audit logger and processed event store.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from models import (
    AccountStatus,
    AuditCategory,
    AuditLog,
    PaymentEventType,
    ProcessedWebhookEvent,
    SecurityEventType,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookEventStatus,
)
from services.audit import AuditLogger
from services.idempotency import ProcessedEventStore
from services.persistence import BillingRepository
from utils.exceptions import DatabaseError, PersistenceError


@pytest.fixture
def repository(db_session):
    return BillingRepository(db_session)


@pytest.fixture
def audit(db_session, mock_alerts):
    return AuditLogger(db_session, mock_alerts)


@pytest.fixture
def event_store(db_session):
    return ProcessedEventStore(db_session, stale_after_seconds=600)


# =============================================================================
# Test: BillingRepository
# =============================================================================


@pytest.mark.unit
def test_update_subscription_creates_missing_record(repository, db_session):
    repository.update_subscription(
        "user_1", {"tier": "paid", "status": "trialing", "stripe_subscription_id": "sub_1"}
    )

    subscription = db_session.query(Subscription).filter_by(user_id="user_1").one()
    assert subscription.tier == SubscriptionTier.PAID
    assert subscription.status == SubscriptionStatus.TRIALING
    assert subscription.stripe_subscription_id == "sub_1"


@pytest.mark.unit
def test_update_subscription_is_partial(repository, make_subscription):
    """Keys not passed keep their stored value; None clears a column."""
    make_subscription(current_period_end=datetime(2025, 2, 1), trial_end=datetime(2025, 1, 15))

    subscription = repository.update_subscription(
        "user_1", {"status": SubscriptionStatus.PAST_DUE, "trial_end": None}
    )

    assert subscription.status == SubscriptionStatus.PAST_DUE
    assert subscription.trial_end is None
    assert subscription.current_period_end == datetime(2025, 2, 1)
    assert subscription.stripe_subscription_id == "sub_123"


@pytest.mark.unit
def test_update_subscription_rejects_unknown_fields(repository):
    with pytest.raises(ValueError):
        repository.update_subscription("user_1", {"plan": "gold"})


@pytest.mark.unit
def test_update_subscription_guard_keeps_canceled(repository, make_subscription):
    make_subscription(status=SubscriptionStatus.CANCELED)

    subscription = repository.update_subscription(
        "user_1", {"status": SubscriptionStatus.ACTIVE}, guard_canceled=True
    )
    assert subscription.status == SubscriptionStatus.CANCELED

    subscription = repository.update_subscription("user_1", {"status": SubscriptionStatus.ACTIVE})
    assert subscription.status == SubscriptionStatus.ACTIVE


@pytest.mark.unit
def test_update_user_missing_returns_none(repository):
    assert repository.update_user("ghost", {"tier": SubscriptionTier.FREE}) is None


@pytest.mark.unit
def test_update_user(repository, make_user):
    make_user()

    user = repository.update_user(
        "user_1", {"account_status": "suspended", "suspended_reason": "fraud_warning"}
    )

    assert user.account_status == AccountStatus.SUSPENDED
    assert user.suspended_reason == "fraud_warning"


@pytest.mark.unit
def test_atomic_rolls_back_every_write(repository, make_user, make_subscription, db_session):
    make_user(tier=SubscriptionTier.PAID)
    make_subscription()

    with pytest.raises(RuntimeError):
        with repository.atomic():
            repository.update_subscription("user_1", {"tier": SubscriptionTier.FREE})
            repository.update_user("user_1", {"tier": SubscriptionTier.FREE})
            raise RuntimeError("crash between writes")

    db_session.expire_all()
    assert repository.get_subscription("user_1").tier == SubscriptionTier.PAID
    assert repository.get_user_by_id("user_1").tier == SubscriptionTier.PAID


@pytest.mark.unit
def test_atomic_commits_together(repository, make_user, make_subscription, db_session):
    make_user(tier=SubscriptionTier.PAID)
    make_subscription()

    with repository.atomic():
        repository.update_subscription("user_1", {"tier": SubscriptionTier.FREE})
        repository.update_user("user_1", {"tier": SubscriptionTier.FREE})

    db_session.expire_all()
    assert repository.get_subscription("user_1").tier == SubscriptionTier.FREE
    assert repository.get_user_by_id("user_1").tier == SubscriptionTier.FREE


@pytest.mark.unit
def test_save_failure_raises_persistence_error(repository, make_subscription, mocker):
    make_subscription()
    mocker.patch.object(
        repository.db, "commit", side_effect=OperationalError("UPDATE", {}, Exception("locked"))
    )

    with pytest.raises(PersistenceError) as exc_info:
        repository.update_subscription("user_1", {"status": SubscriptionStatus.PAST_DUE})

    assert exc_info.value.details["user_id"] == "user_1"


# =============================================================================
# Test: AuditLogger
# =============================================================================


@pytest.mark.unit
def test_log_payment_event(audit, db_session):
    record = audit.log_payment_event(
        PaymentEventType.PAYMENT_SUCCESS,
        user_id="user_1",
        stripe_payment_intent_id="pi_1",
        amount=1999,
        currency="usd",
        metadata={"invoice_id": "in_1", "at": datetime(2025, 1, 1)},
    )

    assert record is not None
    stored = db_session.query(AuditLog).one()
    assert stored.category == AuditCategory.PAYMENT
    assert stored.event_type == PaymentEventType.PAYMENT_SUCCESS.value
    assert stored.event_metadata == {"invoice_id": "in_1", "at": "2025-01-01 00:00:00"}


@pytest.mark.unit
def test_log_security_event_defaults_to_failure(audit, db_session):
    audit.log_security_event(SecurityEventType.FRAUD_CHECK, user_id="user_1")

    stored = db_session.query(AuditLog).one()
    assert stored.category == AuditCategory.SECURITY
    assert stored.success is False


@pytest.mark.unit
def test_log_webhook_received(audit, db_session):
    audit.log_webhook_received("evt_1", "invoice.paid", ip_address="198.51.100.7")

    stored = db_session.query(AuditLog).one()
    assert stored.category == AuditCategory.WEBHOOK
    assert stored.event_metadata == {"event_id": "evt_1", "stripe_event_type": "invoice.paid"}


@pytest.mark.unit
def test_audit_write_failure_never_raises(audit, db_session, mock_alerts, mocker):
    mocker.patch.object(
        db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("disk full"))
    )

    result = audit.log_payment_event(PaymentEventType.PAYMENT_FAILURE, user_id="user_1")

    assert result is None
    mock_alerts.capture_exception.assert_called_once()


@pytest.mark.unit
def test_count_events_window(audit, db_session):
    audit.log_payment_event(PaymentEventType.PAYMENT_ATTEMPT, user_id="user_1")
    audit.log_payment_event(PaymentEventType.PAYMENT_FAILURE, user_id="user_1")
    old = audit.log_payment_event(PaymentEventType.PAYMENT_ATTEMPT, user_id="user_1")
    old.created_at = datetime.utcnow() - timedelta(hours=3)
    db_session.commit()

    # Other types and other users are not counted
    audit.log_payment_event(PaymentEventType.SUBSCRIPTION_CREATED, user_id="user_1")
    audit.log_payment_event(PaymentEventType.PAYMENT_ATTEMPT, user_id="user_2")

    count = audit.count_events(
        "user_1",
        [PaymentEventType.PAYMENT_ATTEMPT.value, PaymentEventType.PAYMENT_FAILURE.value],
        datetime.utcnow() - timedelta(hours=1),
    )

    assert count == 2


# =============================================================================
# Test: ProcessedEventStore
# =============================================================================


@pytest.mark.unit
def test_begin_claims_new_event(event_store, db_session):
    assert event_store.begin("evt_1", "invoice.payment_failed") is True

    record = db_session.query(ProcessedWebhookEvent).one()
    assert record.status == WebhookEventStatus.PROCESSING


@pytest.mark.unit
def test_begin_rejects_processed_event(event_store):
    event_store.begin("evt_1", "invoice.payment_failed")
    event_store.mark_finished("evt_1", success=True)

    assert event_store.begin("evt_1", "invoice.payment_failed") is False


@pytest.mark.unit
def test_begin_rejects_event_in_progress(event_store):
    event_store.begin("evt_1", "invoice.payment_failed")

    assert event_store.begin("evt_1", "invoice.payment_failed") is False


@pytest.mark.unit
def test_begin_reclaims_failed_event(event_store, db_session):
    event_store.begin("evt_1", "invoice.payment_failed")
    event_store.mark_finished("evt_1", success=False, error="boom")

    assert event_store.begin("evt_1", "invoice.payment_failed") is True
    record = db_session.query(ProcessedWebhookEvent).one()
    assert record.status == WebhookEventStatus.PROCESSING
    assert record.error_message is None


@pytest.mark.unit
def test_begin_reclaims_stale_processing_event(event_store, db_session):
    event_store.begin("evt_1", "invoice.payment_failed")
    record = db_session.query(ProcessedWebhookEvent).one()
    record.received_at = datetime.utcnow() - timedelta(hours=1)
    db_session.commit()

    assert event_store.begin("evt_1", "invoice.payment_failed") is True


@pytest.mark.unit
def test_begin_database_failure(event_store, db_session, mocker):
    mocker.patch.object(
        db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("locked"))
    )

    with pytest.raises(DatabaseError):
        event_store.begin("evt_1", "invoice.payment_failed")


@pytest.mark.unit
def test_mark_finished_records_outcome(event_store, db_session):
    event_store.begin("evt_1", "review.closed")
    event_store.mark_finished("evt_1", success=False, error="handler failed")

    record = db_session.query(ProcessedWebhookEvent).one()
    assert record.status == WebhookEventStatus.FAILED
    assert record.error_message == "handler failed"
    assert record.processed_at is not None


@pytest.mark.unit
def test_purge_older_than(event_store, db_session):
    for event_id in ("evt_old", "evt_new", "evt_stuck"):
        event_store.begin(event_id, "invoice.payment_succeeded")
    event_store.mark_finished("evt_old", success=True)
    event_store.mark_finished("evt_new", success=True)
    long_ago = datetime.utcnow() - timedelta(days=45)
    for record in db_session.query(ProcessedWebhookEvent).all():
        if record.stripe_event_id != "evt_new":
            record.received_at = long_ago
    db_session.commit()

    deleted = event_store.purge_older_than(30)

    assert deleted == 1
    remaining = {record.stripe_event_id for record in db_session.query(ProcessedWebhookEvent).all()}
    assert remaining == {"evt_new", "evt_stuck"}
