"""
Unit tests for the Radar fraud warning and review handlers.
"""
from datetime import datetime

import pytest

from models import AccountStatus, AuditLog, SecurityEventType, User
from services.events import parse_event
from tests.fixtures.stripe_fixtures import (
    charge,
    early_fraud_warning,
    event_bytes,
    payment_intent,
    review,
)
from utils.exceptions import UpstreamLookupError


@pytest.fixture
def payment_owner(mock_stripe):
    """Charge ch_123 belongs to user_1 through its payment intent."""
    mock_stripe.retrieve_charge.return_value = charge()
    mock_stripe.retrieve_payment_intent.return_value = payment_intent(user_id="user_1")
    return mock_stripe


def _audits(db_session, event_type):
    return (
        db_session.query(AuditLog)
        .filter(AuditLog.event_type == event_type.value)
        .all()
    )


def _user(db_session, user_id="user_1"):
    return db_session.query(User).filter(User.id == user_id).first()


# =============================================================================
# Test: resolve_payment_user
# =============================================================================


@pytest.mark.unit
def test_resolve_payment_user_via_charge(billing_services, payment_owner):
    user_id, payment_intent_id = billing_services.security.resolve_payment_user("ch_123")

    assert user_id == "user_1"
    assert payment_intent_id == "pi_123"
    payment_owner.retrieve_charge.assert_called_once_with("ch_123")


@pytest.mark.unit
def test_resolve_payment_user_with_known_intent(billing_services, payment_owner):
    user_id, _ = billing_services.security.resolve_payment_user("ch_123", "pi_123")

    assert user_id == "user_1"
    payment_owner.retrieve_charge.assert_not_called()


@pytest.mark.unit
def test_resolve_payment_user_lookup_failure(billing_services, mock_stripe):
    mock_stripe.retrieve_charge.side_effect = UpstreamLookupError("charge retrieve", "not found")

    assert billing_services.security.resolve_payment_user("ch_123") == (None, None)


@pytest.mark.unit
def test_resolve_payment_user_without_metadata(billing_services, mock_stripe):
    mock_stripe.retrieve_charge.return_value = charge()
    mock_stripe.retrieve_payment_intent.return_value = payment_intent(user_id=None)

    assert billing_services.security.resolve_payment_user("ch_123") == (None, "pi_123")


# =============================================================================
# Test: radar.early_fraud_warning.created
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_actionable_fraud_warning_suspends_account(
    billing_services, payment_owner, make_user, mock_notifier, mock_alerts, db_session
):
    make_user()

    await billing_services.security.handle_fraud_warning_created(
        parse_event(event_bytes("radar.early_fraud_warning.created", early_fraud_warning()))
    )

    user = _user(db_session)
    assert user.account_status == AccountStatus.SUSPENDED
    assert user.suspended_reason == "fraud_warning"
    assert user.suspended_at is not None

    warnings = _audits(db_session, SecurityEventType.SUSPICIOUS_ACTIVITY)
    assert len(warnings) == 1
    assert warnings[0].event_metadata["fraud_type"] == "made_with_stolen_card"
    assert len(_audits(db_session, SecurityEventType.ACCOUNT_SUSPENDED)) == 1

    mock_alerts.capture_message.assert_called_once()
    assert mock_alerts.capture_message.call_args.args[0] == "Stripe Radar fraud warning received"
    assert mock_alerts.capture_message.call_args.kwargs["level"] == "error"

    mock_notifier.send_email.assert_awaited_once()
    assert mock_notifier.send_email.await_args.kwargs["template"] == "fraud-alert"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_actionable_fraud_warning_only_alerts(
    billing_services, payment_owner, make_user, mock_notifier, mock_alerts, db_session
):
    make_user()

    await billing_services.security.handle_fraud_warning_created(
        parse_event(
            event_bytes("radar.early_fraud_warning.created", early_fraud_warning(actionable=False))
        )
    )

    assert _user(db_session).account_status == AccountStatus.ACTIVE
    assert len(_audits(db_session, SecurityEventType.SUSPICIOUS_ACTIVITY)) == 1
    mock_alerts.capture_message.assert_called_once()
    mock_notifier.send_email.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fraud_warning_for_unresolved_user(
    billing_services, mock_stripe, mock_alerts, db_session
):
    """Without a resolvable user the warning is still recorded and alerted."""
    mock_stripe.retrieve_charge.side_effect = UpstreamLookupError("charge retrieve", "not found")

    await billing_services.security.handle_fraud_warning_created(
        parse_event(event_bytes("radar.early_fraud_warning.created", early_fraud_warning()))
    )

    records = _audits(db_session, SecurityEventType.SUSPICIOUS_ACTIVITY)
    assert len(records) == 1
    assert records[0].user_id is None
    assert _audits(db_session, SecurityEventType.ACCOUNT_SUSPENDED) == []
    mock_alerts.capture_message.assert_called_once()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fraud_warning_suspension_failure_is_contained(
    billing_services, payment_owner, make_user, mock_alerts, mocker
):
    make_user()
    mocker.patch.object(
        billing_services.repository, "update_user", side_effect=RuntimeError("write failed")
    )

    await billing_services.security.handle_fraud_warning_created(
        parse_event(event_bytes("radar.early_fraud_warning.created", early_fraud_warning()))
    )

    mock_alerts.capture_exception.assert_called_once()


# =============================================================================
# Test: review.opened / review.closed
# =============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_review_opened_records_and_alerts(billing_services, payment_owner, mock_alerts, db_session):
    await billing_services.security.handle_review_opened(
        parse_event(event_bytes("review.opened", review(reason="rule")))
    )

    records = _audits(db_session, SecurityEventType.SUSPICIOUS_ACTIVITY)
    assert len(records) == 1
    assert records[0].user_id == "user_1"
    assert records[0].error == "Payment under manual review"
    assert mock_alerts.capture_message.call_args.kwargs["level"] == "warning"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_review_approved_restores_suspended_account(
    billing_services, payment_owner, make_user, mock_notifier, db_session
):
    make_user(
        account_status=AccountStatus.SUSPENDED,
        suspended_reason="fraud_warning",
        suspended_at=datetime(2025, 1, 2),
    )

    await billing_services.security.handle_review_closed(
        parse_event(event_bytes("review.closed", review(reason="approved")))
    )

    user = _user(db_session)
    assert user.account_status == AccountStatus.ACTIVE
    assert user.suspended_reason is None
    assert user.suspended_at is None
    assert len(_audits(db_session, SecurityEventType.ACCOUNT_RESTORED)) == 1
    assert mock_notifier.send_email.await_args.kwargs["template"] == "account-restored"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_review_approved_for_active_account_changes_nothing(
    billing_services, payment_owner, make_user, mock_notifier, db_session
):
    make_user()

    await billing_services.security.handle_review_closed(
        parse_event(event_bytes("review.closed", review(reason="approved")))
    )

    assert _audits(db_session, SecurityEventType.ACCOUNT_RESTORED) == []
    mock_notifier.send_email.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_review_declined_alerts(
    billing_services, payment_owner, make_user, mock_alerts, db_session
):
    make_user(account_status=AccountStatus.SUSPENDED, suspended_reason="fraud_warning")

    await billing_services.security.handle_review_closed(
        parse_event(event_bytes("review.closed", review(reason="refunded_as_fraud")))
    )

    assert _user(db_session).account_status == AccountStatus.SUSPENDED
    records = _audits(db_session, SecurityEventType.SUSPICIOUS_ACTIVITY)
    assert records[0].success is False
    assert records[0].error == "Review closed: refunded_as_fraud"
    assert mock_alerts.capture_message.call_args.args[0] == "Payment review declined"
    assert mock_alerts.capture_message.call_args.kwargs["level"] == "error"
