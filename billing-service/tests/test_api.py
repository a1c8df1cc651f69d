"""
API endpoint tests for the Stripe webhook and health check.
"""
import asyncio
import json
import threading

import httpx
import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_billing_services, get_webhook_verifier
from api.main import app
from models import (
    AuditCategory,
    AuditLog,
    ProcessedWebhookEvent,
    Subscription,
    SubscriptionTier,
    WebhookEventStatus,
    get_db,
)
from services.verifier import WebhookVerifier
from tests.fixtures.stripe_fixtures import (
    TEST_WEBHOOK_SECRET,
    checkout_session,
    event_bytes,
    invoice,
    sign_payload,
)
from utils.exceptions import UpstreamLookupError

client = TestClient(app)

WEBHOOK_URL = "/api/v1/webhooks/stripe"


@pytest.fixture(autouse=True)
def api_overrides(db_session, billing_services):
    """Route the app onto the test database and mocked collaborators."""
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_webhook_verifier] = lambda: WebhookVerifier(TEST_WEBHOOK_SECRET)
    app.dependency_overrides[get_billing_services] = lambda: billing_services
    yield
    app.dependency_overrides.clear()


def _post(payload: bytes, signature=None, **headers):
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post(WEBHOOK_URL, content=payload, headers=headers)


def _signed(payload: bytes, **headers):
    return _post(payload, sign_payload(payload, TEST_WEBHOOK_SECRET), **headers)


# =============================================================================
# Test: POST /api/v1/webhooks/stripe
# =============================================================================


@pytest.mark.webhooks
def test_webhook_checkout_completed(make_user, db_session):
    """A signed checkout event upgrades the user and is acknowledged."""
    make_user()
    payload = event_bytes("checkout.session.completed", checkout_session())

    response = _signed(payload)

    assert response.status_code == 200
    assert response.json() == {"received": True}

    subscription = db_session.query(Subscription).filter_by(user_id="user_1").one()
    assert subscription.tier == SubscriptionTier.PAID

    record = db_session.query(ProcessedWebhookEvent).one()
    assert record.stripe_event_id == "evt_123"
    assert record.status == WebhookEventStatus.PROCESSED

    received = db_session.query(AuditLog).filter(AuditLog.category == AuditCategory.WEBHOOK).one()
    assert received.event_metadata["event_id"] == "evt_123"


@pytest.mark.webhooks
def test_webhook_missing_signature_is_rejected(make_user, db_session):
    make_user()
    payload = event_bytes("checkout.session.completed", checkout_session())

    response = _post(payload)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SIGNATURE"
    assert db_session.query(Subscription).count() == 0
    assert db_session.query(ProcessedWebhookEvent).count() == 0
    assert db_session.query(AuditLog).count() == 0


@pytest.mark.webhooks
def test_webhook_invalid_signature_is_rejected(make_user, db_session, mock_stripe):
    make_user()
    payload = event_bytes("checkout.session.completed", checkout_session())

    response = _post(payload, sign_payload(payload, "whsec_wrong"))

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SIGNATURE"
    mock_stripe.retrieve_subscription.assert_not_called()
    assert db_session.query(Subscription).count() == 0


@pytest.mark.webhooks
def test_webhook_malformed_payload_is_rejected(db_session):
    payload = json.dumps({"id": "evt_1", "type": "customer.subscription.updated", "data": {}}).encode()

    response = _signed(payload)

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"
    assert db_session.query(ProcessedWebhookEvent).count() == 0


@pytest.mark.webhooks
def test_webhook_duplicate_delivery_is_not_reprocessed(make_user, mock_stripe):
    make_user()
    payload = event_bytes("checkout.session.completed", checkout_session())

    first = _signed(payload)
    second = _signed(payload)

    assert first.json() == {"received": True}
    assert second.status_code == 200
    assert second.json() == {"received": True, "duplicate": True}
    assert mock_stripe.retrieve_subscription.call_count == 1


@pytest.mark.webhooks
def test_webhook_unknown_event_type_is_acknowledged(db_session):
    payload = event_bytes("customer.created", {"id": "cus_123"}, event_id="evt_unknown")

    response = _signed(payload)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    record = db_session.query(ProcessedWebhookEvent).one()
    assert record.status == WebhookEventStatus.PROCESSED


@pytest.mark.webhooks
def test_webhook_handler_failure_is_still_acknowledged(make_user, mock_stripe, mock_alerts, db_session):
    """Stripe gets a 200 even when the handler fails; the failure is recorded."""
    make_user()
    mock_stripe.retrieve_subscription.side_effect = UpstreamLookupError(
        "subscription retrieve", "timeout"
    )
    payload = event_bytes("invoice.payment_failed", invoice(), event_id="evt_fail")

    response = _signed(payload)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    record = db_session.query(ProcessedWebhookEvent).one()
    assert record.status == WebhookEventStatus.FAILED
    assert "timeout" in record.error_message
    mock_alerts.capture_exception.assert_called_once()


@pytest.mark.webhooks
def test_webhook_failed_event_is_retried_on_redelivery(make_user, mock_stripe):
    make_user()
    mock_stripe.retrieve_subscription.side_effect = [
        UpstreamLookupError("subscription retrieve", "timeout"),
        mock_stripe.retrieve_subscription.return_value,
    ]
    payload = event_bytes("checkout.session.completed", checkout_session())

    _signed(payload)
    response = _signed(payload)

    assert response.json() == {"received": True}
    assert mock_stripe.retrieve_subscription.call_count == 2


@pytest.mark.webhooks
def test_webhook_echoes_request_id():
    payload = event_bytes("customer.created", {"id": "cus_123"})

    response = _signed(payload, **{"X-Request-ID": "req-abc"})

    assert response.headers["X-Request-ID"] == "req-abc"


@pytest.mark.webhooks
def test_webhook_secret_not_configured():
    app.dependency_overrides[get_webhook_verifier] = lambda: WebhookVerifier("")
    payload = event_bytes("customer.created", {"id": "cus_123"})

    response = _signed(payload)

    assert response.status_code == 500
    assert response.json()["error"] == "INTERNAL_ERROR"


@pytest.mark.webhooks
@pytest.mark.asyncio
async def test_slow_stripe_lookup_does_not_block_other_deliveries(make_user, mock_stripe):
    """Another delivery is answered while one handler waits on Stripe."""
    make_user()
    lookup_started = threading.Event()
    release_lookup = threading.Event()
    subscription = mock_stripe.retrieve_subscription.return_value

    def slow_lookup(subscription_id):
        lookup_started.set()
        release_lookup.wait(5)
        return subscription

    mock_stripe.retrieve_subscription.side_effect = slow_lookup
    checkout = event_bytes("checkout.session.completed", checkout_session(), event_id="evt_slow")
    unrelated = event_bytes("customer.created", {"id": "cus_123"}, event_id="evt_fast")

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        slow = asyncio.create_task(
            http.post(
                WEBHOOK_URL,
                content=checkout,
                headers={"Stripe-Signature": sign_payload(checkout, TEST_WEBHOOK_SECRET)},
            )
        )
        assert await asyncio.to_thread(lookup_started.wait, 5)

        fast = await asyncio.wait_for(
            http.post(
                WEBHOOK_URL,
                content=unrelated,
                headers={"Stripe-Signature": sign_payload(unrelated, TEST_WEBHOOK_SECRET)},
            ),
            timeout=2,
        )

        assert fast.status_code == 200
        assert not slow.done()

        release_lookup.set()
        slow_response = await slow

    assert slow_response.status_code == 200
    assert slow_response.json() == {"received": True}


# =============================================================================
# Test: GET /health
# =============================================================================


def test_health_check():
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "billing-webhook-service"
    assert data["checks"]["database"]["status"] == "healthy"


def test_health_check_database_down(mocker):
    broken = mocker.Mock()
    broken.execute.side_effect = RuntimeError("connection refused")
    app.dependency_overrides[get_db] = lambda: broken

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["checks"]["database"]["status"] == "unhealthy"


def test_unknown_route_returns_structured_404():
    response = client.get("/api/v1/does-not-exist")
    assert response.status_code == 404
    assert response.json()["error"] == "HTTP_ERROR"
