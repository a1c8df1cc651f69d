"""
FastAPI dependencies for the webhook endpoint
"""
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from config.settings import settings
from models import get_db
from services.container import BillingServices, build_billing_services
from services.stripe_client import StripeClient
from services.verifier import WebhookVerifier


@lru_cache
def get_webhook_verifier() -> WebhookVerifier:
    return WebhookVerifier(settings.stripe_webhook_secret, settings.stripe_webhook_tolerance)


@lru_cache
def get_stripe_client() -> StripeClient:
    return StripeClient(settings.stripe_secret_key)


def get_billing_services(
    db: Session = Depends(get_db),
    stripe_client: StripeClient = Depends(get_stripe_client),
) -> BillingServices:
    """Service graph bound to the request's database session"""
    return build_billing_services(db, stripe_client=stripe_client)
