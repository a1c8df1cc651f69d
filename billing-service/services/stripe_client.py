"""
Stripe API client

Read-only enrichment lookups used while handling webhooks, plus the
subscription cancel issued when a failed payment downgrades a user.
"""

from typing import Any, Dict, List, Optional
import logging

import stripe

from services.events import ProviderSubscription
from utils.exceptions import UpstreamLookupError

logger = logging.getLogger(__name__)


class StripeClient:
    """
    Stripe API integration

    Every Stripe failure is re-raised as UpstreamLookupError so handlers
    only deal with the service's own exception hierarchy.
    """

    def __init__(self, api_key: str):
        """Initialize Stripe with API key"""
        stripe.api_key = api_key
        logger.info("Stripe client initialized")

    def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Retrieve a subscription from Stripe

        Args:
            subscription_id: Stripe subscription ID

        Returns:
            Parsed subscription
        """
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve subscription {subscription_id}: {e}")
            raise UpstreamLookupError(
                "subscription retrieve", str(e), {"subscription_id": subscription_id}
            )
        return ProviderSubscription.model_validate(subscription.to_dict())

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        """Retrieve a charge from Stripe"""
        try:
            return stripe.Charge.retrieve(charge_id).to_dict()
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve charge {charge_id}: {e}")
            raise UpstreamLookupError("charge retrieve", str(e), {"charge_id": charge_id})

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """
        Retrieve a payment intent with its latest charge expanded

        Args:
            payment_intent_id: Stripe payment intent ID

        Returns:
            Payment intent as a plain dictionary
        """
        try:
            intent = stripe.PaymentIntent.retrieve(
                payment_intent_id, expand=["latest_charge"]
            )
            return intent.to_dict()
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve payment intent {payment_intent_id}: {e}")
            raise UpstreamLookupError(
                "payment intent retrieve",
                str(e),
                {"payment_intent_id": payment_intent_id},
            )

    def list_customer_subscriptions(
        self, customer_id: str, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        List every subscription of a customer, in any status

        Args:
            customer_id: Stripe customer ID
            limit: Maximum number of subscriptions returned

        Returns:
            Subscriptions as plain dictionaries
        """
        try:
            result = stripe.Subscription.list(
                customer=customer_id, status="all", limit=limit
            )
            return [subscription.to_dict() for subscription in result.data]
        except stripe.StripeError as e:
            logger.error(f"Failed to list subscriptions for {customer_id}: {e}")
            raise UpstreamLookupError(
                "subscription list", str(e), {"customer_id": customer_id}
            )

    def cancel_subscription(self, subscription_id: str) -> Optional[str]:
        """
        Cancel a subscription immediately

        A subscription that is already gone counts as canceled, so the call
        can be repeated safely.

        Args:
            subscription_id: Stripe subscription ID

        Returns:
            Resulting Stripe status, or None if it no longer exists
        """
        try:
            subscription = stripe.Subscription.cancel(subscription_id)
            logger.info(f"Canceled Stripe subscription {subscription_id}")
            return subscription.status
        except stripe.InvalidRequestError as e:
            if e.code == "resource_missing" or "canceled" in str(e).lower():
                logger.info(f"Subscription {subscription_id} already canceled")
                return None
            logger.error(f"Failed to cancel subscription {subscription_id}: {e}")
            raise UpstreamLookupError(
                "subscription cancel", str(e), {"subscription_id": subscription_id}
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel subscription {subscription_id}: {e}")
            raise UpstreamLookupError(
                "subscription cancel", str(e), {"subscription_id": subscription_id}
            )
