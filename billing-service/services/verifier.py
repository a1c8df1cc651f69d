"""
Webhook envelope verification

Checks the Stripe-Signature header over the raw request body before any
of it is decoded.
"""

from typing import Optional
import logging

import stripe

from services.events import BaseEvent, parse_event
from utils.exceptions import InternalServiceError, SignatureError

logger = logging.getLogger(__name__)


class WebhookVerifier:
    """Verifies and decodes signed Stripe webhook deliveries"""

    def __init__(self, secret: str, tolerance: int = 300):
        self.secret = secret
        self.tolerance = tolerance

    def verify_and_parse(self, payload: bytes, signature: Optional[str]) -> BaseEvent:
        """
        Verify the signature, then decode the event

        Args:
            payload: Raw request body, exactly as received
            signature: Value of the Stripe-Signature header

        Returns:
            Typed provider event

        Raises:
            SignatureError: Header missing or signature does not match
            PayloadError: Signed body is not a valid event
            InternalServiceError: Webhook secret is not configured
        """
        if not self.secret:
            logger.error("Stripe webhook secret is not configured")
            raise InternalServiceError(
                "Webhook secret is not configured", service="stripe"
            )

        if not signature:
            raise SignatureError("missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise SignatureError("payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise SignatureError(str(e))

        return parse_event(payload)
