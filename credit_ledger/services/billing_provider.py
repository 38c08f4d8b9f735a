"""
Billing provider client.

The only provider call this service makes is "cancel subscription", used
after duplicate subscriptions have already been canceled locally. Webhook
signature verification lives here too.
"""
import json
import logging
from typing import Optional, Protocol

import stripe

from credit_ledger.core.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from credit_ledger.core.errors import ProviderCancelFailed

logger = logging.getLogger(__name__)

# Initialize Stripe client
if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY
else:
    logger.warning("STRIPE_SECRET_KEY not configured - provider cancellation disabled")


class BillingProvider(Protocol):
    name: str

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel at the provider; raise ProviderCancelFailed on failure."""
        ...


class StripeBillingProvider:
    """Cancels subscriptions through the Stripe API."""

    name = "stripe"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or STRIPE_SECRET_KEY

    def cancel_subscription(self, subscription_id: str) -> None:
        """
        Cancel a Stripe subscription immediately.

        A subscription Stripe already considers canceled or missing counts as
        success.

        Raises:
            ProviderCancelFailed: Stripe is not configured or rejected the call
        """
        if not self.api_key:
            raise ProviderCancelFailed(subscription_id, "STRIPE_SECRET_KEY not configured")

        try:
            stripe.Subscription.cancel(subscription_id, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            message = str(e).lower()
            if getattr(e, "code", None) == "resource_missing" or "canceled" in message:
                logger.info(f"Stripe subscription already canceled: subscription_id={subscription_id}")
                return
            logger.error(f"Stripe rejected cancel: subscription_id={subscription_id}, error={e}")
            raise ProviderCancelFailed(subscription_id, str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe error canceling subscription: subscription_id={subscription_id}, error={e}")
            raise ProviderCancelFailed(subscription_id, str(e)) from e

        logger.info(f"Canceled Stripe subscription: subscription_id={subscription_id}")


def verify_webhook(request_body: bytes, signature: Optional[str]) -> dict:
    """
    Verify and parse a Stripe webhook event.

    Raises:
        ValueError: If webhook verification fails
    """
    if not STRIPE_WEBHOOK_SECRET:
        raise ValueError("STRIPE_WEBHOOK_SECRET not configured")

    try:
        event = stripe.Webhook.construct_event(request_body, signature, STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise ValueError(f"Invalid webhook payload: {e}")
    except stripe.SignatureVerificationError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        raise ValueError(f"Invalid signature: {e}")

    logger.info(f"Verified webhook event: {event['type']}, id={event['id']}")
    # Hand back plain dicts rather than StripeObject
    return json.loads(request_body)
