"""
Stripe billing provider.

Implements BillingProvider with the stripe SDK. Every SDK error is wrapped in
BillingProviderError so callers handle one exception type.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from portal.core.config import settings
from portal.features.billing.provider import (
    BillingEvent,
    BillingProviderError,
    BillingWebhookError,
    SubscriptionInfo,
)

logger = logging.getLogger("portal.billing.stripe")

_LIVE_SUBSCRIPTION_STATUSES = {"active", "trialing", "past_due", "unpaid", "incomplete"}


class StripeProvider:
    """Stripe implementation of the BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None, metered_price_ids: Optional[List[str]] = None):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.metered_price_ids = metered_price_ids if metered_price_ids is not None else settings.metered_price_ids()

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def verify_event(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        # Signature covers the raw body, so the plain JSON is as trusted as the Event object
        return parse_event(json.loads(body))

    def ensure_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        try:
            params: Dict[str, Any] = {"email": email, "metadata": {"user_id": user_id}}
            if name:
                params["name"] = name
            return stripe.Customer.create(**params).id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_setup_session(self, customer_id: str, success_url: str, cancel_url: str, metadata: Optional[Dict[str, str]] = None) -> str:
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="setup",
                payment_method_types=["card"],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_payment_session(
        self,
        customer_id: str,
        amount_cents: int,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": "usd",
                            "product_data": {"name": description},
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe payment session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")

    def get_subscription(self, customer_id: str) -> Optional[SubscriptionInfo]:
        try:
            subscriptions = stripe.Subscription.list(customer=customer_id, status="all", limit=10)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription lookup failed: {e}")
        for sub in subscriptions.data:
            if sub.status in _LIVE_SUBSCRIPTION_STATUSES:
                return SubscriptionInfo(subscription_id=sub.id, status=sub.status, customer_id=customer_id)
        return None

    def create_metered_subscription(self, customer_id: str, user_id: str) -> SubscriptionInfo:
        if not self.metered_price_ids:
            raise BillingProviderError("STRIPE_METERED_PRICE_IDS not configured")
        try:
            sub = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id} for price_id in self.metered_price_ids],
                metadata={"user_id": user_id},
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription creation failed: {e}")
        return SubscriptionInfo(subscription_id=sub.id, status=sub.status, customer_id=customer_id)

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.InvalidRequestError as e:
            # Already canceled on Stripe's side
            logger.info("stripe.cancel_noop", extra={"subscription_id": subscription_id, "error": str(e)})
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancel failed: {e}")

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        try:
            methods = stripe.PaymentMethod.list(customer=customer_id, type="card")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe payment method lookup failed: {e}")
        return [{"id": pm.id, "type": pm.type} for pm in methods.data]

    def report_meter_event(self, event_name: str, customer_id: str, value: float, timestamp: int, identifier: str) -> None:
        try:
            stripe.billing.MeterEvent.create(
                event_name=event_name,
                payload={"value": f"{value:.6f}", "stripe_customer_id": customer_id},
                timestamp=timestamp,
                identifier=identifier,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe meter event failed: {e}")


def parse_event(payload: Dict[str, Any]) -> BillingEvent:
    """Normalize a Stripe event payload."""
    try:
        data = payload.get("data") or {}
        return BillingEvent(
            event_id=payload["id"],
            event_type=payload["type"],
            data=data.get("object") or {},
            previous_attributes=data.get("previous_attributes") or {},
            created=payload.get("created"),
        )
    except (KeyError, AttributeError) as e:
        raise BillingWebhookError(f"Malformed event payload: {e}")
