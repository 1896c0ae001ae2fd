"""
Billing provider protocol.

Capability interface the reconciliation code needs from the billing provider.
Stripe implements it in stripe_provider.py; tests use an in-memory fake.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field


@dataclass
class BillingEvent:
    """A verified webhook event."""
    event_id: str
    event_type: str
    data: Dict[str, Any]
    previous_attributes: Dict[str, Any] = field(default_factory=dict)
    created: Optional[int] = None

    @property
    def customer_id(self) -> Optional[str]:
        customer = self.data.get("customer")
        if isinstance(customer, dict):
            return customer.get("id")
        return customer


@dataclass
class SubscriptionInfo:
    subscription_id: str
    status: str
    customer_id: Optional[str] = None


class BillingProvider(Protocol):
    def verify_event(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """
        Verify the webhook signature and parse the event.

        Raises:
            BillingWebhookError: If the signature or payload is invalid
        """
        ...

    def ensure_customer(self, user_id: str, email: str, name: Optional[str] = None) -> str:
        """Create a customer for the user and return its id."""
        ...

    def create_setup_session(self, customer_id: str, success_url: str, cancel_url: str, metadata: Optional[Dict[str, str]] = None) -> str:
        """Checkout session in setup mode (collect a payment method). Returns the URL."""
        ...

    def create_payment_session(
        self,
        customer_id: str,
        amount_cents: int,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Checkout session in payment mode for a one-off charge. Returns the URL."""
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        ...

    def get_subscription(self, customer_id: str) -> Optional[SubscriptionInfo]:
        """The customer's current (not canceled) subscription, if any."""
        ...

    def create_metered_subscription(self, customer_id: str, user_id: str) -> SubscriptionInfo:
        ...

    def cancel_subscription(self, subscription_id: str) -> None:
        ...

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        ...

    def report_meter_event(self, event_name: str, customer_id: str, value: float, timestamp: int, identifier: str) -> None:
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Webhook could not be verified or parsed."""
    pass
