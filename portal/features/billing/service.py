"""
Billing account service.

Coordinates what the dashboard needs from billing:
- Billing summary (mode, subscription, month-to-date cost, cap)
- Payment setup (Stripe checkout in setup mode, or the billing portal)
- Spending cap read / update

All Stripe-specific code is in stripe_provider.py.
"""
import logging
import math
from typing import Any, Dict, Optional

from sqlalchemy import update

from portal.core.config import settings
from portal.core.database import get_db_session, users
from portal.core.errors import ExternalServiceError, PermissionError, ValidationError
from portal.features.billing.provider import BillingProvider, BillingProviderError
from portal.features.billing.rates import CREDIT_UNIT_PRICE
from portal.features.billing.spending_alerts import monthly_total
from portal.features.clusters.assignment import load_assignment
from portal.features.clusters.quota import quota_for_user
from portal.features.users.service import load_billing_owner, require_user
from portal.models.billing import utc_now

logger = logging.getLogger("portal.billing")


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    # Imported here so the stripe SDK is only loaded when billing is configured
    from portal.features.billing.stripe_provider import StripeProvider

    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _billing_url(**params: str) -> str:
    url = f"{settings.BASE_URL.rstrip('/')}/dashboard?tab=billing"
    for key, value in params.items():
        url += f"&{key}={value}"
    return url


def get_billing_summary(user_id: str) -> Dict[str, Any]:
    """
    Billing view for the dashboard.

    Team members see their owner's billing state (read-only).
    """
    now = utc_now()
    with get_db_session() as session:
        user = require_user(session, user_id)
        owner = load_billing_owner(session, user)
        total = monthly_total(session, owner.id, now)
        assignment = load_assignment(session, user_id)

    return {
        "billing_mode": owner.billing_mode.value if owner.billing_mode else None,
        "is_team_member": user.is_team_member,
        "account_owner_id": user.account_owner_id,
        "has_subscription": owner.has_subscription,
        "subscription_status": owner.stripe_subscription_status,
        "status": user.status.value,
        "monthly_total": round(total, 2),
        "credit_unit_price": CREDIT_UNIT_PRICE,
        "spending_cap": owner.spending_cap,
        "downgrade_deadline": owner.downgrade_deadline.isoformat() if owner.downgrade_deadline else None,
        "max_projects": quota_for_user(user),
        "cluster_id": assignment.hopsworks_cluster_id if assignment else None,
    }


def start_payment_setup(user_id: str, provider: Optional[BillingProvider] = None) -> Dict[str, str]:
    """
    Send the user to the right Stripe page.

    Owners with a subscription manage it in the billing portal; everyone else
    goes through checkout in setup mode to attach a card. The webhook turns the
    attached card into a postpaid subscription.

    Returns:
        {"kind": "portal" | "checkout", "url": str}

    Raises:
        PermissionError: Team members are billed through their owner
        ExternalServiceError: Billing disabled or Stripe failed
    """
    provider = provider or get_provider()
    if provider is None:
        raise ExternalServiceError("Billing is not configured")

    with get_db_session() as session:
        user = require_user(session, user_id)
    if user.is_team_member:
        raise PermissionError("Team members are billed through their account owner")

    try:
        if user.has_subscription and user.stripe_customer_id:
            url = provider.create_portal_session(user.stripe_customer_id, _billing_url())
            return {"kind": "portal", "url": url}

        customer_id = user.stripe_customer_id or create_customer(provider, user_id, user.email, user.name)
        url = provider.create_setup_session(
            customer_id,
            success_url=_billing_url(setup="success"),
            cancel_url=_billing_url(setup="canceled"),
            metadata={"user_id": user_id},
        )
    except BillingProviderError as e:
        logger.error("billing.setup_failed", extra={"user_id": user_id, "error": str(e)})
        raise ExternalServiceError("Could not start payment setup", details=str(e))
    return {"kind": "checkout", "url": url}


def create_customer(provider: BillingProvider, user_id: str, email: str, name: Optional[str]) -> str:
    customer_id = provider.ensure_customer(user_id, email, name)
    with get_db_session() as session:
        result = session.execute(
            update(users)
            .where(users.c.id == user_id)
            .where(users.c.stripe_customer_id.is_(None))
            .values(stripe_customer_id=customer_id, updated_at=utc_now())
        )
        if result.rowcount == 0:
            # A concurrent request stored a customer first; use that one
            customer_id = require_user(session, user_id).stripe_customer_id
    logger.info("billing.customer_created", extra={"user_id": user_id})
    return customer_id


def get_spending_cap(user_id: str) -> Dict[str, Any]:
    """
    Current cap with month-to-date usage (owner plus team members).

    Raises:
        PermissionError: Team members cannot manage caps
    """
    now = utc_now()
    with get_db_session() as session:
        user = require_user(session, user_id)
        if user.is_team_member:
            raise PermissionError("Team members cannot manage spending caps")
        total = monthly_total(session, user_id, now)

    percent = total / user.spending_cap * 100 if user.spending_cap and user.spending_cap > 0 else 0.0
    return {
        "spending_cap": user.spending_cap,
        "monthly_total": total,
        "percent_used": round(percent, 1),
        "alerts_sent": user.spending_alerts_sent,
    }


def set_spending_cap(user_id: str, cap: Any) -> Dict[str, Any]:
    """
    Set or clear (None) the monthly cap. Changing the cap resets sent alerts.

    Raises:
        ValidationError: cap is not a non-negative number
        PermissionError: Team members cannot manage caps
    """
    new_cap = parse_cap(cap)
    with get_db_session() as session:
        user = require_user(session, user_id)
        if user.is_team_member:
            raise PermissionError("Team members cannot manage spending caps")
        session.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(spending_cap=new_cap, spending_alerts_sent=None, updated_at=utc_now())
        )
    logger.info("billing.spending_cap_set", extra={"user_id": user_id, "spending_cap": new_cap})
    message = "Spending cap disabled" if new_cap is None else f"Spending cap set to ${new_cap:.2f}"
    return {"message": message, "spending_cap": new_cap}


def parse_cap(cap: Any) -> Optional[float]:
    if cap is None or cap == "":
        return None
    if isinstance(cap, bool):
        raise ValidationError("Invalid cap value. Must be a positive number or null to disable.")
    try:
        value = float(cap)
    except (TypeError, ValueError):
        raise ValidationError("Invalid cap value. Must be a positive number or null to disable.")
    if math.isnan(value) or math.isinf(value) or value < 0:
        raise ValidationError("Invalid cap value. Must be a positive number or null to disable.")
    return value


def payment_method_checker(provider: Optional[BillingProvider]):
    """Callable[[customer_id], bool] for login sync, or None when billing is off."""
    if provider is None:
        return None

    def has_payment_method(customer_id: str) -> bool:
        return bool(provider.list_payment_methods(customer_id))

    return has_payment_method
