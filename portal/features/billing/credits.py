"""
Prepaid credits.

Owners with the prepaid_enabled flag buy credit packs through Stripe checkout
in payment mode. The checkout.session.completed webhook records the purchase,
keyed by the checkout session id so a redelivered event adds nothing. The
daily usage job deducts each day's cost from the balance, free credits first,
keyed by the usage row id.

Balances are in dollars: one purchased credit is one dollar of usage.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from portal.core.config import settings
from portal.core.database import credit_transactions, get_db_session, user_credits
from portal.core.errors import ExternalServiceError, PermissionError, ValidationError
from portal.features.billing.provider import BillingProvider, BillingProviderError
from portal.features.billing.service import create_customer, get_provider
from portal.features.users.service import load_billing_owner, require_user
from portal.models.billing import BillingMode, utc_now
from portal.models.user import User

logger = logging.getLogger("portal.billing.credits")

CREDIT_PACKAGES = (25, 50, 100, 500)
PREPAID_FLAG = "prepaid_enabled"
RECENT_TRANSACTIONS = 10

PURCHASE = "purchase"
USAGE = "usage"


def prepaid_enabled(user: User) -> bool:
    return bool(user.feature_flags.get(PREPAID_FLAG))


def parse_credit_amount(amount: Any) -> int:
    if isinstance(amount, bool) or amount not in CREDIT_PACKAGES:
        allowed = ", ".join(f"${a}" for a in CREDIT_PACKAGES)
        raise ValidationError(f"Invalid amount. Choose one of: {allowed}")
    return int(amount)


def _dashboard_url(**params: str) -> str:
    query = "&".join(f"{k}={v}" for k, v in params.items())
    return f"{settings.BASE_URL.rstrip('/')}/dashboard?{query}"


def start_credit_purchase(user_id: str, amount: Any, provider: Optional[BillingProvider] = None) -> Dict[str, Any]:
    """
    Checkout URL for one credit pack.

    Raises:
        ValidationError: amount is not one of CREDIT_PACKAGES
        PermissionError: team member, or prepaid billing not enabled
        ExternalServiceError: billing disabled or Stripe failed
    """
    amount = parse_credit_amount(amount)
    provider = provider or get_provider()
    if provider is None:
        raise ExternalServiceError("Billing is not configured")

    with get_db_session() as session:
        user = require_user(session, user_id)
    if user.is_team_member:
        raise PermissionError("Team members cannot purchase credits")
    if not prepaid_enabled(user):
        raise PermissionError("Prepaid billing is not enabled for this account")

    try:
        customer_id = user.stripe_customer_id or create_customer(provider, user_id, user.email, user.name)
        url = provider.create_payment_session(
            customer_id,
            amount * 100,
            f"{amount} Hopsworks credits",
            success_url=_dashboard_url(credits="purchased"),
            cancel_url=_dashboard_url(credits="cancelled"),
            metadata={"user_id": user_id, "credit_amount": str(amount)},
        )
    except BillingProviderError as e:
        logger.error("credits.purchase_failed", extra={"user_id": user_id, "error": str(e)})
        raise ExternalServiceError("Could not start credit purchase", details=str(e))
    logger.info("credits.purchase_started", extra={"user_id": user_id, "amount": amount})
    return {"url": url, "amount": amount}


def _credits_row(session: Session, user_id: str, now: datetime):
    row = session.execute(select(user_credits).where(user_credits.c.user_id == user_id)).first()
    if row is None:
        session.execute(insert(user_credits).values(user_id=user_id, updated_at=now))
        row = session.execute(select(user_credits).where(user_credits.c.user_id == user_id)).first()
    return row


def record_credit_purchase(session: Session, user_id: str, amount: float, stripe_session_id: str, now: Optional[datetime] = None) -> bool:
    """Add a paid pack to the balance. Returns False when this checkout session was already recorded."""
    now = now or utc_now()
    seen = session.execute(
        select(credit_transactions.c.id).where(credit_transactions.c.stripe_session_id == stripe_session_id)
    ).first()
    if seen:
        return False
    row = _credits_row(session, user_id, now)
    session.execute(
        update(user_credits)
        .where(user_credits.c.user_id == user_id)
        .values(total_purchased=row.total_purchased + amount, updated_at=now)
    )
    session.execute(
        insert(credit_transactions).values(
            user_id=user_id,
            amount=amount,
            kind=PURCHASE,
            description=f"Purchased ${amount:g} credits",
            stripe_session_id=stripe_session_id,
            created_at=now,
        )
    )
    return True


def deduct_credits(session: Session, user_id: str, amount: float, usage_id: int, description: str, now: Optional[datetime] = None) -> bool:
    """Charge one usage row against the balance. The balance may go negative; usage has already happened."""
    now = now or utc_now()
    seen = session.execute(select(credit_transactions.c.id).where(credit_transactions.c.usage_id == usage_id)).first()
    if seen:
        return False
    row = _credits_row(session, user_id, now)
    free_left = max(row.free_credits_granted - row.free_credits_used, 0.0)
    from_free = min(free_left, amount)
    session.execute(
        update(user_credits)
        .where(user_credits.c.user_id == user_id)
        .values(
            free_credits_used=row.free_credits_used + from_free,
            total_used=row.total_used + (amount - from_free),
            updated_at=now,
        )
    )
    session.execute(
        insert(credit_transactions).values(
            user_id=user_id,
            amount=-amount,
            kind=USAGE,
            description=description,
            usage_id=usage_id,
            created_at=now,
        )
    )
    return True


def get_credit_balance(user_id: str) -> Dict[str, Any]:
    """Balance of the billed owner. Postpaid owners get their subscription state instead."""
    with get_db_session() as session:
        user = require_user(session, user_id)
        owner = load_billing_owner(session, user)
        if owner.billing_mode == BillingMode.POSTPAID:
            return {
                "billing_mode": BillingMode.POSTPAID.value,
                "subscription_status": owner.stripe_subscription_status or "none",
                "prepaid_enabled": prepaid_enabled(owner),
            }
        credits = session.execute(select(user_credits).where(user_credits.c.user_id == owner.id)).first()
        transactions = session.execute(
            select(credit_transactions)
            .where(credit_transactions.c.user_id == owner.id)
            .order_by(credit_transactions.c.created_at.desc(), credit_transactions.c.id.desc())
            .limit(RECENT_TRANSACTIONS)
        ).fetchall()

    paid = (credits.total_purchased - credits.total_used) if credits else 0.0
    free = (credits.free_credits_granted - credits.free_credits_used) if credits else 0.0
    return {
        "billing_mode": owner.billing_mode.value if owner.billing_mode else None,
        "prepaid_enabled": prepaid_enabled(owner),
        "balance": {"total": round(paid + free, 2), "paid": round(paid, 2), "free": round(free, 2)},
        "credits": {
            "total_purchased": credits.total_purchased if credits else 0.0,
            "total_used": credits.total_used if credits else 0.0,
        },
        "recent_transactions": [_transaction(t) for t in transactions],
    }


def _transaction(row) -> Dict[str, Any]:
    created = row.created_at
    return {
        "id": row.id,
        "amount": row.amount,
        "kind": row.kind,
        "description": row.description,
        "created_at": created.isoformat() if created else None,
    }
