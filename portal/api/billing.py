"""
Billing API routes.

- GET  /api/billing: billing summary for the dashboard
- POST /api/billing/setup-payment: checkout (setup mode) or portal URL
- GET  /api/billing/spending-cap: current cap and month-to-date usage
- POST /api/billing/spending-cap: set or clear the cap
- POST /api/billing/purchase-credits: checkout (payment mode) for a credit pack
- GET  /api/billing/balance: prepaid balance and recent transactions
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from portal.api.deps import require_billing_provider
from portal.core.auth import CurrentUser, get_current_user
from portal.features.billing.credits import get_credit_balance, start_credit_purchase
from portal.features.billing.provider import BillingProvider
from portal.features.billing.service import (
    get_billing_summary,
    get_spending_cap,
    set_spending_cap,
    start_payment_setup,
)

router = APIRouter(prefix="/api/billing", tags=["billing"])


class SetupPaymentResponse(BaseModel):
    """Where to send the browser next."""
    kind: str  # portal | checkout
    url: str


class SpendingCapRequest(BaseModel):
    # Accepts numbers or numeric strings; null disables the cap
    cap: Optional[Any] = None


class PurchaseCreditsRequest(BaseModel):
    amount: Optional[Any] = None


@router.get("")
def billing_summary(current: CurrentUser = Depends(get_current_user)):
    return get_billing_summary(current.user_id)


@router.post("/setup-payment", response_model=SetupPaymentResponse)
def setup_payment(
    current: CurrentUser = Depends(get_current_user),
    provider: BillingProvider = Depends(require_billing_provider),
):
    """
    Errors:
        403: Team members are billed through their owner
        502: Billing disabled or Stripe error
    """
    return start_payment_setup(current.user_id, provider)


@router.get("/spending-cap")
def read_spending_cap(current: CurrentUser = Depends(get_current_user)):
    return get_spending_cap(current.user_id)


@router.post("/spending-cap")
def update_spending_cap(body: SpendingCapRequest, current: CurrentUser = Depends(get_current_user)):
    return set_spending_cap(current.user_id, body.cap)


@router.post("/purchase-credits")
def purchase_credits(
    body: PurchaseCreditsRequest,
    current: CurrentUser = Depends(get_current_user),
    provider: BillingProvider = Depends(require_billing_provider),
):
    """
    Errors:
        400: Amount is not an offered credit pack
        403: Team member, or prepaid billing not enabled
        502: Stripe error
    """
    return start_credit_purchase(current.user_id, body.amount, provider)


@router.get("/balance")
def balance(current: CurrentUser = Depends(get_current_user)):
    return get_credit_balance(current.user_id)
