from fastapi import APIRouter

from portal.features.billing.rates import rate_card

router = APIRouter(prefix="/api", tags=["pricing"])


@router.get("/pricing")
def get_pricing():
    """Public rate card."""
    return rate_card()
