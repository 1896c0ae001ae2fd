"""
Auth-adjacent routes.

- POST /api/auth/sync: upsert the caller on login and self-heal cluster access
- POST /api/auth/validate-corporate: accept a corporate (prepaid) registration
  once the caller's email is confirmed on the HubSpot deal
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from portal.api.deps import get_crm_client, get_sync_service
from portal.core.auth import CurrentUser, get_current_user
from portal.core.errors import PermissionError, ValidationError
from portal.features.crm.hubspot import HubSpotClient
from portal.features.users.service import UserSyncService

router = APIRouter(prefix="/api/auth", tags=["auth"])


class SyncRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None


class CorporateRequest(BaseModel):
    deal_id: str


def _caller_email(current: CurrentUser, fallback: Optional[str]) -> str:
    email = current.email or fallback
    if not email:
        raise ValidationError("Email is required")
    return email


@router.post("/sync")
def sync_user(
    body: Optional[SyncRequest] = None,
    current: CurrentUser = Depends(get_current_user),
    service: UserSyncService = Depends(get_sync_service),
):
    body = body or SyncRequest()
    result = service.sync_on_login(current.user_id, _caller_email(current, body.email), current.name or body.name)
    user = result.user
    return {
        "user_id": user.id,
        "created": result.created,
        "status": user.status.value,
        "billing_mode": user.billing_mode.value if user.billing_mode else None,
        "is_team_member": user.is_team_member,
        "cluster_assigned": result.cluster_assigned,
        "quota_synced": result.quota_synced,
    }


@router.post("/validate-corporate")
def validate_corporate(
    body: CorporateRequest,
    current: CurrentUser = Depends(get_current_user),
    crm: HubSpotClient = Depends(get_crm_client),
    service: UserSyncService = Depends(get_sync_service),
):
    """
    Errors:
        403: Email is not a contact on the deal
        404: Deal not found
        502: HubSpot unavailable
    """
    email = _caller_email(current, None)
    deal = crm.validate_deal(body.deal_id, email)
    if not deal.valid:
        raise PermissionError("Email not authorized for this corporate account")

    result = service.register_corporate(current.user_id, deal.deal_id)
    return {
        "valid": True,
        "deal_id": deal.deal_id,
        "deal_name": deal.deal_name,
        "deal_stage": deal.deal_stage,
        "cluster_assigned": result.cluster_assigned,
    }
