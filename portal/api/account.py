"""
Account API routes.

- DELETE /api/account: soft delete the caller's own account
"""
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from portal.api.deps import get_account_service
from portal.core.auth import CurrentUser, get_current_user
from portal.features.users.account import AccountDeletionService

router = APIRouter(prefix="/api/account", tags=["account"])


class DeleteAccountRequest(BaseModel):
    reason: Optional[str] = None


@router.delete("")
def delete_account(
    body: Optional[DeleteAccountRequest] = Body(None),
    current: CurrentUser = Depends(get_current_user),
    service: AccountDeletionService = Depends(get_account_service),
):
    """
    Errors:
        400: The account still has active team members
        403: Team members are removed by their owner
    """
    deletion = service.delete_account(current.user_id, body.reason if body else None)
    return {"success": True, "message": "Account deleted successfully", **asdict(deletion)}
