"""
Team API routes.

Owners manage invites and the projects their members can use; invitees
accept invites with the emailed token.
"""
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from portal.api.deps import get_invite_service, get_team_project_service
from portal.core.auth import CurrentUser, get_current_user
from portal.core.errors import ValidationError
from portal.features.team.invite_service import TeamInviteService
from portal.features.team.projects import TeamProjectService

router = APIRouter(prefix="/api/team", tags=["team"])


class InviteRequest(BaseModel):
    email: str
    project_role: Optional[str] = None
    auto_assign_projects: bool = True


class AcceptInviteRequest(BaseModel):
    token: str


class MemberProjectRequest(BaseModel):
    project_name: str
    role: Optional[str] = None


@router.get("/members")
def list_members(
    current: CurrentUser = Depends(get_current_user),
    service: TeamInviteService = Depends(get_invite_service),
):
    members = service.list_members(current.user_id)
    return {
        "members": [
            {
                "id": m.id,
                "email": m.email,
                "name": m.name,
                "status": m.status.value,
                "joined_at": m.created_at.isoformat() if m.created_at else None,
            }
            for m in members
        ]
    }


@router.post("/invite", status_code=201)
def create_invite(
    body: InviteRequest,
    current: CurrentUser = Depends(get_current_user),
    service: TeamInviteService = Depends(get_invite_service),
):
    """
    Errors:
        400: Invalid email or role, or self-invite
        403: Caller is a team member or has no cluster yet
        409: Email already registered or invite pending
    """
    created = service.create_invite(current.user_id, body.email, body.project_role, body.auto_assign_projects)
    invite = created.invite
    return {
        "id": invite.id,
        "email": invite.email,
        "project_role": invite.project_role.value,
        "expires_at": invite.expires_at.isoformat(),
        "email_sent": created.email_sent,
    }


@router.get("/invites")
def list_invites(
    current: CurrentUser = Depends(get_current_user),
    service: TeamInviteService = Depends(get_invite_service),
):
    return {"invites": [invite.model_dump(mode="json") for invite in service.list_invites(current.user_id)]}


@router.delete("/invites/{invite_id}")
def revoke_invite(
    invite_id: int,
    current: CurrentUser = Depends(get_current_user),
    service: TeamInviteService = Depends(get_invite_service),
):
    service.revoke_invite(current.user_id, invite_id)
    return {"revoked": True, "id": invite_id}


@router.post("/accept-invite")
def accept_invite(
    body: AcceptInviteRequest,
    current: CurrentUser = Depends(get_current_user),
    service: TeamInviteService = Depends(get_invite_service),
):
    """
    Errors:
        403: Invite belongs to another email
        409: Invite already used, or caller is on another team
        410: Invite expired
    """
    if not current.email:
        raise ValidationError("Email is required to accept an invite")
    acceptance = service.accept_invite(body.token, current.user_id, current.email, current.name)
    return acceptance.model_dump()


@router.get("/owner-projects")
def owner_projects(
    current: CurrentUser = Depends(get_current_user),
    service: TeamProjectService = Depends(get_team_project_service),
):
    return {"projects": service.list_owner_projects(current.user_id)}


@router.get("/members/{member_id}/projects")
def member_projects(
    member_id: str,
    current: CurrentUser = Depends(get_current_user),
    service: TeamProjectService = Depends(get_team_project_service),
):
    projects = service.list_member_projects(current.user_id, member_id)
    return {"member_id": member_id, "projects": [p.model_dump() for p in projects]}


@router.post("/members/{member_id}/projects", status_code=201)
def add_member_project(
    member_id: str,
    body: MemberProjectRequest,
    current: CurrentUser = Depends(get_current_user),
    service: TeamProjectService = Depends(get_team_project_service),
):
    """
    Errors:
        400: Unknown role, or the member has no Hopsworks account yet
        403: Caller is not the member's owner
        502: Hopsworks refused the membership; nothing is recorded
    """
    project = service.add_member_to_project(current.user_id, member_id, body.project_name, body.role)
    return project.model_dump()


@router.delete("/members/{member_id}/projects/{project_name}")
def remove_member_project(
    member_id: str,
    project_name: str,
    current: CurrentUser = Depends(get_current_user),
    service: TeamProjectService = Depends(get_team_project_service),
):
    service.remove_member_from_project(current.user_id, member_id, project_name)
    # Hopsworks keeps the membership until it is removed there
    return {"removed": True, "project_name": project_name, "local_only": True}


@router.post("/sync-member-roles")
def sync_member_roles(
    current: CurrentUser = Depends(get_current_user),
    service: TeamProjectService = Depends(get_team_project_service),
):
    return asdict(service.sync_member_roles(current.user_id))
