"""
Team models: pending invites, acceptance outcome, project roles and the
project grants recorded for members.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from portal.models.billing import as_utc, utc_now


class ProjectRole(str, Enum):
    DATA_OWNER = "Data owner"
    DATA_SCIENTIST = "Data scientist"
    OBSERVER = "Observer"


# Roles an invite may carry; Observer is only granted per project
INVITE_ROLES = (ProjectRole.DATA_OWNER, ProjectRole.DATA_SCIENTIST)


class InviteStatus(str, Enum):
    """Invite lifecycle: pending -> accepted OR expired"""

    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class TeamInvite(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    token: str = Field(repr=False)
    account_owner_id: str
    email: str
    project_role: ProjectRole = ProjectRole.DATA_SCIENTIST
    auto_assign_projects: bool = True
    created_at: Optional[datetime] = None
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    accepted_by_user_id: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "TeamInvite":
        data = dict(row._mapping)
        for key in ("created_at", "expires_at", "accepted_at"):
            data[key] = as_utc(data.get(key))
        return cls(**data)

    def status(self, now: Optional[datetime] = None) -> InviteStatus:
        if self.accepted_at is not None:
            return InviteStatus.ACCEPTED
        if self.expires_at <= (now or utc_now()):
            return InviteStatus.EXPIRED
        return InviteStatus.PENDING


class InviteSummary(BaseModel):
    """Invite as shown to its owner (no token)."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    project_role: ProjectRole
    auto_assign_projects: bool
    created_at: Optional[datetime]
    expires_at: datetime
    status: InviteStatus


class InviteAcceptance(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_owner_id: str
    cluster_assigned: bool
    projects_assigned: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class MemberProject(BaseModel):
    """A project a team member can use. `source` is "portal" for recorded grants, "hopsworks" for live listings."""

    model_config = ConfigDict(frozen=True)

    project_name: str
    project_role: Optional[str] = None
    synced: bool = False
    source: str = "portal"
