"""
Team invites.

Owners invite members by email; the invitee accepts with the emailed token.
Acceptance claims the invite with one conditional UPDATE, so concurrent
attempts on the same token cannot both succeed. A claim that fails any
later step (expiry, email, the account checks or the join itself) is released
again so the rightful invitee can still use it. Only active accounts that
belong to no team and pay for nothing themselves may join.
"""
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, ContextManager, List, Optional

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.orm import Session

from portal.core.database import get_db_session, team_invites, users
from portal.core.errors import ConflictError, GoneError, NotFoundError, PermissionError, ValidationError
from portal.features.clusters.assignment import ClusterAssignmentService, load_assignment
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.notifications.email import NotificationError, team_invite_email
from portal.features.team.projects import TeamProjectService, parse_project_role
from portal.features.users.service import load_user, load_user_by_email, require_user
from portal.models.billing import BillingMode, utc_now
from portal.models.invite import INVITE_ROLES, InviteAcceptance, InviteSummary, TeamInvite
from portal.models.user import TeamMember, User, UserStatus

logger = logging.getLogger("portal.team")

INVITE_TTL = timedelta(days=7)
MAX_EMAIL_LENGTH = 254
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SessionFactory = Callable[[], ContextManager[Session]]


def normalize_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or len(value) > MAX_EMAIL_LENGTH or not _EMAIL_RE.match(value):
        raise ValidationError("Invalid email address")
    return value


def check_can_join_team(user: User) -> None:
    """An existing account may join a team only while active, teamless and not paying for itself."""
    if user.status != UserStatus.ACTIVE:
        raise PermissionError("This account is not active")
    if user.account_owner_id:
        raise ConflictError("You are already part of a team")
    if user.has_subscription or user.billing_mode in (BillingMode.POSTPAID, BillingMode.PREPAID):
        raise ConflictError("Cancel your own billing before joining a team")


@dataclass
class CreatedInvite:
    invite: TeamInvite
    email_sent: bool


class TeamInviteService:
    def __init__(
        self,
        *,
        assignment_service: ClusterAssignmentService,
        mailer,
        health_log: Optional[HealthCheckLog] = None,
        session_factory: SessionFactory = get_db_session,
        now_fn: Callable[[], datetime] = utc_now,
        token_fn: Callable[[], str] = lambda: secrets.token_hex(32),
        project_service: Optional[TeamProjectService] = None,
    ):
        self.assignment_service = assignment_service
        self.mailer = mailer
        self.health_log = health_log or HealthCheckLog(session_factory)
        self.project_service = project_service or TeamProjectService(
            assignment_service=assignment_service,
            health_log=self.health_log,
            session_factory=session_factory,
            now_fn=now_fn,
        )
        self.session_factory = session_factory
        self.now_fn = now_fn
        self.token_fn = token_fn

    def create_invite(
        self,
        owner_id: str,
        email: str,
        project_role: Optional[str] = None,
        auto_assign_projects: bool = True,
    ) -> CreatedInvite:
        email = normalize_email(email)
        role = parse_project_role(project_role, INVITE_ROLES)
        now = self.now_fn()

        with self.session_factory() as session:
            owner = require_user(session, owner_id)
            if isinstance(owner.role, TeamMember):
                raise PermissionError("Only account owners can invite team members")
            if owner.status != UserStatus.ACTIVE:
                raise PermissionError("Account is not active")
            if load_assignment(session, owner_id) is None:
                raise PermissionError("Set up billing before inviting team members")
            if email == owner.email.lower():
                raise ValidationError("You cannot invite yourself")
            if load_user_by_email(session, email) is not None:
                raise ConflictError("A user with this email already has an account")

            pending = session.execute(
                select(team_invites.c.id).where(
                    and_(
                        team_invites.c.account_owner_id == owner_id,
                        team_invites.c.email == email,
                        team_invites.c.accepted_at.is_(None),
                        team_invites.c.expires_at > now,
                    )
                )
            ).first()
            if pending:
                raise ConflictError("An invite is already pending for this email")

            result = session.execute(
                insert(team_invites).values(
                    token=self.token_fn(),
                    account_owner_id=owner_id,
                    email=email,
                    project_role=role.value,
                    auto_assign_projects=auto_assign_projects,
                    created_at=now,
                    expires_at=now + INVITE_TTL,
                )
            )
            invite_id = result.inserted_primary_key[0]
            invite = TeamInvite.from_row(
                session.execute(select(team_invites).where(team_invites.c.id == invite_id)).first()
            )

        logger.info("team.invite_created", extra={"user_id": owner_id, "invite_id": invite.id})
        return CreatedInvite(invite=invite, email_sent=self._send_invite_email(owner, invite))

    def _send_invite_email(self, owner: User, invite: TeamInvite) -> bool:
        subject, body = team_invite_email(owner.email, invite.token, invite.expires_at)
        try:
            self.mailer.send(invite.email, subject, body)
            return True
        except NotificationError as e:
            logger.warning("team.invite_email_failed", extra={"invite_id": invite.id, "error": str(e)})
            self.health_log.record(
                checks.EMAIL_DELIVERY,
                str(e),
                user_id=owner.id,
                email=invite.email,
                details={"kind": "team_invite", "invite_id": invite.id},
            )
            return False

    def list_invites(self, owner_id: str) -> List[InviteSummary]:
        now = self.now_fn()
        with self.session_factory() as session:
            rows = session.execute(
                select(team_invites)
                .where(team_invites.c.account_owner_id == owner_id)
                .where(team_invites.c.accepted_at.is_(None))
                .where(team_invites.c.expires_at > now)
                .order_by(team_invites.c.created_at.desc())
            ).fetchall()
        invites = [TeamInvite.from_row(row) for row in rows]
        return [
            InviteSummary(
                id=invite.id,
                email=invite.email,
                project_role=invite.project_role,
                auto_assign_projects=invite.auto_assign_projects,
                created_at=invite.created_at,
                expires_at=invite.expires_at,
                status=invite.status(now),
            )
            for invite in invites
        ]

    def revoke_invite(self, owner_id: str, invite_id: int) -> None:
        with self.session_factory() as session:
            result = session.execute(
                delete(team_invites)
                .where(team_invites.c.id == invite_id)
                .where(team_invites.c.account_owner_id == owner_id)
                .where(team_invites.c.accepted_at.is_(None))
            )
            if result.rowcount == 0:
                raise NotFoundError("Invite not found")
        logger.info("team.invite_revoked", extra={"user_id": owner_id, "invite_id": invite_id})

    def list_members(self, owner_id: str) -> List[User]:
        with self.session_factory() as session:
            rows = session.execute(
                select(users)
                .where(users.c.account_owner_id == owner_id)
                .where(users.c.status != UserStatus.DELETED.value)
                .order_by(users.c.created_at)
            ).fetchall()
        return [User.from_row(row) for row in rows]

    def accept_invite(self, token: str, user_id: str, email: str, name: Optional[str] = None) -> InviteAcceptance:
        if not token:
            raise ValidationError("Invalid invite token")
        now = self.now_fn()

        invite = self._claim(token, user_id, now)
        try:
            if invite.expires_at <= now:
                raise GoneError("Invite has expired")
            if invite.email != (email or "").strip().lower():
                raise PermissionError("This invite is for a different email address")
            with self.session_factory() as session:
                existing = load_user(session, user_id)
            if existing is not None:
                check_can_join_team(existing)
            self._join_team(invite, user_id, invite.email, name, existing, now)
        except Exception:
            self._release(invite.id, user_id)
            raise
        logger.info("team.invite_accepted", extra={"user_id": user_id, "invite_id": invite.id})

        assignment = self.assignment_service.assign_user_to_cluster(user_id, assigned_by="team_invite")
        warnings: List[str] = []
        if not assignment.success:
            warnings.append(f"Cluster assignment pending: {assignment.error}")

        projects: List[str] = []
        if invite.auto_assign_projects and assignment.success:
            projects, project_warnings = self.project_service.add_to_owner_projects(
                invite.account_owner_id, user_id, invite.project_role.value
            )
            warnings.extend(project_warnings)

        return InviteAcceptance(
            account_owner_id=invite.account_owner_id,
            cluster_assigned=assignment.success,
            projects_assigned=projects,
            warnings=warnings,
        )

    def _claim(self, token: str, user_id: str, now: datetime) -> TeamInvite:
        with self.session_factory() as session:
            result = session.execute(
                update(team_invites)
                .where(team_invites.c.token == token)
                .where(team_invites.c.accepted_at.is_(None))
                .values(accepted_at=now, accepted_by_user_id=user_id)
            )
            if result.rowcount == 0:
                raise ConflictError("Invite not found or already used")
            row = session.execute(select(team_invites).where(team_invites.c.token == token)).first()
        return TeamInvite.from_row(row)

    def _release(self, invite_id: int, user_id: str) -> None:
        with self.session_factory() as session:
            session.execute(
                update(team_invites)
                .where(team_invites.c.id == invite_id)
                .where(team_invites.c.accepted_by_user_id == user_id)
                .values(accepted_at=None, accepted_by_user_id=None)
            )
        logger.info("team.invite_claim_released", extra={"user_id": user_id, "invite_id": invite_id})

    def _join_team(self, invite: TeamInvite, user_id: str, email: str, name: Optional[str], existing: Optional[User], now: datetime) -> None:
        with self.session_factory() as session:
            if existing:
                session.execute(
                    update(users)
                    .where(users.c.id == user_id)
                    .values(account_owner_id=invite.account_owner_id, billing_mode=None, downgrade_deadline=None, updated_at=now)
                )
            else:
                session.execute(
                    insert(users).values(
                        id=user_id,
                        email=email,
                        name=name,
                        account_owner_id=invite.account_owner_id,
                        status=UserStatus.ACTIVE.value,
                        login_count=1,
                        last_login_at=now,
                        feature_flags={},
                        created_at=now,
                        updated_at=now,
                    )
                )
