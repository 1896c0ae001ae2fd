"""
Project access for team members.

Owners share their Hopsworks projects with members of their team.
project_member_roles records every grant the portal made or saw: a row marked
synced was confirmed by Hopsworks. Removing a grant here is local only, the
membership itself has to be revoked inside Hopsworks.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, ContextManager, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.orm import Session

from portal.core.database import get_db_session, project_member_roles, users
from portal.core.errors import ExternalServiceError, NotFoundError, PermissionError, ValidationError
from portal.features.clusters.assignment import ClusterAssignmentService, load_assignment
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.hopsworks.client import HopsworksError
from portal.features.users.service import require_user
from portal.models.billing import utc_now
from portal.models.invite import MemberProject, ProjectRole
from portal.models.user import User, UserStatus

logger = logging.getLogger("portal.team")

SessionFactory = Callable[[], ContextManager[Session]]


def parse_project_role(role: Optional[str], allowed: Iterable[ProjectRole] = tuple(ProjectRole)) -> ProjectRole:
    allowed = tuple(allowed)
    if role is None:
        return ProjectRole.DATA_SCIENTIST
    try:
        parsed = ProjectRole(role)
    except ValueError:
        parsed = None
    if parsed not in allowed:
        names = ", ".join(r.value for r in allowed)
        raise ValidationError(f"Invalid project role. Must be one of: {names}")
    return parsed


def _member_username(session: Session, member: User) -> Optional[str]:
    assignment = load_assignment(session, member.id)
    if assignment and assignment.hopsworks_username:
        return assignment.hopsworks_username
    return member.hopsworks_username


@dataclass
class RoleSyncSummary:
    projects: int = 0
    synced: int = 0
    removed: int = 0
    errors: List[str] = field(default_factory=list)


class TeamProjectService:
    def __init__(
        self,
        *,
        assignment_service: ClusterAssignmentService,
        health_log: Optional[HealthCheckLog] = None,
        session_factory: SessionFactory = get_db_session,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.assignment_service = assignment_service
        self.health_log = health_log or HealthCheckLog(session_factory)
        self.session_factory = session_factory
        self.now_fn = now_fn

    def _require_owner(self, session: Session, owner_id: str) -> User:
        owner = require_user(session, owner_id)
        if owner.is_team_member:
            raise PermissionError("Only account owners can manage team member projects")
        return owner

    def _require_member(self, session: Session, owner_id: str, member_id: str) -> User:
        self._require_owner(session, owner_id)
        member = require_user(session, member_id)
        if member.account_owner_id != owner_id or member.status == UserStatus.DELETED:
            raise PermissionError("Team member not found in your team")
        return member

    def _owner_projects(self, client, owner_id: str, username: Optional[str]) -> List[Dict]:
        if not username:
            raise NotFoundError("No Hopsworks account found for this owner")
        try:
            return client.list_user_projects(username)
        except HopsworksError as e:
            logger.warning("team.owner_projects_failed", extra={"user_id": owner_id, "error": e.message})
            raise ExternalServiceError("Failed to fetch projects from Hopsworks", details=e.message)

    def list_owner_projects(self, owner_id: str) -> List[Dict]:
        with self.session_factory() as session:
            self._require_owner(session, owner_id)
        with self.assignment_service.client_for_user(owner_id) as (client, assignment):
            if client is None:
                return []
            projects = self._owner_projects(client, owner_id, assignment.hopsworks_username)
        return [
            {"id": p.get("id"), "name": p.get("name"), "created": p.get("created")}
            for p in projects
            if p.get("name")
        ]

    def list_member_projects(self, owner_id: str, member_id: str) -> List[MemberProject]:
        """Recorded grants, or the member's live Hopsworks projects when nothing is recorded yet."""
        with self.session_factory() as session:
            self._require_member(session, owner_id, member_id)
            rows = session.execute(
                select(project_member_roles)
                .where(project_member_roles.c.member_id == member_id)
                .where(project_member_roles.c.account_owner_id == owner_id)
                .order_by(project_member_roles.c.project_name)
            ).fetchall()
        if rows:
            return [
                MemberProject(project_name=r.project_name, project_role=r.project_role, synced=r.synced_to_hopsworks)
                for r in rows
            ]

        with self.assignment_service.client_for_user(member_id) as (client, assignment):
            if client is None or not assignment.hopsworks_username:
                return []
            try:
                live = client.list_user_projects(assignment.hopsworks_username)
            except HopsworksError as e:
                logger.warning("team.member_projects_lookup_failed", extra={"user_id": member_id, "error": e.message})
                return []
        return [MemberProject(project_name=p["name"], source="hopsworks") for p in live if p.get("name")]

    def add_member_to_project(self, owner_id: str, member_id: str, project_name: str, role: Optional[str]) -> MemberProject:
        project_name = (project_name or "").strip()
        if not project_name:
            raise ValidationError("Project name is required")
        project_role = parse_project_role(role)
        with self.session_factory() as session:
            member = self._require_member(session, owner_id, member_id)
            username = _member_username(session, member)
        if not username:
            raise ValidationError("Team member has no Hopsworks account yet")

        with self.assignment_service.client_for_user(owner_id) as (client, _):
            if client is None:
                raise NotFoundError("No cluster assignment found")
            try:
                client.add_project_member(project_name, username, project_role.value)
            except HopsworksError as e:
                logger.warning(
                    "team.project_add_failed",
                    extra={"user_id": member_id, "project": project_name, "error": e.message},
                )
                raise ExternalServiceError(f"Failed to add member to project {project_name}", details=e.message)

        self.record_membership(owner_id, member_id, project_name, project_role.value, synced=True, added_by=owner_id)
        logger.info("team.project_role_added", extra={"user_id": member_id, "project": project_name, "role": project_role.value})
        return MemberProject(project_name=project_name, project_role=project_role.value, synced=True)

    def remove_member_from_project(self, owner_id: str, member_id: str, project_name: str) -> None:
        with self.session_factory() as session:
            self._require_member(session, owner_id, member_id)
            result = session.execute(
                delete(project_member_roles)
                .where(project_member_roles.c.member_id == member_id)
                .where(project_member_roles.c.account_owner_id == owner_id)
                .where(project_member_roles.c.project_name == project_name)
            )
            if result.rowcount == 0:
                raise NotFoundError("Project role not found")
        logger.info("team.project_role_removed", extra={"user_id": member_id, "project": project_name, "local_only": True})

    def sync_member_roles(self, owner_id: str) -> RoleSyncSummary:
        """Rebuild the owner's recorded grants from live Hopsworks project membership."""
        summary = RoleSyncSummary()
        with self.session_factory() as session:
            self._require_owner(session, owner_id)
            members = [
                User.from_row(row)
                for row in session.execute(
                    select(users)
                    .where(users.c.account_owner_id == owner_id)
                    .where(users.c.status != UserStatus.DELETED.value)
                ).fetchall()
            ]
            usernames = {m.id: _member_username(session, m) for m in members}
        usernames = {member_id: name for member_id, name in usernames.items() if name}
        if not usernames:
            return summary

        live: set = set()
        with self.assignment_service.client_for_user(owner_id) as (client, assignment):
            if client is None:
                raise NotFoundError("No cluster assignment found")
            for project in self._owner_projects(client, owner_id, assignment.hopsworks_username):
                name = project.get("name")
                if not name:
                    continue
                live.add(name)
                summary.projects += 1
                try:
                    entries = client.list_project_members(project.get("id"))
                except HopsworksError as e:
                    summary.errors.append(f"{name}: {e.message}")
                    continue
                by_username = {}
                for entry in entries:
                    username = (entry.get("user") or {}).get("username") or entry.get("username")
                    if username:
                        by_username[username] = entry
                for member_id, username in usernames.items():
                    entry = by_username.get(username)
                    if entry is None:
                        summary.removed += self._delete_roles(owner_id, member_id=member_id, project_name=name)
                        continue
                    role = entry.get("projectRole") or entry.get("teamRole") or ProjectRole.DATA_SCIENTIST.value
                    self.record_membership(owner_id, member_id, name, role, synced=True, added_by=owner_id)
                    summary.synced += 1

        with self.session_factory() as session:
            result = session.execute(
                delete(project_member_roles)
                .where(project_member_roles.c.account_owner_id == owner_id)
                .where(project_member_roles.c.project_name.notin_(sorted(live)))
            )
            summary.removed += result.rowcount or 0
        logger.info(
            "team.roles_synced",
            extra={"user_id": owner_id, "synced": summary.synced, "removed": summary.removed, "errors": len(summary.errors)},
        )
        return summary

    def _delete_roles(self, owner_id: str, *, member_id: str, project_name: str) -> int:
        with self.session_factory() as session:
            result = session.execute(
                delete(project_member_roles).where(
                    and_(
                        project_member_roles.c.account_owner_id == owner_id,
                        project_member_roles.c.member_id == member_id,
                        project_member_roles.c.project_name == project_name,
                    )
                )
            )
            return result.rowcount or 0

    def add_to_owner_projects(self, owner_id: str, member_id: str, role: str) -> tuple[List[str], List[str]]:
        """Share every project the owner has with a new member. Returns (assigned, warnings); never raises for Hopsworks errors."""
        with self.session_factory() as session:
            member_assignment = load_assignment(session, member_id)
        member_username = member_assignment.hopsworks_username if member_assignment else None

        with self.assignment_service.client_for_user(owner_id) as (client, owner_assignment):
            owner_username = owner_assignment.hopsworks_username if owner_assignment else None
            if client is None or not owner_username or not member_username:
                return [], ["Hopsworks account not ready; projects will need to be shared manually"]

            try:
                projects = client.list_user_projects(owner_username)
            except HopsworksError as e:
                return [], [f"Could not list owner projects: {e.message}"]

            assigned: List[str] = []
            warnings: List[str] = []
            for project in projects:
                name = project.get("name")
                if not name:
                    continue
                try:
                    client.add_project_member(name, member_username, role)
                except HopsworksError as e:
                    warnings.append(f"Failed to add to project {name}: {e.message}")
                    self.record_membership(owner_id, member_id, name, role, synced=False)
                    self.health_log.record(
                        checks.PROJECT_MEMBERSHIP,
                        e.message,
                        user_id=member_id,
                        details={"project": name, "role": role, "owner_id": owner_id},
                    )
                    continue
                self.record_membership(owner_id, member_id, name, role, synced=True)
                assigned.append(name)
        return assigned, warnings

    def record_membership(
        self,
        owner_id: str,
        member_id: str,
        project_name: str,
        role: str,
        *,
        synced: bool,
        added_by: str = "team_invite",
    ) -> None:
        with self.session_factory() as session:
            existing = session.execute(
                select(project_member_roles.c.id)
                .where(project_member_roles.c.member_id == member_id)
                .where(project_member_roles.c.project_name == project_name)
            ).first()
            if existing:
                session.execute(
                    update(project_member_roles)
                    .where(project_member_roles.c.id == existing.id)
                    .values(project_role=role, synced_to_hopsworks=synced)
                )
            else:
                session.execute(
                    insert(project_member_roles).values(
                        member_id=member_id,
                        account_owner_id=owner_id,
                        project_name=project_name,
                        project_role=role,
                        synced_to_hopsworks=synced,
                        added_by=added_by,
                        created_at=self.now_fn(),
                    )
                )
