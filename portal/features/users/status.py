"""
User status cascade.

suspend / reactivate / deactivate an account. Acting on an Owner also acts on
its team members; acting on a TeamMember touches that one account only, which
is what keeps the cascade from recursing.

The local status is the source of truth for access control. Mirroring the
status to Hopsworks is best effort: failures are recorded in the health check
log and never roll the local change back.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, ContextManager, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from portal.core.database import get_db_session, hopsworks_clusters, user_hopsworks_assignments, users
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.hopsworks.client import (
    STATUS_ACTIVATED,
    STATUS_DEACTIVATED,
    ClientFactory,
    HopsworksClient,
    HopsworksError,
)
from portal.features.users.service import load_user
from portal.models.billing import utc_now
from portal.models.cluster import Cluster
from portal.models.user import Owner, TeamMember, User, UserStatus

logger = logging.getLogger("portal.users.status")

SessionFactory = Callable[[], ContextManager[Session]]


@dataclass
class StatusChangeResult:
    success: bool
    local_updated: bool = False
    backend_updated: bool = False
    affected_user_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None


class UserStatusService:
    def __init__(
        self,
        *,
        session_factory: SessionFactory = get_db_session,
        client_factory: ClientFactory = HopsworksClient.for_cluster,
        health_log: Optional[HealthCheckLog] = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.health_log = health_log or HealthCheckLog(session_factory)

    def suspend_user(self, user_id: str, reason: Optional[str] = None) -> StatusChangeResult:
        return self._change(user_id, UserStatus.SUSPENDED, reason)

    def reactivate_user(self, user_id: str, reason: Optional[str] = None) -> StatusChangeResult:
        return self._change(user_id, UserStatus.ACTIVE, reason)

    def deactivate_user(self, user_id: str, reason: Optional[str] = None) -> StatusChangeResult:
        """Soft delete. Deleted accounts are never reactivated."""
        return self._change(user_id, UserStatus.DELETED, reason)

    def _change(self, user_id: str, target: UserStatus, reason: Optional[str]) -> StatusChangeResult:
        with self.session_factory() as session:
            user = load_user(session, user_id)
        if user is None:
            return StatusChangeResult(success=False, error="User not found")
        if user.status == UserStatus.DELETED and target != UserStatus.DELETED:
            return StatusChangeResult(success=False, error="Deleted users cannot change status")

        role = user.role
        if isinstance(role, TeamMember):
            accounts = [user]
        elif isinstance(role, Owner):
            accounts = [user] + self._members_to_cascade(role, target)
        else:
            raise TypeError(f"Unknown account role: {role!r}")

        self._write_local(accounts, target, clear_deadline=target == UserStatus.ACTIVE and isinstance(role, Owner))
        logger.info(
            "user.status_changed",
            extra={"user_id": user_id, "status": target.value, "reason": reason, "cascaded": len(accounts) - 1},
        )

        mirrored = [self._mirror_to_backend(account, target) for account in accounts]
        return StatusChangeResult(
            success=True,
            local_updated=True,
            backend_updated=all(mirrored),
            affected_user_ids=[a.id for a in accounts],
        )

    def _members_to_cascade(self, owner: Owner, target: UserStatus) -> List[User]:
        stmt = select(users).where(users.c.account_owner_id == owner.user_id)
        if target == UserStatus.ACTIVE:
            # Only members suspended alongside the owner come back; active ones stay untouched
            stmt = stmt.where(users.c.status == UserStatus.SUSPENDED.value)
        else:
            stmt = stmt.where(users.c.status != UserStatus.DELETED.value)
        with self.session_factory() as session:
            return [User.from_row(row) for row in session.execute(stmt.order_by(users.c.created_at)).fetchall()]

    def _write_local(self, accounts: List[User], target: UserStatus, *, clear_deadline: bool) -> None:
        now = utc_now()
        with self.session_factory() as session:
            for account in accounts:
                values = {"status": target.value, "updated_at": now}
                if clear_deadline and not account.is_team_member:
                    values["downgrade_deadline"] = None
                session.execute(update(users).where(users.c.id == account.id).values(**values))

    def mirror_status(self, user_id: str, *, record: bool = True) -> bool:
        """Push the current local status of one account to Hopsworks."""
        with self.session_factory() as session:
            user = load_user(session, user_id)
        if user is None:
            return False
        return self._mirror_to_backend(user, user.status, record=record)

    def _mirror_to_backend(self, user: User, target: UserStatus, *, record: bool = True) -> bool:
        with self.session_factory() as session:
            row = session.execute(
                select(user_hopsworks_assignments.c.hopsworks_user_id, hopsworks_clusters)
                .select_from(
                    user_hopsworks_assignments.join(
                        hopsworks_clusters, hopsworks_clusters.c.id == user_hopsworks_assignments.c.hopsworks_cluster_id
                    )
                )
                .where(user_hopsworks_assignments.c.user_id == user.id)
            ).first()
        if row is None or row.hopsworks_user_id is None:
            # Never provisioned on a cluster, nothing to mirror
            return True

        hw_status = STATUS_ACTIVATED if target == UserStatus.ACTIVE else STATUS_DEACTIVATED
        cluster = Cluster.from_row(row)
        try:
            with self.client_factory(cluster) as client:
                client.set_status(row.hopsworks_user_id, hw_status)
            return True
        except HopsworksError as e:
            if not record:
                raise
            self.health_log.record(
                checks.HOPSWORKS_STATUS_SYNC,
                e.message,
                user_id=user.id,
                email=user.email,
                details={"expected_status": hw_status, "hopsworks_user_id": row.hopsworks_user_id, "cluster_id": cluster.id},
            )
            return False
