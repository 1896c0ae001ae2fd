"""
Cluster assignment.

Places a user on a shared Hopsworks cluster and creates their account there.

Failure semantics:
- no capacity / counter or assignment write failing: the call fails
- external user creation or quota push failing: the assignment stands, the
  drift is recorded in the health check log and repaired later
"""
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, ContextManager, Iterator, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal.core.config import settings
from portal.core.database import (
    get_db_session,
    hopsworks_clusters,
    user_hopsworks_assignments,
    users,
)
from portal.features.clusters.quota import quota_for_user
from portal.features.clusters.selection import select_cluster
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.hopsworks.client import ClientFactory, HopsworksClient, HopsworksError, call_with_retry
from portal.features.users.service import load_user
from portal.models.billing import utc_now
from portal.models.cluster import Assignment, Cluster, ClusterCapacity
from portal.models.user import TeamMember, User, UserStatus

logger = logging.getLogger("portal.clusters")

SessionFactory = Callable[[], ContextManager[Session]]


@dataclass
class AssignmentResult:
    success: bool
    cluster_id: Optional[str] = None
    error: Optional[str] = None
    already_assigned: bool = False
    retryable: bool = False
    backend_synced: bool = False


def load_assignment(session: Session, user_id: str) -> Optional[Assignment]:
    row = session.execute(
        select(user_hopsworks_assignments).where(user_hopsworks_assignments.c.user_id == user_id)
    ).first()
    if not row:
        return None
    data = dict(row._mapping)
    return Assignment(**{k: v for k, v in data.items() if k in Assignment.model_fields})


def load_cluster(session: Session, cluster_id: str) -> Optional[Cluster]:
    row = session.execute(select(hopsworks_clusters).where(hopsworks_clusters.c.id == cluster_id)).first()
    return Cluster.from_row(row) if row else None


def load_capacity_snapshot(session: Session) -> List[ClusterCapacity]:
    rows = session.execute(
        select(
            hopsworks_clusters.c.id,
            hopsworks_clusters.c.name,
            hopsworks_clusters.c.current_users,
            hopsworks_clusters.c.max_users,
        )
        .where(hopsworks_clusters.c.status == "active")
        .order_by(hopsworks_clusters.c.created_at, hopsworks_clusters.c.id)
    ).fetchall()
    return [ClusterCapacity(**dict(row._mapping)) for row in rows]


def increment_cluster_users(session: Session, cluster_id: str, delta: int = 1) -> None:
    session.execute(
        update(hopsworks_clusters)
        .where(hopsworks_clusters.c.id == cluster_id)
        .values(current_users=hopsworks_clusters.c.current_users + delta)
    )


def _split_name(user: User) -> tuple[str, str]:
    name = (user.name or "").strip()
    if not name:
        local = user.email.split("@")[0]
        return local, "User"
    parts = name.split(" ", 1)
    return parts[0], parts[1] if len(parts) > 1 else "User"


class ClusterAssignmentService:
    def __init__(
        self,
        *,
        session_factory: SessionFactory = get_db_session,
        client_factory: ClientFactory = HopsworksClient.for_cluster,
        health_log: Optional[HealthCheckLog] = None,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.health_log = health_log or HealthCheckLog(session_factory)
        self.sleep = sleep
        self.max_attempts = max_attempts or settings.ASSIGNMENT_MAX_ATTEMPTS
        self.base_delay = settings.ASSIGNMENT_BASE_DELAY_SECONDS if base_delay is None else base_delay

    def assign_user_to_cluster(self, user_id: str, *, assigned_by: str = "system", record_capacity: bool = True) -> AssignmentResult:
        with self.session_factory() as session:
            existing = load_assignment(session, user_id)
            if existing:
                return AssignmentResult(
                    success=True,
                    cluster_id=existing.hopsworks_cluster_id,
                    already_assigned=True,
                    backend_synced=existing.hopsworks_user_id is not None,
                )
            user = load_user(session, user_id)
            if user is None:
                return AssignmentResult(success=False, error="User not found")
            target, failure = self._choose_cluster(session, user, record_capacity)

        if target is None:
            return failure

        claimed = self._claim(user, target.id, assigned_by)
        if claimed is not None:
            return claimed

        logger.info("cluster.assigned", extra={"user_id": user_id, "cluster_id": target.id})
        synced = self._provision_backend_user(user, target.id)
        return AssignmentResult(success=True, cluster_id=target.id, backend_synced=synced)

    def _choose_cluster(self, session: Session, user: User, record_capacity: bool = True) -> tuple[Optional[ClusterCapacity], Optional[AssignmentResult]]:
        role = user.role
        if isinstance(role, TeamMember):
            # Team members share the owner's cluster so they can reach its projects
            owner_assignment = load_assignment(session, role.owner_id)
            if owner_assignment is None:
                return None, AssignmentResult(
                    success=False,
                    error="Account owner must be assigned to a cluster first",
                    retryable=True,
                )
            cluster = load_cluster(session, owner_assignment.hopsworks_cluster_id)
            if cluster is None:
                return None, AssignmentResult(success=False, error="Owner cluster not found")
            return cluster.capacity(), None

        chosen = select_cluster(load_capacity_snapshot(session))
        if chosen is None:
            if record_capacity:
                self.health_log.record(
                    checks.CLUSTER_CAPACITY,
                    "No cluster with available capacity",
                    user_id=user.id,
                    email=user.email,
                )
            return None, AssignmentResult(success=False, error="No available clusters", retryable=True)
        return chosen, None

    def _claim(self, user: User, cluster_id: str, assigned_by: str) -> Optional[AssignmentResult]:
        """Increment the counter and insert the assignment in one transaction.

        Returns a result only when the claim did not go through. Any failure
        rolls the counter back together with the insert.
        """
        try:
            with self.session_factory() as session:
                increment_cluster_users(session, cluster_id, 1)
                session.execute(
                    insert(user_hopsworks_assignments).values(
                        user_id=user.id,
                        hopsworks_cluster_id=cluster_id,
                        assigned_by=assigned_by,
                        assigned_at=utc_now(),
                    )
                )
        except IntegrityError:
            # A concurrent request assigned this user first
            with self.session_factory() as session:
                existing = load_assignment(session, user.id)
            logger.info("cluster.assignment_raced", extra={"user_id": user.id, "cluster_id": cluster_id})
            return AssignmentResult(
                success=True,
                cluster_id=existing.hopsworks_cluster_id if existing else cluster_id,
                already_assigned=True,
            )
        return None

    def _provision_backend_user(self, user: User, cluster_id: str, *, record: bool = True) -> bool:
        with self.session_factory() as session:
            cluster = load_cluster(session, cluster_id)
        quota = quota_for_user(user)

        with self.client_factory(cluster) as client:
            try:
                hw_user = self.create_backend_user(client, user, quota)
            except HopsworksError as e:
                if not record:
                    raise
                self.health_log.record(
                    checks.HOPSWORKS_USER_CREATION,
                    e.message,
                    user_id=user.id,
                    email=user.email,
                    details={"cluster_id": cluster_id, "status_code": e.status_code},
                )
                return False

            hw_id = hw_user.get("id")
            username = hw_user.get("username")
            self.persist_backend_identity(user.id, hw_id, username)
            return self.push_quota(client, user, hw_id, quota, cluster_id, record=record)

    def create_backend_user(self, client: HopsworksClient, user: User, quota: int) -> dict:
        given_name, surname = _split_name(user)
        try:
            return call_with_retry(
                lambda: client.create_oauth_user(
                    email=user.email,
                    given_name=given_name,
                    surname=surname,
                    subject=user.id,
                    max_num_projects=quota,
                ),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                sleep=self.sleep,
                description="create_oauth_user",
            )
        except HopsworksError as e:
            if not e.already_exists:
                raise
            existing = client.find_user_by_email(user.email)
            if existing is None:
                raise HopsworksError(
                    f"Hopsworks reported {user.email} exists but lookup found nothing",
                    status_code=e.status_code,
                    retryable=False,
                )
            logger.info("hopsworks.user_exists", extra={"user_id": user.id})
            return existing

    def push_quota(self, client: HopsworksClient, user: User, hw_id: Optional[int], quota: int, cluster_id: str, *, record: bool = True) -> bool:
        if hw_id is None:
            return False
        try:
            client.set_max_projects(hw_id, quota)
            return True
        except HopsworksError as e:
            if not record:
                raise
            self.health_log.record(
                checks.PROJECT_QUOTA,
                e.message,
                user_id=user.id,
                email=user.email,
                details={"cluster_id": cluster_id, "expected": quota, "hopsworks_user_id": hw_id},
            )
            return False

    def persist_backend_identity(self, user_id: str, hw_id: Optional[int], username: Optional[str]) -> None:
        # Both rows in one transaction; integrity checks flag any mismatch as critical
        with self.session_factory() as session:
            session.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(hopsworks_user_id=hw_id, hopsworks_username=username, updated_at=utc_now())
            )
            session.execute(
                update(user_hopsworks_assignments)
                .where(user_hopsworks_assignments.c.user_id == user_id)
                .values(hopsworks_user_id=hw_id, hopsworks_username=username)
            )

    def provision_existing(self, user_id: str, *, record: bool = True) -> bool:
        """Create the backend account for an assignment that has none yet.

        With record=False HopsworksError propagates instead of being logged to
        the health check log; the repair pass tracks attempts on the original row.
        """
        with self.session_factory() as session:
            assignment = load_assignment(session, user_id)
            user = load_user(session, user_id)
        if assignment is None or user is None:
            return False
        if assignment.hopsworks_user_id is not None:
            return True
        return self._provision_backend_user(user, assignment.hopsworks_cluster_id, record=record)

    def sync_quota(self, user_id: str, *, record: bool = True) -> bool:
        """Raise the backend quota to the computed value if it is below it.

        Never lowers, except to revoke a deleted account: Hopsworks counts
        deleted projects against maxNumProjects, so a quota above the computed
        value may be deliberate.
        """
        with self.session_factory() as session:
            assignment = load_assignment(session, user_id)
            user = load_user(session, user_id)
            cluster = load_cluster(session, assignment.hopsworks_cluster_id) if assignment else None
        if user is None or assignment is None or cluster is None or assignment.hopsworks_user_id is None:
            return False
        quota = quota_for_user(user)
        try:
            with self.client_factory(cluster) as client:
                if user.status == UserStatus.DELETED:
                    client.set_max_projects(assignment.hopsworks_user_id, 0)
                else:
                    client.raise_max_projects(assignment.hopsworks_user_id, quota)
            return True
        except HopsworksError as e:
            if not record:
                raise
            self.health_log.record(
                checks.PROJECT_QUOTA,
                e.message,
                user_id=user.id,
                email=user.email,
                details={"cluster_id": cluster.id, "expected": quota, "hopsworks_user_id": assignment.hopsworks_user_id},
            )
            return False

    @contextmanager
    def client_for_user(self, user_id: str) -> Iterator[tuple[Optional[HopsworksClient], Optional[Assignment]]]:
        """Yield (client, assignment) for the user's cluster; client is None while unassigned."""
        with self.session_factory() as session:
            assignment = load_assignment(session, user_id)
            cluster = load_cluster(session, assignment.hopsworks_cluster_id) if assignment else None
        if cluster is None:
            yield None, assignment
            return
        with self.client_factory(cluster) as client:
            yield client, assignment
