"""
Account self-delete.

Only owners with no remaining team members may delete themselves. Project
creation on Hopsworks is revoked (maxNumProjects=0) and the subscription is
canceled, both best effort; then the account is soft deleted. Rows are kept
for billing history.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ContextManager, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from portal.core.database import get_db_session, users
from portal.core.errors import PermissionError, ValidationError
from portal.features.billing.provider import BillingProvider, BillingProviderError
from portal.features.clusters.assignment import ClusterAssignmentService
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.hopsworks.client import HopsworksError
from portal.features.users.service import require_user
from portal.features.users.status import UserStatusService
from portal.models.billing import utc_now
from portal.models.user import UserStatus

logger = logging.getLogger("portal.users.account")

SessionFactory = Callable[[], ContextManager[Session]]

DEFAULT_DELETION_REASON = "user_requested"


@dataclass
class AccountDeletion:
    user_id: str
    access_revoked: bool
    subscription_canceled: bool


class AccountDeletionService:
    def __init__(
        self,
        *,
        assignment_service: ClusterAssignmentService,
        status_service: UserStatusService,
        provider: Optional[BillingProvider] = None,
        health_log: Optional[HealthCheckLog] = None,
        session_factory: SessionFactory = get_db_session,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.assignment_service = assignment_service
        self.status_service = status_service
        self.provider = provider
        self.health_log = health_log or HealthCheckLog(session_factory)
        self.session_factory = session_factory
        self.now_fn = now_fn

    def delete_account(self, user_id: str, reason: Optional[str] = None) -> AccountDeletion:
        with self.session_factory() as session:
            user = require_user(session, user_id)
            if user.is_team_member:
                raise PermissionError("Team members cannot self-delete. Contact your account owner to be removed.")
            members = session.execute(
                select(func.count())
                .select_from(users)
                .where(users.c.account_owner_id == user_id)
                .where(users.c.status != UserStatus.DELETED.value)
            ).scalar()
            if members:
                raise ValidationError("Cannot delete account with active team members. Remove all team members first.")
        if user.status == UserStatus.DELETED:
            return AccountDeletion(user_id=user_id, access_revoked=False, subscription_canceled=False)

        revoked = self._revoke_projects(user)
        canceled = self._cancel_subscription(user)

        with self.session_factory() as session:
            session.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(deleted_at=self.now_fn(), deletion_reason=reason or DEFAULT_DELETION_REASON)
            )
        self.status_service.deactivate_user(user_id, reason=reason or DEFAULT_DELETION_REASON)
        logger.info(
            "account.deleted",
            extra={"user_id": user_id, "access_revoked": revoked, "subscription_canceled": canceled},
        )
        return AccountDeletion(user_id=user_id, access_revoked=revoked, subscription_canceled=canceled)

    def _revoke_projects(self, user) -> bool:
        with self.assignment_service.client_for_user(user.id) as (client, assignment):
            if client is None or not assignment.hopsworks_user_id:
                return False
            try:
                client.set_max_projects(assignment.hopsworks_user_id, 0)
            except HopsworksError as e:
                self.health_log.record(
                    checks.PROJECT_QUOTA,
                    e.message,
                    user_id=user.id,
                    email=user.email,
                    details={"expected": 0, "hopsworks_user_id": assignment.hopsworks_user_id, "reason": "account_deleted"},
                )
                return False
        return True

    def _cancel_subscription(self, user) -> bool:
        if not user.stripe_subscription_id or self.provider is None:
            return False
        try:
            self.provider.cancel_subscription(user.stripe_subscription_id)
        except BillingProviderError as e:
            self.health_log.record(
                checks.STRIPE_SYNC,
                str(e),
                user_id=user.id,
                email=user.email,
                details={"subscription_id": user.stripe_subscription_id, "reason": "account_deleted"},
            )
            return False
        return True
