"""
User domain service.

- load_user / load_user_by_customer / load_billing_owner: session-scoped lookups
- UserSyncService.sync_on_login: upsert on every login and self-heal cluster access
"""
import logging
from dataclasses import dataclass
from typing import Callable, ContextManager, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from portal.core.database import get_db_session, users
from portal.core.errors import NotFoundError, PermissionError
from portal.features.billing.provider import BillingProviderError
from portal.features.clusters.quota import is_eligible_for_cluster
from portal.models.billing import BillingMode, utc_now
from portal.models.user import User

logger = logging.getLogger("portal.users")

SessionFactory = Callable[[], ContextManager[Session]]


def load_user(session: Session, user_id: str) -> Optional[User]:
    row = session.execute(select(users).where(users.c.id == user_id)).first()
    return User.from_row(row) if row else None


def require_user(session: Session, user_id: str) -> User:
    user = load_user(session, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def load_user_by_email(session: Session, email: str) -> Optional[User]:
    row = session.execute(
        select(users).where(users.c.email == email.strip().lower()).where(users.c.status != "deleted")
    ).first()
    return User.from_row(row) if row else None


def load_user_by_customer(session: Session, customer_id: str) -> Optional[User]:
    row = session.execute(
        select(users).where(users.c.stripe_customer_id == customer_id).order_by(users.c.created_at)
    ).first()
    return User.from_row(row) if row else None


def load_billing_owner(session: Session, user: User) -> User:
    """Billing always resolves to the account owner."""
    if not user.is_team_member:
        return user
    owner = load_user(session, user.account_owner_id)
    if owner is None:
        raise NotFoundError("Account owner not found")
    return owner


@dataclass
class SyncResult:
    user: User
    created: bool
    cluster_assigned: bool = False
    quota_synced: bool = False


class UserSyncService:
    """Runs on every login: upsert the user row and repair cluster access."""

    def __init__(self, *, session_factory: SessionFactory = get_db_session, assignment_service=None, has_payment_method=None):
        self.session_factory = session_factory
        self.assignment_service = assignment_service
        # Callable[[str], bool] answering "does this customer have a payment method"
        self.has_payment_method = has_payment_method

    def upsert(self, user_id: str, email: str, name: Optional[str] = None) -> tuple[User, bool]:
        email = email.strip().lower()
        now = utc_now()
        with self.session_factory() as session:
            existing = load_user(session, user_id)
            if existing:
                session.execute(
                    update(users)
                    .where(users.c.id == user_id)
                    .values(
                        login_count=users.c.login_count + 1,
                        last_login_at=now,
                        updated_at=now,
                        name=name or existing.name,
                    )
                )
                created = False
            else:
                session.execute(
                    insert(users).values(
                        id=user_id,
                        email=email,
                        name=name,
                        billing_mode=BillingMode.FREE.value,
                        status="active",
                        login_count=1,
                        last_login_at=now,
                        feature_flags={},
                        created_at=now,
                        updated_at=now,
                    )
                )
                created = True
                logger.info("user.created", extra={"user_id": user_id})
            return require_user(session, user_id), created

    def sync_on_login(self, user_id: str, email: str, name: Optional[str] = None) -> SyncResult:
        user, created = self.upsert(user_id, email, name)
        result = SyncResult(user=user, created=created)
        if self.assignment_service is None or user.status != "active":
            return result

        has_pm = False
        if user.stripe_customer_id and self.has_payment_method is not None:
            try:
                has_pm = self.has_payment_method(user.stripe_customer_id)
            except BillingProviderError as e:
                logger.warning("user.sync_payment_check_failed", extra={"user_id": user_id, "error": str(e)})

        if not is_eligible_for_cluster(user, has_payment_method=has_pm):
            return result

        assignment = self.assignment_service.assign_user_to_cluster(user_id)
        result.cluster_assigned = assignment.success
        if assignment.success and assignment.already_assigned:
            # Quota drift self-heals on login
            result.quota_synced = self.assignment_service.sync_quota(user_id)
        else:
            result.quota_synced = assignment.backend_synced
        return result

    def register_corporate(self, user_id: str, deal_id: str) -> SyncResult:
        """Switch an owner to prepaid after its corporate deal was validated, then grant cluster access."""
        now = utc_now()
        with self.session_factory() as session:
            user = require_user(session, user_id)
            if user.is_team_member:
                raise PermissionError("Team members are billed through their account owner")
            flags = dict(user.feature_flags)
            flags["corporate_ref"] = deal_id
            session.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(billing_mode=BillingMode.PREPAID.value, feature_flags=flags, updated_at=now)
            )
            user = require_user(session, user_id)
        logger.info("user.corporate_registered", extra={"user_id": user_id, "deal_id": deal_id})

        result = SyncResult(user=user, created=False)
        if self.assignment_service is not None:
            assignment = self.assignment_service.assign_user_to_cluster(user_id, assigned_by="corporate")
            result.cluster_assigned = assignment.success
            if assignment.success and assignment.already_assigned:
                result.quota_synced = self.assignment_service.sync_quota(user_id)
            else:
                result.quota_synced = assignment.backend_synced
        return result
