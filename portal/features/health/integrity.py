"""
Data integrity checks.

Read-only sweep over local tables (plus the billing provider for subscription
state) that reports drift. Critical and high issues are written to the health
check log and posted to Slack. Medium and info issues are only reported and
logged. Nothing here fixes data.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, ContextManager, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from portal.core.database import (
    get_db_session,
    health_check_failures,
    hopsworks_clusters,
    project_member_roles,
    usage_daily,
    user_hopsworks_assignments,
    users,
)
from portal.features.billing.provider import BillingProvider, BillingProviderError
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.models.billing import BillingMode, utc_now
from portal.models.user import UserStatus

logger = logging.getLogger("portal.health.integrity")

STALE_FAILURE_AGE = timedelta(days=7)
SUBSCRIPTION_SAMPLE_LIMIT = 50
USAGE_BACKLOG_AGE = timedelta(days=1)

CRITICAL = "critical"
HIGH = "high"
MEDIUM = "medium"
INFO = "info"

SessionFactory = Callable[[], ContextManager[Session]]


@dataclass
class IntegrityIssue:
    check: str
    severity: str
    message: str
    user_id: Optional[str] = None
    details: dict = field(default_factory=dict)


@dataclass
class IntegrityReport:
    issues: List[IntegrityIssue] = field(default_factory=list)

    @property
    def critical(self) -> List[IntegrityIssue]:
        return [i for i in self.issues if i.severity == CRITICAL]

    @property
    def high(self) -> List[IntegrityIssue]:
        return [i for i in self.issues if i.severity == HIGH]

    @property
    def medium(self) -> List[IntegrityIssue]:
        return [i for i in self.issues if i.severity == MEDIUM]

    @property
    def info(self) -> List[IntegrityIssue]:
        return [i for i in self.issues if i.severity == INFO]

    def counts(self) -> dict:
        return {CRITICAL: len(self.critical), HIGH: len(self.high), MEDIUM: len(self.medium), INFO: len(self.info)}


class IntegrityChecker:
    def __init__(
        self,
        *,
        health_log: HealthCheckLog,
        alerts=None,
        provider: Optional[BillingProvider] = None,
        session_factory: SessionFactory = get_db_session,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.health_log = health_log
        self.alerts = alerts
        self.provider = provider
        self.session_factory = session_factory
        self.now_fn = now_fn

    def run(self) -> IntegrityReport:
        report = IntegrityReport()
        with self.session_factory() as session:
            report.issues.extend(self._identity_desync(session))
            report.issues.extend(self._unprovisioned_assignments(session))
            report.issues.extend(self._counter_drift(session))
            report.issues.extend(self._orphan_memberships(session))
            report.issues.extend(self._stale_failures(session))
            report.issues.extend(self._postpaid_without_subscription(session))
            report.issues.extend(self._unreported_usage(session))
            subscribed = session.execute(
                select(users.c.id, users.c.stripe_customer_id)
                .where(users.c.status == UserStatus.ACTIVE.value)
                .where(users.c.stripe_subscription_id.is_not(None))
                .where(users.c.stripe_customer_id.is_not(None))
                .limit(SUBSCRIPTION_SAMPLE_LIMIT)
            ).fetchall()
        report.issues.extend(self._canceled_upstream(subscribed))

        self._escalate(report)
        logger.info("health.integrity_run", extra=report.counts())
        return report

    def _identity_desync(self, session: Session) -> List[IntegrityIssue]:
        rows = session.execute(
            select(users.c.id, users.c.hopsworks_user_id, user_hopsworks_assignments.c.hopsworks_user_id.label("assigned_hw_id"))
            .select_from(users.join(user_hopsworks_assignments, user_hopsworks_assignments.c.user_id == users.c.id))
            .where(users.c.hopsworks_user_id.is_not(None))
            .where(user_hopsworks_assignments.c.hopsworks_user_id.is_not(None))
            .where(users.c.hopsworks_user_id != user_hopsworks_assignments.c.hopsworks_user_id)
        ).fetchall()
        return [
            IntegrityIssue(
                check="hopsworks_id_desync",
                severity=CRITICAL,
                message="users.hopsworks_user_id differs from the assignment",
                user_id=row.id,
                details={"user_hopsworks_id": row.hopsworks_user_id, "assignment_hopsworks_id": row.assigned_hw_id},
            )
            for row in rows
        ]

    def _unprovisioned_assignments(self, session: Session) -> List[IntegrityIssue]:
        rows = session.execute(
            select(user_hopsworks_assignments.c.user_id, user_hopsworks_assignments.c.hopsworks_cluster_id)
            .select_from(user_hopsworks_assignments.join(users, users.c.id == user_hopsworks_assignments.c.user_id))
            .where(user_hopsworks_assignments.c.hopsworks_user_id.is_(None))
            .where(users.c.status != UserStatus.DELETED.value)
        ).fetchall()
        return [
            IntegrityIssue(
                check="assignment_without_hopsworks_user",
                severity=HIGH,
                message="Cluster assignment has no Hopsworks user",
                user_id=row.user_id,
                details={"cluster_id": row.hopsworks_cluster_id},
            )
            for row in rows
        ]

    def _counter_drift(self, session: Session) -> List[IntegrityIssue]:
        actual = (
            select(
                user_hopsworks_assignments.c.hopsworks_cluster_id.label("cluster_id"),
                func.count().label("assigned"),
            )
            .group_by(user_hopsworks_assignments.c.hopsworks_cluster_id)
            .subquery()
        )
        rows = session.execute(
            select(hopsworks_clusters.c.id, hopsworks_clusters.c.current_users, func.coalesce(actual.c.assigned, 0).label("assigned"))
            .select_from(hopsworks_clusters.outerjoin(actual, actual.c.cluster_id == hopsworks_clusters.c.id))
        ).fetchall()
        return [
            IntegrityIssue(
                check="cluster_counter_drift",
                severity=MEDIUM,
                message="current_users does not match the number of assignments",
                details={"cluster_id": row.id, "current_users": row.current_users, "assigned": row.assigned},
            )
            for row in rows
            if row.current_users != row.assigned
        ]

    def _orphan_memberships(self, session: Session) -> List[IntegrityIssue]:
        rows = session.execute(
            select(project_member_roles.c.member_id, project_member_roles.c.project_name)
            .select_from(project_member_roles.outerjoin(users, users.c.id == project_member_roles.c.member_id))
            .where(or_(users.c.id.is_(None), users.c.status == UserStatus.DELETED.value))
        ).fetchall()
        return [
            IntegrityIssue(
                check="orphan_project_membership",
                severity=MEDIUM,
                message="Project role recorded for a missing or deleted user",
                user_id=row.member_id,
                details={"project": row.project_name},
            )
            for row in rows
        ]

    def _stale_failures(self, session: Session) -> List[IntegrityIssue]:
        cutoff = self.now_fn() - STALE_FAILURE_AGE
        rows = session.execute(
            select(health_check_failures.c.check_type, func.count().label("count"))
            .where(and_(health_check_failures.c.resolved.is_(False), health_check_failures.c.created_at < cutoff))
            .group_by(health_check_failures.c.check_type)
        ).fetchall()
        return [
            IntegrityIssue(
                check="stale_health_failures",
                severity=MEDIUM,
                message=f"{row.count} unresolved {row.check_type} failures older than {STALE_FAILURE_AGE.days} days",
                details={"check_type": row.check_type, "count": row.count},
            )
            for row in rows
        ]

    def _postpaid_without_subscription(self, session: Session) -> List[IntegrityIssue]:
        rows = session.execute(
            select(users.c.id)
            .where(users.c.billing_mode == BillingMode.POSTPAID.value)
            .where(users.c.account_owner_id.is_(None))
            .where(users.c.status == UserStatus.ACTIVE.value)
            .where(users.c.stripe_subscription_id.is_(None))
        ).fetchall()
        return [
            IntegrityIssue(
                check="postpaid_without_subscription",
                severity=HIGH,
                message="Active postpaid owner has no subscription",
                user_id=row.id,
            )
            for row in rows
        ]

    def _unreported_usage(self, session: Session) -> List[IntegrityIssue]:
        cutoff = self.now_fn().date() - USAGE_BACKLOG_AGE
        billed_id = func.coalesce(usage_daily.c.account_owner_id, usage_daily.c.user_id)
        row = session.execute(
            select(func.count().label("count"), func.min(usage_daily.c.date).label("oldest"))
            .select_from(usage_daily.join(users, users.c.id == billed_id))
            .where(usage_daily.c.reported_to_stripe.is_(False))
            .where(usage_daily.c.date < cutoff)
            .where(users.c.billing_mode == BillingMode.POSTPAID.value)
        ).first()
        if not row or not row.count:
            return []
        return [
            IntegrityIssue(
                check="unreported_usage_backlog",
                severity=INFO,
                message=f"{row.count} postpaid usage rows are still unreported",
                details={"count": row.count, "oldest": str(row.oldest)},
            )
        ]

    def _canceled_upstream(self, subscribed) -> List[IntegrityIssue]:
        if self.provider is None:
            return []
        issues = []
        for row in subscribed:
            try:
                live = self.provider.get_subscription(row.stripe_customer_id)
            except BillingProviderError as e:
                logger.warning("health.integrity_provider_lookup_failed", extra={"user_id": row.id, "error": str(e)})
                continue
            if live is None:
                issues.append(
                    IntegrityIssue(
                        check="subscription_canceled_upstream",
                        severity=HIGH,
                        message="Local subscription is set but Stripe has no live subscription",
                        user_id=row.id,
                        details={"customer_id": row.stripe_customer_id},
                    )
                )
        return issues

    def _escalate(self, report: IntegrityReport) -> None:
        serious = report.critical + report.high
        for issue in serious:
            self.health_log.record(
                checks.DATA_INTEGRITY,
                f"[{issue.severity}] {issue.check}: {issue.message}",
                user_id=issue.user_id,
                details={"check": issue.check, "severity": issue.severity, **issue.details},
            )
        if serious and self.alerts is not None:
            lines = [f"- [{i.severity}] {i.check} user={i.user_id or '-'}" for i in serious[:20]]
            counts = report.counts()
            self.alerts.post(
                f"Integrity check: {counts[CRITICAL]} critical, {counts[HIGH]} high issues\n" + "\n".join(lines)
            )
