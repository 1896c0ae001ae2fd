"""
Daily usage reporting to Stripe meters.

Runs once per day (cron) over the previous UTC day. Each usage_daily row is
billed to its owner (account_owner_id for team members) and reported only when
that owner is postpaid with a subscription. Rows of prepaid owners with the
prepaid_enabled flag are charged against their credit balance instead.
Storage is a point-in-time snapshot and is prorated before reporting; Stripe
sums daily reports over the period.

Meter event identifiers are derived from the row id, so a re-run after a
partial failure is deduplicated by Stripe.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, ContextManager, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from portal.core.config import settings
from portal.core.database import get_db_session, usage_daily
from portal.features.billing.credits import deduct_credits, prepaid_enabled
from portal.features.billing.provider import BillingProvider, BillingProviderError
from portal.features.billing.rates import credits_used, estimate_daily_cost, prorate_storage
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.users.service import load_user
from portal.models.billing import BillingMode, utc_now

logger = logging.getLogger("portal.billing.usage")

# Stripe meter event names
METER_CREDITS = "hopsworks_credits"
METER_ONLINE_STORAGE = "hopsworks_online_storage_gb"
METER_OFFLINE_STORAGE = "hopsworks_offline_storage_gb"
METER_NETWORK_EGRESS = "hopsworks_network_egress_gb"

ORPHAN_LOG = "log"
ORPHAN_ALERT = "alert"
ORPHAN_MARK_REPORTED = "mark_reported"

SessionFactory = Callable[[], ContextManager[Session]]


@dataclass
class UsageReportSummary:
    date: str
    reported: int = 0
    skipped: int = 0
    deducted: int = 0
    failed: int = 0
    orphaned: int = 0
    errors: List[str] = field(default_factory=list)


def meter_values(row) -> Dict[str, float]:
    """Per-meter values for one usage_daily row; zero values are omitted."""
    values = {
        METER_CREDITS: credits_used(row),
        METER_ONLINE_STORAGE: prorate_storage(row.online_storage_gb),
        METER_OFFLINE_STORAGE: prorate_storage(row.offline_storage_gb),
        METER_NETWORK_EGRESS: float(row.network_egress_gb or 0),
    }
    return {name: value for name, value in values.items() if value > 0}


class UsageReporter:
    def __init__(
        self,
        provider: BillingProvider,
        *,
        health_log: Optional[HealthCheckLog] = None,
        alerts=None,
        orphan_policy: Optional[str] = None,
        session_factory: SessionFactory = get_db_session,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.provider = provider
        self.health_log = health_log or HealthCheckLog(session_factory)
        self.alerts = alerts
        self.orphan_policy = orphan_policy or settings.USAGE_ORPHAN_POLICY
        self.session_factory = session_factory
        self.now_fn = now_fn

    def report_day(self, report_date: Optional[date] = None) -> UsageReportSummary:
        report_date = report_date or (self.now_fn().date() - timedelta(days=1))
        summary = UsageReportSummary(date=report_date.isoformat())
        timestamp = int(datetime.combine(report_date, time.min, tzinfo=timezone.utc).timestamp())

        with self.session_factory() as session:
            rows = session.execute(
                select(usage_daily)
                .where(usage_daily.c.date == report_date)
                .where(usage_daily.c.reported_to_stripe.is_(False))
                .order_by(usage_daily.c.id)
            ).fetchall()

        orphans = []
        for row in rows:
            billed_id = row.account_owner_id or row.user_id
            with self.session_factory() as session:
                owner = load_user(session, billed_id)

            if owner is None:
                summary.orphaned += 1
                orphans.append(row)
                continue
            if owner.is_prepaid and prepaid_enabled(owner):
                self._deduct(owner, row, report_date)
                summary.deducted += 1
                continue
            if owner.billing_mode != BillingMode.POSTPAID or not owner.has_subscription or not owner.stripe_customer_id:
                summary.skipped += 1
                continue

            try:
                for event_name, value in meter_values(row).items():
                    self.provider.report_meter_event(
                        event_name,
                        owner.stripe_customer_id,
                        value,
                        timestamp,
                        f"usage-{row.id}-{event_name}",
                    )
            except BillingProviderError as e:
                summary.failed += 1
                summary.errors.append(f"{row.user_id}: {e}")
                logger.error("usage.report_failed", extra={"user_id": row.user_id, "usage_id": row.id, "error": str(e)})
                self.health_log.record(
                    checks.USAGE_REPORTING,
                    str(e),
                    user_id=owner.id,
                    email=owner.email,
                    details={"usage_id": row.id, "date": report_date.isoformat(), "usage_user_id": row.user_id},
                )
                continue

            self._mark_reported([row.id])
            summary.reported += 1

        if orphans:
            self._handle_orphans(orphans, report_date)
        if summary.failed and self.alerts is not None:
            self.alerts.post(
                f"Usage reporting for {summary.date}: {summary.failed} of {len(rows)} rows failed "
                f"and stay unreported until the next run"
            )

        logger.info(
            "usage.report_completed",
            extra={
                "date": summary.date,
                "reported": summary.reported,
                "skipped": summary.skipped,
                "deducted": summary.deducted,
                "failed": summary.failed,
                "orphaned": summary.orphaned,
            },
        )
        return summary

    def _deduct(self, owner, row, report_date: date) -> None:
        cost = float(row.total_cost or 0) or estimate_daily_cost(row)
        with self.session_factory() as session:
            deduct_credits(session, owner.id, cost, row.id, f"Usage for {report_date.isoformat()} ({row.user_id})", self.now_fn())
            session.execute(update(usage_daily).where(usage_daily.c.id == row.id).values(reported_to_stripe=True))

    def _mark_reported(self, usage_ids: List[int]) -> None:
        with self.session_factory() as session:
            session.execute(
                update(usage_daily).where(usage_daily.c.id.in_(usage_ids)).values(reported_to_stripe=True)
            )

    def _handle_orphans(self, rows, report_date: date) -> None:
        user_ids = sorted({row.user_id for row in rows})
        logger.error(
            "usage.orphaned",
            extra={"date": report_date.isoformat(), "count": len(rows), "user_ids": user_ids[:20], "policy": self.orphan_policy},
        )
        if self.orphan_policy == ORPHAN_MARK_REPORTED:
            self._mark_reported([row.id for row in rows])
        elif self.orphan_policy == ORPHAN_ALERT:
            for row in rows:
                self.health_log.record(
                    checks.ORPHANED_USAGE,
                    "Usage row has no billable user",
                    user_id=row.user_id,
                    details={"usage_id": row.id, "date": report_date.isoformat(), "account_owner_id": row.account_owner_id},
                )
            if self.alerts is not None:
                self.alerts.post(
                    f"{len(rows)} usage rows for {report_date.isoformat()} have no billable user "
                    f"(users: {', '.join(user_ids[:10])})"
                )
