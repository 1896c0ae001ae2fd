"""
Spending cap alerts.

Owners may set a soft monthly cap. When month-to-date cost (owner plus team
members) crosses 80, 90 or 100 percent of it, one email goes out for the
highest newly crossed threshold; every crossed threshold is then remembered
for the month so none is sent twice.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, ContextManager, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from portal.core.database import get_db_session, usage_daily, users
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.notifications.email import NotificationError, spending_alert_email
from portal.models.billing import SpendingAlertState, utc_now
from portal.models.user import User, UserStatus

logger = logging.getLogger("portal.billing.spending")

SPENDING_THRESHOLDS = (80, 90, 100)

SessionFactory = Callable[[], ContextManager[Session]]


def month_key(now: datetime) -> str:
    return f"{now.year:04d}-{now.month:02d}"


def new_thresholds(monthly_total: float, spending_cap: Optional[float], state: SpendingAlertState) -> List[int]:
    if not spending_cap or spending_cap <= 0:
        return []
    percent_used = monthly_total / spending_cap * 100
    return [t for t in SPENDING_THRESHOLDS if percent_used >= t and t not in state.alerts_sent]


def monthly_total(session: Session, owner_id: str, now: datetime) -> float:
    """Month-to-date cost billed to owner_id, team members included."""
    start = date(now.year, now.month, 1)
    total = session.execute(
        select(func.coalesce(func.sum(usage_daily.c.total_cost), 0.0))
        .where(or_(usage_daily.c.user_id == owner_id, usage_daily.c.account_owner_id == owner_id))
        .where(usage_daily.c.date >= start)
    ).scalar()
    return float(total or 0.0)


@dataclass
class SpendingAlertSummary:
    checked: int = 0
    alerts_sent: int = 0
    failed: int = 0
    alerted_user_ids: List[str] = field(default_factory=list)


class SpendingAlertService:
    def __init__(
        self,
        *,
        mailer,
        health_log: Optional[HealthCheckLog] = None,
        session_factory: SessionFactory = get_db_session,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.mailer = mailer
        self.health_log = health_log or HealthCheckLog(session_factory)
        self.session_factory = session_factory
        self.now_fn = now_fn

    def run(self) -> SpendingAlertSummary:
        summary = SpendingAlertSummary()
        with self.session_factory() as session:
            owners = [
                User.from_row(row)
                for row in session.execute(
                    select(users)
                    .where(users.c.account_owner_id.is_(None))
                    .where(users.c.spending_cap > 0)
                    .where(users.c.status != UserStatus.DELETED.value)
                ).fetchall()
            ]
        for owner in owners:
            summary.checked += 1
            sent = self.check_owner(owner)
            if sent is None:
                summary.failed += 1
            elif sent:
                summary.alerts_sent += 1
                summary.alerted_user_ids.append(owner.id)
        logger.info(
            "spending.alerts_run",
            extra={"checked": summary.checked, "alerts_sent": summary.alerts_sent, "failed": summary.failed},
        )
        return summary

    def check_owner(self, owner: User) -> Optional[int]:
        """Send the alert owed to one owner, if any.

        Returns the threshold alerted, 0 when nothing was due, or None when the
        email could not be sent (state is left untouched so the next run retries).
        """
        now = self.now_fn()
        month = month_key(now)
        state = SpendingAlertState.from_raw(owner.spending_alerts_sent, month)
        with self.session_factory() as session:
            total = monthly_total(session, owner.id, now)

        crossed = new_thresholds(total, owner.spending_cap, state)
        if not crossed:
            return 0
        highest = max(crossed)

        subject, body = spending_alert_email(highest, total, owner.spending_cap)
        try:
            self.mailer.send(owner.email, subject, body)
        except NotificationError as e:
            self.health_log.record(
                checks.EMAIL_DELIVERY,
                str(e),
                user_id=owner.id,
                email=owner.email,
                details={"kind": "spending_alert", "threshold": highest},
            )
            return None

        updated = SpendingAlertState(month=month, alerts_sent=sorted(set(state.alerts_sent) | set(crossed)))
        with self.session_factory() as session:
            session.execute(
                update(users).where(users.c.id == owner.id).values(spending_alerts_sent=updated.model_dump())
            )
        logger.info("spending.alert_sent", extra={"user_id": owner.id, "threshold": highest, "monthly_total": total})
        return highest
