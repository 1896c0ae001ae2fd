"""
Health check failure log.

Durable side channel for drift between the portal and external systems.
Recording never raises: a failure to write the log is itself only logged,
so the operation that hit the original problem is never blocked by it.
Unresolved rows form the repair queue drained by portal.features.health.repair.
"""
import logging
from typing import Any, Callable, ContextManager, Dict, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from portal.core.database import get_db_session, health_check_failures
from portal.core.logging import log_event
from portal.models.billing import utc_now

logger = logging.getLogger("portal.health")

# Check types
CLUSTER_CAPACITY = "cluster_capacity"
HOPSWORKS_USER_CREATION = "hopsworks_user_creation"
PROJECT_QUOTA = "project_quota"
HOPSWORKS_STATUS_SYNC = "hopsworks_status_sync"
PROJECT_MEMBERSHIP = "project_membership"
PROJECT_LOOKUP = "project_lookup"
EMAIL_DELIVERY = "email_delivery"
STRIPE_SYNC = "stripe_sync"
WEBHOOK_PROCESSING = "webhook_processing"
ORPHANED_USAGE = "orphaned_usage"
USAGE_REPORTING = "usage_reporting"
DATA_INTEGRITY = "data_integrity"

SessionFactory = Callable[[], ContextManager[Session]]


class HealthCheckLog:
    def __init__(self, session_factory: SessionFactory = get_db_session):
        self.session_factory = session_factory

    def record(
        self,
        check_type: str,
        error: str,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        log_event(
            "warning",
            "health.failure",
            user_id=user_id,
            error_code=check_type,
            extra={"error": error},
        )
        try:
            with self.session_factory() as session:
                result = session.execute(
                    insert(health_check_failures).values(
                        user_id=user_id,
                        email=email,
                        check_type=check_type,
                        error=error[:2000],
                        details=details or {},
                        resolved=False,
                        attempts=0,
                        created_at=utc_now(),
                    )
                )
                return result.inserted_primary_key[0]
        except Exception:
            logger.exception("health.failure_not_recorded", extra={"check_type": check_type, "user_id": user_id})
            return None

    def list_unresolved(self, *, check_types: Optional[List[str]] = None, limit: int = 100) -> List[Dict[str, Any]]:
        with self.session_factory() as session:
            stmt = select(health_check_failures).where(health_check_failures.c.resolved.is_(False))
            if check_types:
                stmt = stmt.where(health_check_failures.c.check_type.in_(check_types))
            stmt = stmt.order_by(health_check_failures.c.created_at, health_check_failures.c.id).limit(limit)
            return [dict(row._mapping) for row in session.execute(stmt).fetchall()]

    def resolve(self, failure_id: int, resolution: str) -> bool:
        with self.session_factory() as session:
            result = session.execute(
                update(health_check_failures)
                .where(health_check_failures.c.id == failure_id)
                .where(health_check_failures.c.resolved.is_(False))
                .values(resolved=True, resolved_at=utc_now(), resolution=resolution)
            )
            return result.rowcount > 0

    def mark_attempt(self, failure_id: int, error: Optional[str] = None) -> None:
        values: Dict[str, Any] = {"attempts": health_check_failures.c.attempts + 1}
        if error:
            values["error"] = error[:2000]
        with self.session_factory() as session:
            session.execute(
                update(health_check_failures).where(health_check_failures.c.id == failure_id).values(**values)
            )
