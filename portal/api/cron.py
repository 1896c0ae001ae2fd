"""
Batch job endpoints, triggered by an external scheduler (Bearer CRON_SECRET).

Each call is one bounded pass; none of them loop.
"""
from dataclasses import asdict
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from portal.api.deps import (
    get_integrity_checker,
    get_repair_service,
    get_spending_alert_service,
    get_usage_reporter,
)
from portal.core.admin_auth import require_cron
from portal.core.logging import log_context
from portal.features.billing.spending_alerts import SpendingAlertService
from portal.features.billing.usage_reporting import UsageReporter
from portal.features.health.integrity import IntegrityChecker
from portal.features.health.repair import RepairService

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron)])


@router.post("/report-usage")
def report_usage(
    report_date: Optional[date] = Query(None, alias="date"),
    reporter: UsageReporter = Depends(get_usage_reporter),
):
    """Report one day of usage (default: yesterday, UTC) to Stripe meters."""
    with log_context(job="report-usage"):
        return asdict(reporter.report_day(report_date))


@router.post("/check-integrity")
def check_integrity(checker: IntegrityChecker = Depends(get_integrity_checker)):
    with log_context(job="check-integrity"):
        report = checker.run()
    return {"counts": report.counts(), "issues": [asdict(issue) for issue in report.issues]}


@router.post("/spending-alerts")
def spending_alerts(service: SpendingAlertService = Depends(get_spending_alert_service)):
    with log_context(job="spending-alerts"):
        return asdict(service.run())


@router.post("/repair")
def repair(
    limit: int = Query(50, ge=1, le=500),
    service: RepairService = Depends(get_repair_service),
):
    with log_context(job="repair"):
        return asdict(service.run_repair_pass(limit=limit))
