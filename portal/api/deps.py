"""
Service wiring for the HTTP layer.

Every route receives its services through these dependencies; tests swap
them with app.dependency_overrides.
"""
from typing import Optional

from fastapi import Depends

from portal.core.errors import ExternalServiceError
from portal.features.billing.provider import BillingProvider
from portal.features.billing.service import get_provider, payment_method_checker
from portal.features.billing.spending_alerts import SpendingAlertService
from portal.features.billing.usage_reporting import UsageReporter
from portal.features.billing.webhooks import BillingWebhookReconciler
from portal.features.clusters.assignment import ClusterAssignmentService
from portal.features.crm.hubspot import HubSpotClient
from portal.features.health.failures import HealthCheckLog
from portal.features.health.integrity import IntegrityChecker
from portal.features.health.repair import RepairService
from portal.features.notifications.alerts import SlackAlerter
from portal.features.notifications.email import ResendMailer
from portal.features.team.invite_service import TeamInviteService
from portal.features.team.projects import TeamProjectService
from portal.features.users.account import AccountDeletionService
from portal.features.users.service import UserSyncService
from portal.features.users.status import UserStatusService


def get_health_log() -> HealthCheckLog:
    return HealthCheckLog()


def get_mailer() -> ResendMailer:
    return ResendMailer()


def get_alerts() -> SlackAlerter:
    return SlackAlerter()


def get_billing_provider() -> Optional[BillingProvider]:
    return get_provider()


def require_billing_provider(provider: Optional[BillingProvider] = Depends(get_billing_provider)) -> BillingProvider:
    if provider is None:
        raise ExternalServiceError("Billing is not configured")
    return provider


def get_crm_client() -> HubSpotClient:
    return HubSpotClient()


def get_assignment_service(health_log: HealthCheckLog = Depends(get_health_log)) -> ClusterAssignmentService:
    return ClusterAssignmentService(health_log=health_log)


def get_status_service(health_log: HealthCheckLog = Depends(get_health_log)) -> UserStatusService:
    return UserStatusService(health_log=health_log)


def get_sync_service(
    assignment_service: ClusterAssignmentService = Depends(get_assignment_service),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
) -> UserSyncService:
    return UserSyncService(
        assignment_service=assignment_service,
        has_payment_method=payment_method_checker(provider),
    )


def get_invite_service(
    assignment_service: ClusterAssignmentService = Depends(get_assignment_service),
    mailer: ResendMailer = Depends(get_mailer),
    health_log: HealthCheckLog = Depends(get_health_log),
) -> TeamInviteService:
    return TeamInviteService(assignment_service=assignment_service, mailer=mailer, health_log=health_log)


def get_team_project_service(
    assignment_service: ClusterAssignmentService = Depends(get_assignment_service),
    health_log: HealthCheckLog = Depends(get_health_log),
) -> TeamProjectService:
    return TeamProjectService(assignment_service=assignment_service, health_log=health_log)


def get_webhook_reconciler(
    provider: BillingProvider = Depends(require_billing_provider),
    assignment_service: ClusterAssignmentService = Depends(get_assignment_service),
    status_service: UserStatusService = Depends(get_status_service),
    mailer: ResendMailer = Depends(get_mailer),
    alerts: SlackAlerter = Depends(get_alerts),
    health_log: HealthCheckLog = Depends(get_health_log),
) -> BillingWebhookReconciler:
    return BillingWebhookReconciler(
        provider,
        assignment_service=assignment_service,
        status_service=status_service,
        mailer=mailer,
        alerts=alerts,
        health_log=health_log,
    )


def get_repair_service(
    assignment_service: ClusterAssignmentService = Depends(get_assignment_service),
    status_service: UserStatusService = Depends(get_status_service),
    health_log: HealthCheckLog = Depends(get_health_log),
) -> RepairService:
    return RepairService(assignment_service=assignment_service, status_service=status_service, health_log=health_log)


def get_integrity_checker(
    health_log: HealthCheckLog = Depends(get_health_log),
    alerts: SlackAlerter = Depends(get_alerts),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
) -> IntegrityChecker:
    return IntegrityChecker(health_log=health_log, alerts=alerts, provider=provider)


def get_usage_reporter(
    provider: BillingProvider = Depends(require_billing_provider),
    health_log: HealthCheckLog = Depends(get_health_log),
    alerts: SlackAlerter = Depends(get_alerts),
) -> UsageReporter:
    return UsageReporter(provider, health_log=health_log, alerts=alerts)


def get_spending_alert_service(
    mailer: ResendMailer = Depends(get_mailer),
    health_log: HealthCheckLog = Depends(get_health_log),
) -> SpendingAlertService:
    return SpendingAlertService(mailer=mailer, health_log=health_log)


def get_account_service(
    assignment_service: ClusterAssignmentService = Depends(get_assignment_service),
    status_service: UserStatusService = Depends(get_status_service),
    provider: Optional[BillingProvider] = Depends(get_billing_provider),
    health_log: HealthCheckLog = Depends(get_health_log),
) -> AccountDeletionService:
    return AccountDeletionService(
        assignment_service=assignment_service,
        status_service=status_service,
        provider=provider,
        health_log=health_log,
    )
