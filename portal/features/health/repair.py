"""
Repair pass over the health check failure queue.

Each unresolved row is retried against the current state of the account, not
the state at the time of the failure, so running the pass twice is harmless:
a row whose problem has already gone away is simply resolved.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from portal.core.logging import log_context
from portal.features.clusters.assignment import ClusterAssignmentService
from portal.features.health import failures as checks
from portal.features.health.failures import HealthCheckLog
from portal.features.hopsworks.client import HopsworksError
from portal.features.users.status import UserStatusService

logger = logging.getLogger("portal.health.repair")

REPAIRABLE = (
    checks.HOPSWORKS_USER_CREATION,
    checks.PROJECT_QUOTA,
    checks.HOPSWORKS_STATUS_SYNC,
    checks.CLUSTER_CAPACITY,
)


@dataclass
class RepairSummary:
    examined: int = 0
    resolved: int = 0
    still_failing: int = 0
    errors: List[Dict[str, object]] = field(default_factory=list)


class RepairService:
    def __init__(
        self,
        *,
        assignment_service: ClusterAssignmentService,
        status_service: UserStatusService,
        health_log: HealthCheckLog,
    ):
        self.assignment_service = assignment_service
        self.status_service = status_service
        self.health_log = health_log
        self._handlers: Dict[str, Callable[[str], Optional[str]]] = {
            checks.HOPSWORKS_USER_CREATION: self._repair_user_creation,
            checks.PROJECT_QUOTA: self._repair_quota,
            checks.HOPSWORKS_STATUS_SYNC: self._repair_status,
            checks.CLUSTER_CAPACITY: self._repair_assignment,
        }

    def run_repair_pass(self, limit: int = 50) -> RepairSummary:
        summary = RepairSummary()
        for failure in self.health_log.list_unresolved(check_types=list(REPAIRABLE), limit=limit):
            summary.examined += 1
            failure_id = failure["id"]
            user_id = failure.get("user_id")
            if not user_id:
                self.health_log.resolve(failure_id, "no user attached; nothing to repair")
                summary.resolved += 1
                continue

            handler = self._handlers[failure["check_type"]]
            try:
                with log_context(user_id=user_id):
                    resolution = handler(user_id)
                error = None if resolution else "repair did not complete"
            except HopsworksError as e:
                resolution, error = None, e.message

            if resolution:
                self.health_log.resolve(failure_id, resolution)
                summary.resolved += 1
            else:
                self.health_log.mark_attempt(failure_id, error)
                summary.still_failing += 1
                summary.errors.append({"id": failure_id, "check_type": failure["check_type"], "error": error})

        logger.info(
            "health.repair_pass",
            extra={"examined": summary.examined, "resolved": summary.resolved, "still_failing": summary.still_failing},
        )
        return summary

    def _repair_user_creation(self, user_id: str) -> Optional[str]:
        if self.assignment_service.provision_existing(user_id, record=False):
            return "hopsworks user provisioned"
        return None

    def _repair_quota(self, user_id: str) -> Optional[str]:
        if self.assignment_service.sync_quota(user_id, record=False):
            return "quota synced"
        return None

    def _repair_status(self, user_id: str) -> Optional[str]:
        if self.status_service.mirror_status(user_id, record=False):
            return "status mirrored"
        return None

    def _repair_assignment(self, user_id: str) -> Optional[str]:
        result = self.assignment_service.assign_user_to_cluster(user_id, assigned_by="repair", record_capacity=False)
        if result.success:
            return f"assigned to {result.cluster_id}"
        return None
