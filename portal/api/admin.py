"""
Admin API routes (X-Admin-Key).

- POST /api/admin/users/{user_id}/suspend | reactivate | deactivate
- POST /api/admin/users/{user_id}/assign-cluster
- GET  /api/admin/health-failures
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from portal.api.deps import get_assignment_service, get_health_log, get_status_service
from portal.core.admin_auth import AdminActor, require_admin
from portal.core.errors import ConflictError, NoCapacityError, NotFoundError
from portal.features.clusters.assignment import ClusterAssignmentService
from portal.features.health.failures import HealthCheckLog
from portal.features.users.status import StatusChangeResult, UserStatusService

logger = logging.getLogger("portal.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


class StatusChangeRequest(BaseModel):
    reason: Optional[str] = None


def _status_response(result: StatusChangeResult) -> dict:
    if not result.success:
        if result.error == "User not found":
            raise NotFoundError(result.error)
        raise ConflictError(result.error or "Status change failed")
    return {
        "success": True,
        "local_updated": result.local_updated,
        "backend_updated": result.backend_updated,
        "affected_user_ids": result.affected_user_ids,
    }


@router.post("/users/{user_id}/suspend")
def suspend_user(
    user_id: str,
    body: Optional[StatusChangeRequest] = None,
    actor: AdminActor = Depends(require_admin),
    service: UserStatusService = Depends(get_status_service),
):
    logger.info("admin.suspend", extra={"user_id": user_id, "actor": actor.actor_id})
    return _status_response(service.suspend_user(user_id, body.reason if body else None))


@router.post("/users/{user_id}/reactivate")
def reactivate_user(
    user_id: str,
    body: Optional[StatusChangeRequest] = None,
    actor: AdminActor = Depends(require_admin),
    service: UserStatusService = Depends(get_status_service),
):
    logger.info("admin.reactivate", extra={"user_id": user_id, "actor": actor.actor_id})
    return _status_response(service.reactivate_user(user_id, body.reason if body else None))


@router.post("/users/{user_id}/deactivate")
def deactivate_user(
    user_id: str,
    body: Optional[StatusChangeRequest] = None,
    actor: AdminActor = Depends(require_admin),
    service: UserStatusService = Depends(get_status_service),
):
    logger.info("admin.deactivate", extra={"user_id": user_id, "actor": actor.actor_id})
    return _status_response(service.deactivate_user(user_id, body.reason if body else None))


@router.post("/users/{user_id}/assign-cluster")
def assign_cluster(
    user_id: str,
    actor: AdminActor = Depends(require_admin),
    service: ClusterAssignmentService = Depends(get_assignment_service),
):
    result = service.assign_user_to_cluster(user_id, assigned_by="admin")
    if not result.success:
        if result.error == "User not found":
            raise NotFoundError(result.error)
        if result.error == "No available clusters":
            raise NoCapacityError(result.error)
        raise ConflictError(result.error or "Assignment failed")
    logger.info("admin.assign_cluster", extra={"user_id": user_id, "cluster_id": result.cluster_id, "actor": actor.actor_id})
    return {
        "success": True,
        "cluster_id": result.cluster_id,
        "already_assigned": result.already_assigned,
        "backend_synced": result.backend_synced,
    }


@router.get("/health-failures")
def list_health_failures(
    check_type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
    health_log: HealthCheckLog = Depends(get_health_log),
):
    failures = health_log.list_unresolved(check_types=[check_type] if check_type else None, limit=limit)
    return {"failures": failures, "count": len(failures)}
