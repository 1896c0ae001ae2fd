"""
Shared-secret guards for operator endpoints.

- Admin actions: X-Admin-Key header must equal ADMIN_KEY.
- Cron jobs: Authorization: Bearer <CRON_SECRET>. Outside production an
  unset CRON_SECRET leaves the cron endpoints open for local runs.
"""
import hashlib
import hmac
from dataclasses import dataclass

from fastapi import Request

from portal.core.config import settings
from portal.core.errors import AppError, AuthenticationError


@dataclass
class AdminActor:
    """Represents an authenticated admin caller."""
    actor_id: str
    auth_mechanism: str = "x_admin_key"


def _matches(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode(), expected.encode())


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require the admin key.

    Usage:
        @router.post("/api/admin/...")
        def endpoint(actor: AdminActor = Depends(require_admin)): ...
    """
    expected = settings.ADMIN_KEY
    if not expected:
        raise AppError("Admin authentication not configured", code="admin_auth_unconfigured", status_code=503)

    provided = request.headers.get("X-Admin-Key", "").strip()
    if not provided or not _matches(provided, expected):
        raise AuthenticationError("Invalid or missing admin credentials", code="admin_unauthorized")

    key_hash = hashlib.sha256(provided.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}")


def require_cron(request: Request) -> None:
    """FastAPI dependency: require the cron bearer secret."""
    expected = settings.CRON_SECRET
    if not expected:
        if settings.is_production:
            raise AppError("Cron authentication not configured", code="cron_auth_unconfigured", status_code=503)
        return

    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer ") or not _matches(auth[7:].strip(), expected):
        raise AuthenticationError("Unauthorized")
