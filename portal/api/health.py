"""
Health endpoints for operational monitoring. Returns no secrets.
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from portal.core.database import check_connection
from portal.core.logging import get_request_id, latency_bucket_ms

logger = logging.getLogger("portal")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Liveness plus a database check."""
    start = time.perf_counter()
    connected = check_connection()
    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "ok": connected,
            "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
        },
    )
    if not connected:
        return JSONResponse(status_code=503, content={"status": "error", "db": False})
    return {"status": "ok", "db": True}
