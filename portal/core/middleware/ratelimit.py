import logging
import time
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from portal.core.errors import RateLimitError, app_error_handler
from portal.core.ratelimit import InMemoryRateLimiter, RateLimitConfig, build_rate_limit_config

logger = logging.getLogger("portal.http.ratelimit")


def client_ip(request: Request) -> str:
    """First hop of x-forwarded-for (set by the load balancer), else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.config = config or build_rate_limit_config()
        self.limiter = InMemoryRateLimiter(self.config, time_fn=time_fn or time.monotonic)

    async def dispatch(self, request: Request, call_next):
        policy = self.config.policy_for(request.method, request.url.path) if self.config.enabled else None
        if policy is None:
            return await call_next(request)

        ip = client_ip(request)
        decision = self.limiter.check(ip, policy)
        if decision.allowed:
            response = await call_next(request)
            response.headers["X-RateLimit-Limit"] = str(policy.capacity)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
            return response

        logger.warning(
            "ratelimit.blocked",
            extra={"policy": policy.name, "client_ip": ip, "path": request.url.path, "retry_after": decision.retry_after},
        )
        response = await app_error_handler(
            request,
            RateLimitError(
                "Too many requests, please try again later",
                request_id=getattr(request.state, "request_id", None),
            ),
        )
        response.headers["Retry-After"] = str(decision.retry_after)
        response.headers["X-RateLimit-Limit"] = str(policy.capacity)
        response.headers["X-RateLimit-Remaining"] = "0"
        return response
