import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from portal/.env (never under pytest)
portal_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(portal_dir, ".env"))

from portal.core.config import settings, validate_config  # noqa: E402
from portal.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from portal.core.logging import configure_logging  # noqa: E402
from portal.core.middleware.ratelimit import RateLimitMiddleware  # noqa: E402
from portal.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from portal.core.ratelimit import build_rate_limit_config  # noqa: E402
from portal.features.billing.service import billing_enabled  # noqa: E402
from portal.api import account, admin, auth, billing, cron, health, pricing, team, webhooks  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("portal")
    app.state.startup_time = time.time()
    logger.info(
        "portal.startup",
        extra={
            "env": settings.ENV,
            "billing_enabled": billing_enabled(),
            "email_enabled": bool(settings.RESEND_API_KEY),
            "ops_alerts_enabled": bool(settings.SLACK_WEBHOOK_URL),
            "rate_limit_enabled": build_rate_limit_config().enabled,
        },
    )
    try:
        yield
    finally:
        logger.info("portal.shutdown", extra={"uptime_seconds": round(time.time() - app.state.startup_time)})


app = FastAPI(title="Hopsworks Portal - Backend", lifespan=lifespan)

# Middlewares (last added runs first)
app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config())
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.BASE_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router)
app.include_router(auth.router)
app.include_router(pricing.router)
app.include_router(billing.router)
app.include_router(webhooks.router)
app.include_router(team.router)
app.include_router(account.router)
app.include_router(admin.router)
app.include_router(cron.router)
