"""
Error taxonomy and the FastAPI handlers that render it.

Every failure response has the same body:

    {"error": str, "code": str, "request_id": str, "details"?: str}

`details` is only included outside production, and 5xx messages are replaced
with "Internal server error" in production so upstream (Stripe, Hopsworks)
error text never reaches clients.
"""

import builtins
import logging
from typing import Mapping, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from portal.core.config import settings
from portal.core.logging import get_request_id

logger = logging.getLogger("portal.errors")

INTERNAL_ERROR_MESSAGE = "Internal server error"


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or type(self).code
        self.status_code = status_code or type(self).status_code
        self.details = details
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class GoneError(AppError):
    """The resource existed but can no longer be used (expired invite)."""
    code = "gone"
    status_code = 410


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class ExternalServiceError(AppError):
    """Stripe, Hopsworks, HubSpot or Resend failed on a step the request cannot skip."""
    code = "external_service_error"
    status_code = 502


class NoCapacityError(AppError):
    """No active cluster has room; callers may retry later."""
    code = "no_capacity"
    status_code = 503


# Codes for errors raised by the framework itself (routing, auth headers)
_HTTP_STATUS_CODES = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limited",
}


def request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def error_response(
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    if settings.is_production:
        details = None
        if status_code >= 500:
            message = INTERNAL_ERROR_MESSAGE
    payload = {"error": message, "code": code, "request_id": request_id}
    if details:
        payload["details"] = details
    response = JSONResponse(status_code=status_code, content=payload, headers=dict(headers or {}))
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or request_id_for(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(rid, exc.status_code, exc.code, exc.message, exc.details)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = request_id_for(request)
    code = _HTTP_STATUS_CODES.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(rid, exc.status_code, code, message, headers=getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = request_id_for(request)
    problems = [
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    ]
    logger.info("request.invalid", extra={"request_id": rid, "path": request.url.path, "problems": problems[:5]})
    return error_response(rid, 422, "validation_error", "Invalid request", details="; ".join(problems))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = request_id_for(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(rid, 500, "internal_error", INTERNAL_ERROR_MESSAGE, details=f"{type(exc).__name__}: {exc}")
