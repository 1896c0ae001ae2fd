"""
Request authentication.

Validates the identity provider's session JWT (HS256) and exposes the caller
as CurrentUser. Outside production the X-User-Id / X-User-Email / X-User-Name
headers are accepted instead, for tests and local work.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Header, Request

from portal.core.config import settings
from portal.core.errors import AuthenticationError

logger = logging.getLogger("portal.auth")


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


def verify_session_jwt(token: str) -> CurrentUser:
    """
    Verify a session JWT and extract the caller.

    Raises:
        AuthenticationError: Invalid, expired or unverifiable token
    """
    if not settings.AUTH_JWT_SECRET:
        raise AuthenticationError("Authentication is not configured")

    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.AUTH_JWT_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.AUTH_JWT_AUDIENCE,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug("auth.invalid_token", extra={"error": str(e)})
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    return CurrentUser(user_id=user_id, email=payload.get("email"), name=payload.get("name"))


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> CurrentUser:
    """
    FastAPI dependency resolving the caller.

    Priority:
    1. Bearer JWT from the Authorization header
    2. X-User-* headers (never in production)
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_session_jwt(auth_header[7:].strip())

    if x_user_id and not settings.is_production:
        return CurrentUser(user_id=x_user_id, email=x_user_email, name=x_user_name)

    raise AuthenticationError("Not authenticated")
