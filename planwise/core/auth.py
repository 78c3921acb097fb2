"""
Auth utilities for the Planwise API.

The identity provider (Supabase) issues HS256 access tokens; this module only
verifies them and extracts the user id. Falls back to the X-User-Id header
outside production (local runs and tests).
"""
from dataclasses import dataclass
from typing import Optional

import jwt
import logging
from fastapi import Header, Request

from planwise.core.config import settings
from planwise.core.errors import UnauthenticatedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None


def verify_access_token(token: str) -> AuthenticatedUser:
    """
    Verify a bearer access token and extract the user identity.

    Raises:
        UnauthenticatedError: token invalid, expired, or auth not configured
    """
    if not settings.AUTH_JWT_SECRET:
        raise UnauthenticatedError("Token authentication is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.AUTH_JWT_AUDIENCE,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthenticatedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthenticatedError("Token has no subject")
    return AuthenticatedUser(user_id=user_id, email=payload.get("email"))


async def get_current_user(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production: caller user id"),
    x_user_email: Optional[str] = Header(None, description="Non-production: caller email"),
) -> AuthenticatedUser:
    """
    Extract the current user from the request.

    Priority:
    1. Bearer access token from Authorization header
    2. X-User-Id header (not honored when ENVIRONMENT=prod)
    3. Raise 401 Unauthenticated
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_access_token(auth_header[7:].strip())

    if x_user_id and settings.ENVIRONMENT.lower() != "prod":
        return AuthenticatedUser(user_id=x_user_id, email=x_user_email)

    raise UnauthenticatedError("Missing Authorization (Bearer token) or X-User-Id header")
