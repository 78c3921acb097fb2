"""
Admin authentication for support/remediation operations.

Privileged endpoints require the X-Admin-Key shared secret. Every admin action
is audited with the actor identity derived here.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from planwise.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin:<key hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    """Get admin API key.
    Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY.
    """
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """
    Verify X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.
    Raises HTTPException if authentication fails.

    Usage:
        @router.post("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    if not get_admin_api_key():
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Admin authentication not configured",
                "code": "admin_auth_unconfigured",
                "hint": "Set ADMIN_KEY",
            },
        )

    raise HTTPException(
        status_code=401,
        detail={
            "error": "Unauthorized: invalid or missing admin credentials",
            "code": "admin_unauthorized",
        },
    )
