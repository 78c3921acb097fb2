"""
Health endpoints for operational monitoring (no secrets exposed).
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from planwise.core.database import check_connection, get_engine

logger = logging.getLogger("planwise")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "entitlements",
    "processed_webhook_events",
    "deferred_webhook_events",
    "billing_admin_audit",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"ready": False, "db": "unreachable"})

    present = set(inspect(get_engine()).get_table_names())
    missing = [name for name in REQUIRED_TABLES if name not in present]
    if missing:
        logger.warning("readyz.missing_tables", extra={"missing": missing})
        return JSONResponse(status_code=503, content={"ready": False, "missing_tables": missing})
    return {"ready": True}
