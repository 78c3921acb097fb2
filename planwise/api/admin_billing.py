"""
Admin-only subscription operations router.
Requires X-Admin-Key header for all endpoints.
Handles usage resets, customer reassignment, deferred events and diagnostics.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from planwise.api.deps import get_admin_service
from planwise.core.admin_auth import AdminActor, require_admin
from planwise.features.billing.admin_service import (
    AdminBillingService,
    list_admin_audit,
    record_summary,
)

logger = logging.getLogger("planwise.admin_billing")

router = APIRouter(prefix="/api/admin/subscription")


# ============================================================================
# Pydantic Models
# ============================================================================

class ResetUsageRequest(BaseModel):
    userId: str = Field(..., min_length=1, description="User whose daily usage is reset")


class ReassignCustomerRequest(BaseModel):
    customerId: str = Field(..., min_length=1, description="Paddle customer id (ctm_...)")
    userId: str = Field(..., min_length=1, description="User that should own the customer id")


class AdminRecordResponse(BaseModel):
    success: bool
    record: Dict[str, Any]


class DeferredEventsResponse(BaseModel):
    total: int
    events: List[Dict[str, Any]]


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/reset-usage", response_model=AdminRecordResponse)
def reset_usage(
    body: ResetUsageRequest,
    actor: AdminActor = Depends(require_admin),
    service: AdminBillingService = Depends(get_admin_service),
):
    """Zero today's usage for a user."""
    record = service.reset_usage(body.userId, actor=actor.actor_id)
    logger.info("admin.reset_usage", extra={"user_id": body.userId, "action": "reset_usage"})
    return AdminRecordResponse(success=True, record=record_summary(record))


@router.post("/reassign-customer", response_model=AdminRecordResponse)
def reassign_customer(
    body: ReassignCustomerRequest,
    actor: AdminActor = Depends(require_admin),
    service: AdminBillingService = Depends(get_admin_service),
):
    """
    Move a Paddle customer id onto another user.

    The only path that may overwrite a linked customer id; the previous
    holder's link is cleared in the same transaction.
    """
    record = service.reassign_customer(body.customerId, body.userId, actor=actor.actor_id)
    logger.info("admin.reassign_customer", extra={"user_id": body.userId, "action": "reassign_customer"})
    return AdminRecordResponse(success=True, record=record_summary(record))


@router.get("/deferred-events", response_model=DeferredEventsResponse)
def deferred_events(
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
    service: AdminBillingService = Depends(get_admin_service),
):
    """Webhook events that could not be matched to a user."""
    events = service.deferred_events(limit=limit)
    return DeferredEventsResponse(total=len(events), events=events)


@router.get("/diagnostics")
def diagnostics(
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
    service: AdminBillingService = Depends(get_admin_service),
):
    """Report records with a stale reset date or over their tier limit. Read-only."""
    return service.diagnostics(limit=limit)


@router.get("/audit")
def admin_audit(
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    """Most recent admin actions, newest first."""
    return {"entries": list_admin_audit(limit=limit)}
