"""
Subscription and usage routes.

- GET  /api/subscription/status: tier, status and today's usage (rolls over)
- POST /api/usage/consume: consume one unit of today's quota
"""
from datetime import date, datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from planwise.api.deps import get_quota_manager
from planwise.core.auth import AuthenticatedUser, get_current_user
from planwise.features.quota.service import QuotaManager


router = APIRouter(tags=["subscription"])


class DailyUsageResponse(BaseModel):
    used: int
    limit: Union[int, str]
    remaining: Union[int, str]
    resetDate: date


class SubscriptionStatusResponse(BaseModel):
    """Current entitlement for the caller."""
    userId: str
    email: Optional[str] = None
    subscriptionTier: str
    subscriptionStatus: str
    billingPeriod: Optional[str] = None
    subscriptionExpiresAt: Optional[datetime] = None
    tierChangedAt: Optional[datetime] = None
    dailyUsage: DailyUsageResponse


class ConsumeResponse(BaseModel):
    allowed: bool
    remaining: Union[int, str]
    resetDate: date


@router.get("/subscription/status", response_model=SubscriptionStatusResponse)
def subscription_status(
    user: AuthenticatedUser = Depends(get_current_user),
    quota: QuotaManager = Depends(get_quota_manager),
):
    """
    Get the caller's subscription and daily usage.

    A stale reset date is rolled over (and persisted) before the usage is
    reported. `limit` and `remaining` are "unlimited" for pro_plus.
    """
    record, usage = quota.get_status(user.user_id, user.email)
    return SubscriptionStatusResponse(
        userId=record.user_id,
        email=record.email,
        subscriptionTier=record.tier.value,
        subscriptionStatus=record.status.value,
        billingPeriod=record.billing_period.value if record.billing_period else None,
        subscriptionExpiresAt=record.subscription_expires_at,
        tierChangedAt=record.tier_changed_at,
        dailyUsage=DailyUsageResponse(
            used=usage.used,
            limit=usage.limit,
            remaining=usage.remaining,
            resetDate=usage.reset_date,
        ),
    )


@router.post("/usage/consume", response_model=ConsumeResponse)
def consume_usage(
    user: AuthenticatedUser = Depends(get_current_user),
    quota: QuotaManager = Depends(get_quota_manager),
):
    """
    Consume one unit of today's quota.

    `allowed=false` is a normal 200 response. 503 (quota_busy) means the
    record was contended; retry shortly.
    """
    result = quota.check_and_consume(user.user_id, user.email)
    return ConsumeResponse(allowed=result.allowed, remaining=result.remaining, resetDate=result.reset_date)
