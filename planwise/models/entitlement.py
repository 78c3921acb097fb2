"""
planwise/models/entitlement.py

Entitlement models: the per-user record the quota manager and the webhook
ingestor both mutate, plus the webhook bookkeeping rows.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

UNLIMITED = "unlimited"


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class Tier(str, Enum):
    FREE = "free"
    PRO = "pro"
    PRO_PLUS = "pro_plus"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EntitlementRecord(BaseModel):
    """
    One row per user. Immutable: writers derive a new record with
    `model_copy(update=...)` inside a conditional update.

    `quota_reset_date` is only ever None for legacy rows; readers treat that
    as requiring an immediate rollover.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    quota_used: int = Field(default=0, ge=0)
    quota_reset_date: Optional[date] = None
    tier_changed_at: Optional[datetime] = None
    billing_period: Optional[BillingPeriod] = None
    subscription_expires_at: Optional[datetime] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProcessedWebhookEvent(BaseModel):
    """Dedup marker: a row exists iff the event has been applied."""
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    canonical_action: str
    user_id: Optional[str] = None
    processed_at: datetime


class DeferredWebhookEvent(BaseModel):
    """An event whose target user could not be resolved."""
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str
    canonical_action: str
    reason: str
    payload: Dict[str, Any]
    attempts: int = 1
    first_seen_at: datetime
    last_seen_at: datetime


class ConsumeResult(BaseModel):
    """Outcome of a consumption check. `allowed=False` is a normal result."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    remaining: Union[int, str]
    reset_date: date


class UsageStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    used: int
    limit: Union[int, str]
    remaining: Union[int, str]
    reset_date: date
