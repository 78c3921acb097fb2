"""
planwise/features/entitlements/policy.py

Reconciliation policy: the pure rules shared by the quota manager and the
webhook ingestor. Nothing here touches storage.

- Rollover resets usage when the stored reset date is behind today.
- A tier change resets usage for the current day.
- A downgrade only clamps `remaining`; recorded usage is never reduced.
- pro_plus bypasses the counter entirely.
"""

from datetime import date, datetime
from typing import Dict, Optional, Union

from planwise.models.billing import ActivateTier, CancelTier, UpdateStatus
from planwise.models.entitlement import (
    UNLIMITED,
    EntitlementRecord,
    SubscriptionStatus,
    Tier,
    UsageStatus,
)

# Daily quota per tier; None means unlimited
TIER_LIMITS: Dict[Tier, Optional[int]] = {
    Tier.FREE: 1,
    Tier.PRO: 5,
    Tier.PRO_PLUS: None,
}


def limit_for(tier: Tier) -> Optional[int]:
    return TIER_LIMITS[tier]


def is_unlimited(tier: Tier) -> bool:
    return TIER_LIMITS[tier] is None


def needs_rollover(record: EntitlementRecord, today: date) -> bool:
    """True when the record's quota day is behind today (or missing)."""
    return record.quota_reset_date is None or record.quota_reset_date < today


def apply_rollover(record: EntitlementRecord, today: date) -> EntitlementRecord:
    if not needs_rollover(record, today):
        return record
    return record.model_copy(update={"quota_used": 0, "quota_reset_date": today})


def remaining_for(record: EntitlementRecord) -> Union[int, str]:
    limit = limit_for(record.tier)
    if limit is None:
        return UNLIMITED
    return max(0, limit - record.quota_used)


def usage_status(record: EntitlementRecord, today: date) -> UsageStatus:
    """Usage snapshot for display; assumes rollover was already applied."""
    limit = limit_for(record.tier)
    return UsageStatus(
        used=record.quota_used,
        limit=UNLIMITED if limit is None else limit,
        remaining=remaining_for(record),
        reset_date=record.quota_reset_date or today,
    )


def _reset_date_for_change(record: EntitlementRecord, today: date) -> date:
    # quota_reset_date never moves backwards
    if record.quota_reset_date is not None and record.quota_reset_date > today:
        return record.quota_reset_date
    return today


def apply_tier_change(record: EntitlementRecord, tier: Tier, now: datetime) -> EntitlementRecord:
    """
    Switch tier; usage restarts from zero for the current day.

    Moving to the tier the record already holds is a no-op.
    """
    if record.tier == tier:
        return record
    today = now.date()
    return record.model_copy(update={
        "tier": tier,
        "tier_changed_at": now,
        "quota_used": 0,
        "quota_reset_date": _reset_date_for_change(record, today),
    })


def apply_usage_reset(record: EntitlementRecord, today: date) -> EntitlementRecord:
    """Support remediation: zero today's usage."""
    return record.model_copy(update={
        "quota_used": 0,
        "quota_reset_date": _reset_date_for_change(record, today),
    })


def apply_activation(record: EntitlementRecord, action: ActivateTier, now: datetime) -> EntitlementRecord:
    """
    Usage resets only when the tier differs. Renewals and repeated checkout
    events for the same tier refresh the subscription fields.
    """
    updated = apply_rollover(record, now.date())
    updated = apply_tier_change(updated, action.tier, now)
    changes = {"status": SubscriptionStatus.ACTIVE}
    if action.subscription_id:
        changes["provider_subscription_id"] = action.subscription_id
    if action.billing_period is not None:
        changes["billing_period"] = action.billing_period
    if action.expires_at is not None:
        changes["subscription_expires_at"] = action.expires_at
    return updated.model_copy(update=changes)


def apply_status_update(record: EntitlementRecord, action: UpdateStatus) -> EntitlementRecord:
    if record.status == action.status:
        return record
    return record.model_copy(update={"status": action.status})


def apply_cancellation(record: EntitlementRecord, action: CancelTier, now: datetime) -> EntitlementRecord:
    updated = apply_rollover(record, now.date())
    updated = apply_tier_change(updated, Tier.FREE, now)
    return updated.model_copy(update={
        "status": SubscriptionStatus.CANCELED,
        "provider_subscription_id": None,
        "billing_period": None,
        "subscription_expires_at": None,
    })
