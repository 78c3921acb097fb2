"""
Admin billing operations service.

Handles:
- Usage reset (support remediation)
- Provider customer reassignment
- Deferred (unresolved) webhook event listing
- Diagnostics: stale or missing reset dates, records over their tier limit
- Audit logging

Diagnostics only report. Over-limit records are corrected by the next
rollover or tier change, never by a heuristic fix here.
"""
import json
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import insert, select

from planwise.core.database import billing_admin_audit, get_db_session
from planwise.features.entitlements import policy
from planwise.features.entitlements.store import (
    EntitlementStore,
    conflict_exhausted,
    retry_on_conflict,
)
from planwise.features.quota.service import QuotaManager
from planwise.models.entitlement import EntitlementRecord, utc_now

logger = logging.getLogger("planwise.admin_billing")


def record_admin_audit(
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """
    Record an admin action in the audit log.

    Args:
        actor: Admin actor id (e.g., "admin:<key hash>")
        action: Action name (e.g., "reset_usage", "reassign_customer")
        target_user_id: User affected by action (optional)
        target_resource: Resource affected (provider customer id, event id, ...)
        payload: Additional context as dict (will be JSON-serialized)
    """
    with get_db_session() as session:
        payload_json = json.dumps(payload, default=str) if payload else None
        session.execute(
            insert(billing_admin_audit).values(
                actor=actor,
                action=action,
                target_user_id=target_user_id,
                target_resource=target_resource,
                payload_json=payload_json,
            )
        )


def list_admin_audit(limit: int = 50) -> list:
    with get_db_session() as session:
        rows = session.execute(
            select(billing_admin_audit)
            .order_by(billing_admin_audit.c.id.desc())
            .limit(limit)
        ).all()
    return [
        {
            "actor": row.actor,
            "action": row.action,
            "target_user_id": row.target_user_id,
            "target_resource": row.target_resource,
            "payload": json.loads(row.payload_json) if row.payload_json else None,
        }
        for row in rows
    ]


def record_summary(record: EntitlementRecord) -> dict:
    return {
        "userId": record.user_id,
        "email": record.email,
        "tier": record.tier.value,
        "status": record.status.value,
        "providerCustomerId": record.provider_customer_id,
        "quotaUsed": record.quota_used,
        "quotaLimit": policy.limit_for(record.tier),
        "quotaResetDate": record.quota_reset_date.isoformat() if record.quota_reset_date else None,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
    }


class AdminBillingService:
    def __init__(
        self,
        store: EntitlementStore,
        quota: QuotaManager,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.quota = quota
        self._clock = clock

    def reset_usage(self, user_id: str, actor: str) -> EntitlementRecord:
        record = self.quota.force_reset(user_id)
        record_admin_audit(
            actor=actor,
            action="reset_usage",
            target_user_id=user_id,
            payload={"quota_reset_date": record.quota_reset_date},
        )
        return record

    def reassign_customer(self, customer_id: str, to_user_id: str, actor: str) -> EntitlementRecord:
        """
        Move a provider customer id onto `to_user_id`.

        Raises:
            NotFoundError: target user has no entitlement record
            ConcurrencyConflictError: either record kept changing underneath
        """
        previous = self.store.find_by_customer_id(customer_id)
        record = retry_on_conflict(
            lambda: self.store.reassign_customer(customer_id, to_user_id),
            max_attempts=self.quota.max_attempts,
            backoff_ms=self.quota.backoff_ms,
            exhausted=conflict_exhausted("admin.reassign_customer"),
            label="admin.reassign_customer",
        )
        record_admin_audit(
            actor=actor,
            action="reassign_customer",
            target_user_id=to_user_id,
            target_resource=customer_id,
            payload={"previous_user_id": previous.user_id if previous else None},
        )
        return record

    def deferred_events(self, limit: int = 50) -> list:
        return [
            {
                "eventId": event.event_id,
                "eventType": event.event_type,
                "canonicalAction": event.canonical_action,
                "reason": event.reason,
                "attempts": event.attempts,
                "firstSeenAt": event.first_seen_at.isoformat(),
                "lastSeenAt": event.last_seen_at.isoformat(),
                "payload": event.payload,
            }
            for event in self.store.list_deferred_events(limit=limit)
        ]

    def diagnostics(self, limit: int = 50) -> dict:
        today = self._clock().date()
        bounded_limits = {
            tier: tier_limit
            for tier, tier_limit in policy.TIER_LIMITS.items()
            if tier_limit is not None
        }
        stale = self.store.stale_records(today, limit=limit)
        over_limit = self.store.over_limit_records(bounded_limits, limit=limit)
        logger.info(
            "admin.diagnostics",
            extra={"stale": len(stale), "over_limit": len(over_limit)},
        )
        return {
            "today": today.isoformat(),
            "staleResetDates": [record_summary(r) for r in stale],
            "overLimit": [record_summary(r) for r in over_limit],
        }
