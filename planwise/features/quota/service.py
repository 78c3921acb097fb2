"""
planwise/features/quota/service.py

Daily quota manager.

Handles:
- Lazy daily rollover (no scheduler; every access path checks the reset date)
- Check-then-consume as a single conditional update, retried on conflict
- Status reads (which persist a pending rollover)
- Support remediation (force reset)
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Tuple

from planwise.core.config import settings
from planwise.core.errors import QuotaBusyError
from planwise.features.entitlements import policy
from planwise.features.entitlements.store import EntitlementStore, retry_on_conflict
from planwise.models.entitlement import (
    UNLIMITED,
    ConsumeResult,
    EntitlementRecord,
    UsageStatus,
    utc_now,
)

logger = logging.getLogger("planwise.quota")


def _busy(attempts: int) -> Exception:
    return QuotaBusyError(f"Quota record busy after {attempts} attempts, retry shortly")


class QuotaManager:
    """Rollover, check and consume against the entitlement store."""

    def __init__(
        self,
        store: EntitlementStore,
        clock: Callable[[], datetime] = utc_now,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ):
        self.store = store
        self._clock = clock
        self.max_attempts = max_attempts if max_attempts is not None else settings.QUOTA_MAX_ATTEMPTS
        self.backoff_ms = backoff_ms if backoff_ms is not None else settings.QUOTA_RETRY_BACKOFF_MS

    def _retry(self, operation, label: str):
        return retry_on_conflict(
            operation,
            max_attempts=self.max_attempts,
            backoff_ms=self.backoff_ms,
            exhausted=_busy,
            label=label,
        )

    def check_and_consume(self, user_id: str, email: Optional[str] = None) -> ConsumeResult:
        """
        Consume one unit of today's quota if the tier allows it.

        Returns ConsumeResult(allowed=False, remaining=0) on denial; that is a
        business outcome, not an error.

        Raises:
            QuotaBusyError: conditional writes kept conflicting (retryable)
        """

        def attempt() -> ConsumeResult:
            today = self._clock().date()
            record = self.store.get_or_create(user_id, email)
            rolled = policy.apply_rollover(record, today)
            pending_rollover = rolled is not record

            if policy.is_unlimited(rolled.tier):
                if pending_rollover:
                    rolled = self.store.conditional_update(
                        user_id, record.version, lambda r: policy.apply_rollover(r, today)
                    )
                return ConsumeResult(allowed=True, remaining=UNLIMITED, reset_date=rolled.quota_reset_date)

            # After a rollover quota_used is 0, so a denial never leaves one pending
            if rolled.quota_used >= policy.limit_for(rolled.tier):
                return ConsumeResult(allowed=False, remaining=0, reset_date=rolled.quota_reset_date)

            def consume(current: EntitlementRecord) -> EntitlementRecord:
                fresh = policy.apply_rollover(current, today)
                return fresh.model_copy(update={"quota_used": fresh.quota_used + 1})

            updated = self.store.conditional_update(user_id, record.version, consume)
            return ConsumeResult(
                allowed=True,
                remaining=policy.remaining_for(updated),
                reset_date=updated.quota_reset_date,
            )

        result = self._retry(attempt, "quota.consume")
        logger.info(
            "quota.consume",
            extra={"user_id": user_id, "outcome": "allowed" if result.allowed else "denied"},
        )
        return result

    def get_status(self, user_id: str, email: Optional[str] = None) -> Tuple[EntitlementRecord, UsageStatus]:
        """
        Current record and usage snapshot. A stale reset date is rolled over
        and persisted as a side effect.
        """

        def attempt() -> EntitlementRecord:
            today = self._clock().date()
            record = self.store.get_or_create(user_id, email)
            if not policy.needs_rollover(record, today):
                return record
            if record.quota_reset_date is None:
                logger.warning("quota.corrupt_record_healed", extra={"user_id": user_id})
            return self.store.conditional_update(
                user_id, record.version, lambda r: policy.apply_rollover(r, today)
            )

        record = self._retry(attempt, "quota.status")
        return record, policy.usage_status(record, self._clock().date())

    def force_reset(self, user_id: str) -> EntitlementRecord:
        """Zero today's usage for a user (support remediation)."""

        def attempt() -> EntitlementRecord:
            today = self._clock().date()
            record = self.store.get_or_create(user_id)
            return self.store.conditional_update(
                user_id, record.version, lambda r: policy.apply_usage_reset(r, today)
            )

        record = self._retry(attempt, "quota.force_reset")
        logger.info("quota.force_reset", extra={"user_id": user_id})
        return record
