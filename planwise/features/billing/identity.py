"""
Identity resolver: maps a provider event onto an internal user id.

Lookup order:
1. provider customer id (exact)
2. provider subscription id (exact)
3. checkout correlation id (`custom_data.user_id`), when that record exists
4. fallbacks, only when enabled:
   a. activations only: the most recently updated record with no customer id
   b. stored email equal to the payload's billing email

Any hit after step 1 links the event's customer id onto the record (only if
the record has none) so later events take the exact path.

Step 4a is unsound when two checkouts complete in the same window; it is kept
for compatibility with payments made before checkouts carried a user id.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from planwise.core.config import settings
from planwise.core.errors import CustomerIdConflictError
from planwise.features.entitlements.store import (
    EntitlementStore,
    conflict_exhausted,
    retry_on_conflict,
)
from planwise.models.billing import ActivateTier, CanonicalAction, ProviderEvent
from planwise.models.entitlement import EntitlementRecord

logger = logging.getLogger("planwise.billing")


@dataclass(frozen=True)
class Resolution:
    user_id: str
    via: str  # customer_id | subscription_id | custom_data | most_recent_unlinked | email


class IdentityResolver:
    def __init__(
        self,
        store: EntitlementStore,
        fallback_enabled: Optional[bool] = None,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ):
        self.store = store
        self.fallback_enabled = (
            fallback_enabled if fallback_enabled is not None else settings.IDENTITY_FALLBACK_ENABLED
        )
        self.max_attempts = max_attempts if max_attempts is not None else settings.QUOTA_MAX_ATTEMPTS
        self.backoff_ms = backoff_ms if backoff_ms is not None else settings.QUOTA_RETRY_BACKOFF_MS

    def resolve(self, event: ProviderEvent, action: CanonicalAction) -> Optional[Resolution]:
        """Resolve the target user, or None when no candidate exists."""
        customer_id = event.customer_id

        if customer_id:
            record = self.store.find_by_customer_id(customer_id)
            if record is not None:
                return self._resolved(event, record, "customer_id")

        subscription_id = event.subscription_id
        if subscription_id:
            record = self.store.find_by_subscription_id(subscription_id)
            if record is not None:
                return self._link(event, record, "subscription_id")

        correlation_user_id = event.correlation_user_id
        if correlation_user_id:
            record = self.store.get(correlation_user_id)
            if record is not None:
                return self._link(event, record, "custom_data")

        if not self.fallback_enabled:
            return None

        if isinstance(action, ActivateTier):
            candidates = self.store.most_recent_unlinked(limit=1)
            if candidates:
                logger.warning(
                    "billing.identity.heuristic_match",
                    extra={"event_id": event.event_id, "user_id": candidates[0].user_id},
                )
                return self._link(event, candidates[0], "most_recent_unlinked")

        email = event.billing_email
        if email:
            record = self.store.find_by_email(email)
            if record is not None:
                return self._link(event, record, "email")

        return None

    def _resolved(self, event: ProviderEvent, record: EntitlementRecord, via: str) -> Resolution:
        logger.info(
            "billing.identity.resolved",
            extra={"event_id": event.event_id, "user_id": record.user_id, "via": via},
        )
        return Resolution(user_id=record.user_id, via=via)

    def _link(self, event: ProviderEvent, record: EntitlementRecord, via: str) -> Resolution:
        customer_id = event.customer_id
        if not customer_id or record.provider_customer_id is not None:
            return self._resolved(event, record, via)

        user_id = record.user_id

        def link(current: EntitlementRecord) -> EntitlementRecord:
            if current.provider_customer_id is not None:
                return current
            return current.model_copy(update={"provider_customer_id": customer_id})

        def attempt() -> EntitlementRecord:
            current = self.store.get(user_id)
            if current is None or current.provider_customer_id is not None:
                return current
            return self.store.conditional_update(user_id, current.version, link)

        try:
            retry_on_conflict(
                attempt,
                max_attempts=self.max_attempts,
                backoff_ms=self.backoff_ms,
                exhausted=conflict_exhausted("billing.identity.link"),
                label="billing.identity.link",
            )
        except CustomerIdConflictError:
            # Linked to someone else concurrently; that record now wins
            holder = self.store.find_by_customer_id(customer_id)
            if holder is None:
                raise
            return self._resolved(event, holder, "customer_id")

        logger.info(
            "billing.identity.linked",
            extra={"event_id": event.event_id, "user_id": user_id, "via": via},
        )
        return self._resolved(event, record, via)
