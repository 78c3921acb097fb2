"""
Webhook ingestor.

Per delivery: verify -> dedup -> normalize -> resolve -> apply.

- Verification and parsing belong to the provider; their errors propagate to
  the route unchanged (400/401) and never touch the store.
- The processed-event row is written in the same transaction as the
  entitlement mutation, so a redelivery racing the first delivery loses on the
  event id and changes nothing.
- Events that cannot be resolved to a user are deferred, not marked processed.
"""
import logging
from datetime import datetime
from typing import Callable, Mapping, Optional

from planwise.core.config import settings
from planwise.core.errors import NotFoundError
from planwise.features.billing.identity import IdentityResolver
from planwise.features.billing.provider import BillingProvider
from planwise.features.entitlements import policy
from planwise.features.entitlements.store import (
    DuplicateEvent,
    EntitlementStore,
    conflict_exhausted,
    retry_on_conflict,
)
from planwise.models.billing import (
    ActivateTier,
    CanonicalAction,
    CancelTier,
    IngestResult,
    ProviderEvent,
    Unhandled,
    UpdateStatus,
)
from planwise.models.entitlement import EntitlementRecord, ProcessedWebhookEvent, utc_now

logger = logging.getLogger("planwise.billing")


class WebhookIngestor:
    def __init__(
        self,
        provider: BillingProvider,
        store: EntitlementStore,
        resolver: IdentityResolver,
        clock: Callable[[], datetime] = utc_now,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ):
        self.provider = provider
        self.store = store
        self.resolver = resolver
        self._clock = clock
        self.max_attempts = max_attempts if max_attempts is not None else settings.QUOTA_MAX_ATTEMPTS
        self.backoff_ms = backoff_ms if backoff_ms is not None else settings.QUOTA_RETRY_BACKOFF_MS

    def ingest(self, headers: Mapping[str, str], body: bytes) -> IngestResult:
        """
        Process one webhook delivery.

        Raises:
            MalformedPayloadError: missing signature header, bad JSON or envelope
            SignatureInvalidError: signature mismatch
            ConcurrencyConflictError: conditional writes kept conflicting
        """
        event = self.provider.verify_and_parse(headers, body)
        logger.info(
            "billing.webhook.received",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )

        if self.store.has_processed_event(event.event_id):
            return self._finish(event, "duplicate", "none")

        action = self.provider.normalize(event)

        if isinstance(action, Unhandled):
            recorded = self.store.record_event(self._processed(event, action.kind, None))
            if not recorded:
                return self._finish(event, "duplicate", action.kind)
            logger.info(
                "billing.webhook.unhandled",
                extra={"event_id": event.event_id, "event_type": event.event_type, "reason": action.reason},
            )
            return self._finish(event, "ignored", action.kind)

        resolution = self.resolver.resolve(event, action)
        if resolution is None:
            deferred = self.store.defer_event(
                event_id=event.event_id,
                event_type=event.event_type,
                canonical_action=action.kind,
                reason="identity_unresolved",
                payload=event.raw,
            )
            logger.warning(
                "billing.webhook.deferred",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "action": action.kind,
                    "attempt": deferred.attempts,
                },
            )
            return self._finish(event, "unresolved", action.kind)

        try:
            outcome = self._apply(event, action, resolution.user_id)
        except DuplicateEvent:
            return self._finish(event, "duplicate", action.kind, resolution.user_id, resolution.via)

        self.store.clear_deferred_event(event.event_id)
        return self._finish(event, outcome, action.kind, resolution.user_id, resolution.via)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply(self, event: ProviderEvent, action: CanonicalAction, user_id: str) -> str:
        def attempt() -> str:
            now = self._clock()
            record = self.store.get(user_id)
            if record is None:
                raise NotFoundError(f"Entitlement record not found: {user_id}")

            if self._is_stale_subscription(event, action, record):
                logger.info(
                    "billing.webhook.stale_subscription",
                    extra={"event_id": event.event_id, "user_id": user_id, "action": action.kind},
                )
                if not self.store.record_event(self._processed(event, action.kind, user_id)):
                    raise DuplicateEvent(event.event_id)
                return "ignored"

            self.store.conditional_update(
                user_id,
                record.version,
                lambda current: self._mutate(current, event, action, now),
                processed_event=self._processed(event, action.kind, user_id),
            )
            return "applied"

        return retry_on_conflict(
            attempt,
            max_attempts=self.max_attempts,
            backoff_ms=self.backoff_ms,
            exhausted=conflict_exhausted("billing.webhook.apply"),
            label="billing.webhook.apply",
        )

    def _mutate(
        self,
        record: EntitlementRecord,
        event: ProviderEvent,
        action: CanonicalAction,
        now: datetime,
    ) -> EntitlementRecord:
        customer_id = event.customer_id
        if customer_id and record.provider_customer_id and record.provider_customer_id != customer_id:
            # Only an explicit reassignment may move a linked customer id
            logger.warning(
                "billing.customer_mismatch",
                extra={"event_id": event.event_id, "user_id": record.user_id},
            )

        if isinstance(action, ActivateTier):
            return policy.apply_activation(record, action, now)
        if isinstance(action, UpdateStatus):
            return policy.apply_status_update(record, action)
        if isinstance(action, CancelTier):
            return policy.apply_cancellation(record, action, now)
        raise ValueError(f"cannot apply canonical action {action.kind}")

    @staticmethod
    def _is_stale_subscription(
        event: ProviderEvent, action: CanonicalAction, record: EntitlementRecord
    ) -> bool:
        """A status or cancel event for a subscription the user has already replaced."""
        if not isinstance(action, (UpdateStatus, CancelTier)):
            return False
        subscription_id = event.subscription_id
        return bool(
            subscription_id
            and record.provider_subscription_id
            and record.provider_subscription_id != subscription_id
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _processed(self, event: ProviderEvent, canonical_action: str, user_id: Optional[str]) -> ProcessedWebhookEvent:
        return ProcessedWebhookEvent(
            event_id=event.event_id,
            event_type=event.event_type,
            canonical_action=canonical_action,
            user_id=user_id,
            processed_at=self._clock(),
        )

    def _finish(
        self,
        event: ProviderEvent,
        outcome: str,
        action: str,
        user_id: Optional[str] = None,
        resolved_via: Optional[str] = None,
    ) -> IngestResult:
        logger.info(
            f"billing.webhook.{outcome}",
            extra={
                "event_id": event.event_id,
                "event_type": event.event_type,
                "outcome": outcome,
                "action": action,
                "user_id": user_id,
            },
        )
        return IngestResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome,
            action=action,
            user_id=user_id,
            resolved_via=resolved_via,
        )
