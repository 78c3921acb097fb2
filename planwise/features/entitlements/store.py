"""
planwise/features/entitlements/store.py

Entitlement store: the only write path for entitlement records.

Every mutation goes through `conditional_update`, an optimistic
compare-and-set on the record's `version` column:

    UPDATE entitlements SET ..., version = version + 1
    WHERE user_id = :user_id AND version = :expected_version

Webhook dedup rows are written in the same transaction as the mutation they
belong to, so an event is either fully applied and recorded, or neither.
"""

import logging
import random
import time
from datetime import date, datetime, timezone
from typing import Any, Callable, ContextManager, Dict, List, Optional, TypeVar

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from planwise.core.database import (
    deferred_webhook_events,
    entitlements,
    get_db_session,
    processed_webhook_events,
)
from planwise.core.errors import ConcurrencyConflictError, CustomerIdConflictError, NotFoundError
from planwise.models.entitlement import (
    BillingPeriod,
    DeferredWebhookEvent,
    EntitlementRecord,
    ProcessedWebhookEvent,
    SubscriptionStatus,
    Tier,
    utc_now,
)

logger = logging.getLogger("planwise.entitlements")

T = TypeVar("T")

Mutation = Callable[[EntitlementRecord], EntitlementRecord]

# Columns a mutation may not change
_IMMUTABLE_FIELDS = ("user_id", "version", "created_at", "updated_at")


class VersionConflict(Exception):
    """The stored version no longer matches the caller's expected version."""

    def __init__(self, user_id: str, expected_version: int):
        super().__init__(f"version conflict for {user_id} (expected {expected_version})")
        self.user_id = user_id
        self.expected_version = expected_version


class DuplicateEvent(Exception):
    """A processed-event row with this event id already exists."""

    def __init__(self, event_id: str):
        super().__init__(f"event already processed: {event_id}")
        self.event_id = event_id


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _row_to_record(row) -> EntitlementRecord:
    return EntitlementRecord(
        user_id=row.user_id,
        email=row.email,
        tier=Tier(row.tier),
        status=SubscriptionStatus(row.status),
        provider_customer_id=row.provider_customer_id,
        provider_subscription_id=row.provider_subscription_id,
        quota_used=max(0, row.quota_used or 0),
        quota_reset_date=row.quota_reset_date,
        tier_changed_at=_as_utc(row.tier_changed_at),
        billing_period=BillingPeriod(row.billing_period) if row.billing_period else None,
        subscription_expires_at=_as_utc(row.subscription_expires_at),
        version=row.version,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _record_to_values(record: EntitlementRecord) -> Dict[str, Any]:
    return {
        "email": record.email,
        "tier": record.tier.value,
        "status": record.status.value,
        "provider_customer_id": record.provider_customer_id,
        "provider_subscription_id": record.provider_subscription_id,
        "quota_used": record.quota_used,
        "quota_reset_date": record.quota_reset_date,
        "tier_changed_at": record.tier_changed_at,
        "billing_period": record.billing_period.value if record.billing_period else None,
        "subscription_expires_at": record.subscription_expires_at,
    }


def _deferred_from_row(row) -> DeferredWebhookEvent:
    return DeferredWebhookEvent(
        event_id=row.event_id,
        event_type=row.event_type,
        canonical_action=row.canonical_action,
        reason=row.reason,
        payload=row.payload,
        attempts=row.attempts,
        first_seen_at=_as_utc(row.first_seen_at),
        last_seen_at=_as_utc(row.last_seen_at),
    )


def retry_on_conflict(
    operation: Callable[[], T],
    *,
    max_attempts: int,
    backoff_ms: int,
    exhausted: Callable[[int], Exception],
    label: str,
) -> T:
    """
    Run `operation` until it stops raising VersionConflict.

    Each attempt must reload the record it mutates. Sleeps
    `backoff_ms * attempt` plus jitter between attempts; raises
    `exhausted(attempts)` when the budget runs out.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except VersionConflict as e:
            logger.info(
                f"{label}.conflict",
                extra={"user_id": e.user_id, "attempt": attempt},
            )
            if attempt == attempts:
                break
            delay_ms = backoff_ms * attempt + random.uniform(0, backoff_ms)
            time.sleep(delay_ms / 1000.0)
    logger.warning(f"{label}.exhausted", extra={"attempt": attempts})
    raise exhausted(attempts)


class EntitlementStore:
    """SQL-backed entitlement store."""

    def __init__(
        self,
        session_scope: Callable[[], ContextManager[Session]] = get_db_session,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_scope = session_scope
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        with self._session_scope() as session:
            row = session.execute(
                select(entitlements).where(entitlements.c.user_id == user_id)
            ).first()
        return _row_to_record(row) if row else None

    def find_by_customer_id(self, customer_id: str) -> Optional[EntitlementRecord]:
        with self._session_scope() as session:
            row = session.execute(
                select(entitlements).where(entitlements.c.provider_customer_id == customer_id)
            ).first()
        return _row_to_record(row) if row else None

    def find_by_subscription_id(self, subscription_id: str) -> Optional[EntitlementRecord]:
        with self._session_scope() as session:
            row = session.execute(
                select(entitlements)
                .where(entitlements.c.provider_subscription_id == subscription_id)
                .order_by(entitlements.c.updated_at.desc())
                .limit(1)
            ).first()
        return _row_to_record(row) if row else None

    def find_by_email(self, email: str) -> Optional[EntitlementRecord]:
        with self._session_scope() as session:
            row = session.execute(
                select(entitlements)
                .where(entitlements.c.email == email)
                .order_by(entitlements.c.updated_at.desc())
                .limit(1)
            ).first()
        return _row_to_record(row) if row else None

    def most_recent_unlinked(self, limit: int = 1) -> List[EntitlementRecord]:
        """Most recently updated records with no provider customer id."""
        with self._session_scope() as session:
            rows = session.execute(
                select(entitlements)
                .where(entitlements.c.provider_customer_id.is_(None))
                .order_by(entitlements.c.updated_at.desc())
                .limit(limit)
            ).all()
        return [_row_to_record(row) for row in rows]

    def stale_records(self, today: date, limit: int = 50) -> List[EntitlementRecord]:
        """Records whose quota day is behind `today` or missing."""
        with self._session_scope() as session:
            rows = session.execute(
                select(entitlements)
                .where(
                    (entitlements.c.quota_reset_date.is_(None))
                    | (entitlements.c.quota_reset_date < today)
                )
                .order_by(entitlements.c.updated_at.desc())
                .limit(limit)
            ).all()
        return [_row_to_record(row) for row in rows]

    def over_limit_records(self, limits: Dict[Tier, int], limit: int = 50) -> List[EntitlementRecord]:
        """Records holding more usage than their tier allows (left by downgrades)."""
        conditions = [
            and_(entitlements.c.tier == tier.value, entitlements.c.quota_used > tier_limit)
            for tier, tier_limit in limits.items()
        ]
        if not conditions:
            return []
        clause = conditions[0]
        for condition in conditions[1:]:
            clause = clause | condition
        with self._session_scope() as session:
            rows = session.execute(
                select(entitlements)
                .where(clause)
                .order_by(entitlements.c.updated_at.desc())
                .limit(limit)
            ).all()
        return [_row_to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_default(self, user_id: str, email: Optional[str] = None) -> EntitlementRecord:
        """
        Create the default (free, zero usage) record. Idempotent: an existing
        record is returned unchanged.
        """
        existing = self.get(user_id)
        if existing is not None:
            return existing

        now = self._clock()
        try:
            with self._session_scope() as session:
                session.execute(
                    insert(entitlements).values(
                        user_id=user_id,
                        email=email,
                        tier=Tier.FREE.value,
                        status=SubscriptionStatus.ACTIVE.value,
                        quota_used=0,
                        quota_reset_date=now.date(),
                        version=1,
                        created_at=now,
                        updated_at=now,
                    )
                )
            logger.info("entitlements.created", extra={"user_id": user_id})
        except IntegrityError:
            # Lost the insert race; the winner's row is the record
            logger.info("entitlements.create_race", extra={"user_id": user_id})

        record = self.get(user_id)
        if record is None:
            raise NotFoundError(f"Entitlement record missing after create: {user_id}")
        return record

    def get_or_create(self, user_id: str, email: Optional[str] = None) -> EntitlementRecord:
        return self.get(user_id) or self.create_default(user_id, email)

    def conditional_update(
        self,
        user_id: str,
        expected_version: int,
        mutation: Mutation,
        *,
        processed_event: Optional[ProcessedWebhookEvent] = None,
        session: Optional[Session] = None,
    ) -> EntitlementRecord:
        """
        Apply `mutation` to the record iff its version is `expected_version`.

        With `session`, the write joins the caller's transaction and commits
        with it; otherwise it runs in a transaction of its own.

        Raises:
            NotFoundError: no record for user_id
            VersionConflict: version moved on; nothing was written
            DuplicateEvent: processed_event was already recorded; nothing was written
        """
        if session is not None:
            return self._conditional_write(session, user_id, expected_version, mutation, processed_event)
        with self._session_scope() as scoped:
            return self._conditional_write(scoped, user_id, expected_version, mutation, processed_event)

    def _conditional_write(
        self,
        session: Session,
        user_id: str,
        expected_version: int,
        mutation: Mutation,
        processed_event: Optional[ProcessedWebhookEvent],
    ) -> EntitlementRecord:
        row = session.execute(
            select(entitlements).where(entitlements.c.user_id == user_id)
        ).first()
        if row is None:
            raise NotFoundError(f"Entitlement record not found: {user_id}")

        current = _row_to_record(row)
        if current.version != expected_version:
            raise VersionConflict(user_id, expected_version)

        proposed = mutation(current)
        for field in _IMMUTABLE_FIELDS:
            if getattr(proposed, field) != getattr(current, field):
                raise ValueError(f"mutation may not change {field}")

        if processed_event is not None:
            try:
                session.execute(
                    insert(processed_webhook_events).values(
                        event_id=processed_event.event_id,
                        event_type=processed_event.event_type,
                        canonical_action=processed_event.canonical_action,
                        user_id=processed_event.user_id,
                        processed_at=processed_event.processed_at,
                    )
                )
            except IntegrityError:
                raise DuplicateEvent(processed_event.event_id)

        now = self._clock()
        values = _record_to_values(proposed)
        values["version"] = expected_version + 1
        values["updated_at"] = now

        try:
            result = session.execute(
                update(entitlements)
                .where(entitlements.c.user_id == user_id)
                .where(entitlements.c.version == expected_version)
                .values(**values)
            )
        except IntegrityError:
            # Unique provider_customer_id held by another record
            raise CustomerIdConflictError(
                f"Provider customer id already linked to another user: {proposed.provider_customer_id}"
            )
        if result.rowcount != 1:
            raise VersionConflict(user_id, expected_version)

        return proposed.model_copy(update={"version": expected_version + 1, "updated_at": now})

    def reassign_customer(self, customer_id: str, to_user_id: str) -> EntitlementRecord:
        """
        Move a provider customer id to `to_user_id`, clearing it from its
        current holder. The only path allowed to overwrite a linked id.

        Both conditional writes share one transaction: the link moves, or
        neither record changes.
        """
        with self._session_scope() as session:
            target_row = session.execute(
                select(entitlements).where(entitlements.c.user_id == to_user_id)
            ).first()
            if target_row is None:
                raise NotFoundError(f"Entitlement record not found: {to_user_id}")
            target = _row_to_record(target_row)

            holder_row = session.execute(
                select(entitlements).where(entitlements.c.provider_customer_id == customer_id)
            ).first()
            if holder_row is not None and holder_row.user_id == to_user_id:
                return target

            previous_user_id = holder_row.user_id if holder_row is not None else None
            if holder_row is not None:
                self.conditional_update(
                    holder_row.user_id,
                    holder_row.version,
                    lambda r: r.model_copy(update={"provider_customer_id": None}),
                    session=session,
                )
            moved = self.conditional_update(
                to_user_id,
                target.version,
                lambda r: r.model_copy(update={"provider_customer_id": customer_id}),
                session=session,
            )

        logger.info(
            "entitlements.customer_reassigned",
            extra={"user_id": to_user_id, "previous_user_id": previous_user_id},
        )
        return moved

    # ------------------------------------------------------------------
    # Webhook bookkeeping
    # ------------------------------------------------------------------

    def has_processed_event(self, event_id: str) -> bool:
        with self._session_scope() as session:
            row = session.execute(
                select(processed_webhook_events.c.event_id).where(
                    processed_webhook_events.c.event_id == event_id
                )
            ).first()
        return row is not None

    def record_event(self, event: ProcessedWebhookEvent) -> bool:
        """Record an event that mutates nothing. False if it was already recorded."""
        try:
            with self._session_scope() as session:
                session.execute(
                    insert(processed_webhook_events).values(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        canonical_action=event.canonical_action,
                        user_id=event.user_id,
                        processed_at=event.processed_at,
                    )
                )
        except IntegrityError:
            return False
        return True

    def defer_event(
        self,
        event_id: str,
        event_type: str,
        canonical_action: str,
        reason: str,
        payload: Dict[str, Any],
    ) -> DeferredWebhookEvent:
        """Store (or bump) an unresolved event for follow-up."""
        now = self._clock()
        with self._session_scope() as session:
            row = session.execute(
                select(deferred_webhook_events).where(deferred_webhook_events.c.event_id == event_id)
            ).first()
            if row is None:
                session.execute(
                    insert(deferred_webhook_events).values(
                        event_id=event_id,
                        event_type=event_type,
                        canonical_action=canonical_action,
                        reason=reason,
                        payload=payload,
                        attempts=1,
                        first_seen_at=now,
                        last_seen_at=now,
                    )
                )
            else:
                session.execute(
                    update(deferred_webhook_events)
                    .where(deferred_webhook_events.c.event_id == event_id)
                    .values(
                        attempts=deferred_webhook_events.c.attempts + 1,
                        last_seen_at=now,
                        reason=reason,
                    )
                )
            row = session.execute(
                select(deferred_webhook_events).where(deferred_webhook_events.c.event_id == event_id)
            ).first()
        return _deferred_from_row(row)

    def clear_deferred_event(self, event_id: str) -> None:
        with self._session_scope() as session:
            session.execute(
                deferred_webhook_events.delete().where(deferred_webhook_events.c.event_id == event_id)
            )

    def list_deferred_events(self, limit: int = 50) -> List[DeferredWebhookEvent]:
        with self._session_scope() as session:
            rows = session.execute(
                select(deferred_webhook_events)
                .order_by(deferred_webhook_events.c.last_seen_at.desc())
                .limit(limit)
            ).all()
        return [_deferred_from_row(row) for row in rows]


def conflict_exhausted(label: str) -> Callable[[int], Exception]:
    """Factory for the transient error raised after retry exhaustion."""

    def _build(attempts: int) -> Exception:
        return ConcurrencyConflictError(f"{label}: conflicting concurrent updates after {attempts} attempts")

    return _build
