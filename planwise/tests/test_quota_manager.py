"""
Tests for the daily quota manager: lazy rollover, check-then-consume under
conflicting writers, and the unlimited tier.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from unittest.mock import patch

import pytest

from planwise.core.errors import ConcurrencyConflictError, QuotaBusyError
from planwise.features.entitlements import policy
from planwise.features.entitlements.store import VersionConflict
from planwise.features.quota.service import QuotaManager
from planwise.models.entitlement import UNLIMITED, Tier


def _set_tier(store, clock, user_id, tier):
    record = store.get_or_create(user_id)
    return store.conditional_update(
        user_id, record.version, lambda r: policy.apply_tier_change(r, tier, clock())
    )


def test_free_user_daily_cycle(quota, store, clock):
    """Free user: one action per day, fresh allowance after midnight."""
    store.create_default("user_alice")

    first = quota.check_and_consume("user_alice")
    assert first.allowed is True
    assert first.remaining == 0
    assert first.reset_date == date(2025, 1, 1)

    second = quota.check_and_consume("user_alice")
    assert second.allowed is False
    assert second.remaining == 0
    assert store.get("user_alice").quota_used == 1

    clock.advance(days=1)
    third = quota.check_and_consume("user_alice")
    assert third.allowed is True
    assert third.remaining == 0
    assert third.reset_date == date(2025, 1, 2)

    record = store.get("user_alice")
    assert record.quota_used == 1
    assert record.quota_reset_date == date(2025, 1, 2)


def test_first_call_creates_default_record(quota, store):
    result = quota.check_and_consume("user_new", "new@example.com")

    assert result.allowed is True
    record = store.get("user_new")
    assert record.tier == Tier.FREE
    assert record.email == "new@example.com"
    assert record.quota_used == 1


def test_pro_user_gets_five(quota, store, clock):
    _set_tier(store, clock, "user_pro", Tier.PRO)

    results = [quota.check_and_consume("user_pro") for _ in range(6)]

    assert [r.allowed for r in results] == [True] * 5 + [False]
    assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]
    assert store.get("user_pro").quota_used == 5


def test_denial_does_not_write(quota, store):
    store.create_default("user_alice")
    quota.check_and_consume("user_alice")
    version = store.get("user_alice").version

    assert quota.check_and_consume("user_alice").allowed is False
    assert store.get("user_alice").version == version


def test_pro_plus_concurrent_calls_never_contend(quota, store, clock):
    """100 concurrent calls: all allowed, unlimited, and no write at all."""
    _set_tier(store, clock, "user_plus", Tier.PRO_PLUS)
    version = store.get("user_plus").version

    with patch.object(store, "conditional_update", side_effect=AssertionError("unexpected write")):
        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(lambda _: quota.check_and_consume("user_plus"), range(100)))

    assert all(r.allowed for r in results)
    assert all(r.remaining == UNLIMITED for r in results)
    record = store.get("user_plus")
    assert record.version == version
    assert record.quota_used == 0


def test_pro_concurrent_calls_never_exceed_limit(store, clock):
    """40 real concurrent writers: exactly five allowed, matching the stored count."""
    _set_tier(store, clock, "user_pro", Tier.PRO)
    # Every lost compare-and-set means another consume landed, so 10 attempts suffice
    racing = QuotaManager(store, clock=clock, max_attempts=10, backoff_ms=1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: racing.check_and_consume("user_pro"), range(40)))

    allowed = [r for r in results if r.allowed]
    record = store.get("user_pro")
    assert len(allowed) == 5
    assert record.quota_used == 5
    assert sorted(r.remaining for r in allowed) == [0, 1, 2, 3, 4]
    assert all(r.remaining == 0 for r in results if not r.allowed)

def test_pro_plus_persists_pending_rollover(quota, store, clock):
    _set_tier(store, clock, "user_plus", Tier.PRO_PLUS)
    clock.advance(days=1)

    result = quota.check_and_consume("user_plus")

    assert result.remaining == UNLIMITED
    assert result.reset_date == date(2025, 1, 2)
    assert store.get("user_plus").quota_reset_date == date(2025, 1, 2)


def test_rollover_happens_once_under_race(quota, store, clock):
    """
    A competing caller rolls over and consumes between our read and write.
    Our retry must see its rollover, not reset the day a second time.
    """
    _set_tier(store, clock, "user_pro", Tier.PRO)
    quota.check_and_consume("user_pro")
    clock.advance(days=1)
    today = clock().date()

    real_update = store.conditional_update
    calls = {"n": 0}

    def racing_update(user_id, expected_version, mutation, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            real_update(
                user_id,
                expected_version,
                lambda r: policy.apply_rollover(r, today).model_copy(update={"quota_used": 1}),
            )
        return real_update(user_id, expected_version, mutation, **kwargs)

    with patch.object(store, "conditional_update", side_effect=racing_update):
        result = quota.check_and_consume("user_pro")

    record = store.get("user_pro")
    assert calls["n"] == 2
    assert result.allowed is True
    assert result.remaining == 3
    assert record.quota_used == 2
    assert record.quota_reset_date == today


def test_busy_after_persistent_conflicts(quota, store):
    store.create_default("user_alice")

    with patch.object(store, "conditional_update", side_effect=VersionConflict("user_alice", 1)) as update:
        with pytest.raises(QuotaBusyError) as exc_info:
            quota.check_and_consume("user_alice")

    assert update.call_count == quota.max_attempts
    assert isinstance(exc_info.value, ConcurrencyConflictError)
    assert exc_info.value.status_code == 503
    assert store.get("user_alice").quota_used == 0


def test_downgraded_user_is_clamped(quota, store):
    created = store.create_default("user_alice")
    store.conditional_update("user_alice", created.version, lambda r: r.model_copy(update={"quota_used": 3}))

    record, status = quota.get_status("user_alice")
    assert status.used == 3
    assert status.remaining == 0

    assert quota.check_and_consume("user_alice").allowed is False
    assert store.get("user_alice").quota_used == 3


def test_get_status_rolls_over_and_persists(quota, store, clock):
    store.create_default("user_alice")
    quota.check_and_consume("user_alice")
    clock.advance(days=2)

    record, status = quota.get_status("user_alice")

    assert status.used == 0
    assert status.remaining == 1
    assert status.reset_date == date(2025, 1, 3)
    assert store.get("user_alice").quota_reset_date == date(2025, 1, 3)


def test_get_status_heals_missing_reset_date(quota, store, caplog):
    created = store.create_default("user_alice")
    store.conditional_update(
        "user_alice", created.version, lambda r: r.model_copy(update={"quota_reset_date": None, "quota_used": 1})
    )

    with caplog.at_level(logging.WARNING, logger="planwise.quota"):
        record, status = quota.get_status("user_alice")

    assert record.quota_reset_date == date(2025, 1, 1)
    assert record.quota_used == 0
    assert any(r.getMessage() == "quota.corrupt_record_healed" for r in caplog.records)


def test_force_reset(quota, store):
    store.create_default("user_alice")
    quota.check_and_consume("user_alice")

    record = quota.force_reset("user_alice")

    assert record.quota_used == 0
    assert quota.check_and_consume("user_alice").allowed is True
