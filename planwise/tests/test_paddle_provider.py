"""
Tests for Paddle signature verification, envelope parsing, and the mapping of
Paddle event types onto canonical actions.
"""
import json
import logging
from datetime import datetime, timezone

import pytest

from planwise.core.errors import MalformedPayloadError, SignatureInvalidError
from planwise.features.billing.paddle_provider import (
    PaddleProvider,
    add_months,
    parse_signature_header,
    sign_payload,
)
from planwise.models.billing import ActivateTier, CancelTier, ProviderEvent, Unhandled, UpdateStatus
from planwise.models.entitlement import BillingPeriod, SubscriptionStatus, Tier

PRO_MONTHLY = "pri_01k4afv37xb0qtqgf1x0bnmwf7"
PRO_PLUS_YEARLY = "pri_01k4arhcs2wsvr1f0rfhb8z550"


def _event(clock, event_type, data):
    return ProviderEvent(
        event_id="evt_1", event_type=event_type, occurred_at=None, data=data, received_at=clock(), raw={},
    )


def _items(price_id):
    return [{"price": {"id": price_id}, "quantity": 1}]


# ----------------------------------------------------------------------------
# Verification
# ----------------------------------------------------------------------------

def test_valid_signature_parses_envelope(provider, make_delivery, clock):
    headers, body = make_delivery("evt_1", "transaction.completed", {"customer_id": "ctm_1"})

    event = provider.verify_and_parse(headers, body)

    assert event.event_id == "evt_1"
    assert event.event_type == "transaction.completed"
    assert event.customer_id == "ctm_1"
    assert event.received_at == clock()


def test_header_lookup_is_case_insensitive(provider, make_delivery):
    headers, body = make_delivery("evt_1", "transaction.completed")
    headers = {"Paddle-Signature": headers["paddle-signature"]}

    assert provider.verify_and_parse(headers, body).event_id == "evt_1"


def test_missing_header_is_malformed(provider, make_delivery):
    _, body = make_delivery("evt_1", "transaction.completed")

    with pytest.raises(MalformedPayloadError):
        provider.verify_and_parse({}, body)


def test_wrong_secret_is_rejected(provider, make_delivery):
    headers, body = make_delivery("evt_1", "transaction.completed", secret="someone_else")

    with pytest.raises(SignatureInvalidError):
        provider.verify_and_parse(headers, body)


def test_tampered_body_is_rejected(provider, make_delivery):
    headers, body = make_delivery("evt_1", "transaction.completed", {"customer_id": "ctm_1"})
    tampered = body.replace(b"ctm_1", b"ctm_2")

    with pytest.raises(SignatureInvalidError):
        provider.verify_and_parse(headers, tampered)


def test_unparseable_header_is_rejected(provider, make_delivery):
    _, body = make_delivery("evt_1", "transaction.completed")

    with pytest.raises(SignatureInvalidError):
        provider.verify_and_parse({"paddle-signature": "ts=1735732800"}, body)


def test_missing_secret_rejects_everything(clock, make_delivery):
    provider = PaddleProvider(webhook_secret="", tolerance_seconds=0, price_catalog={}, clock=clock)
    headers, body = make_delivery("evt_1", "transaction.completed")

    with pytest.raises(SignatureInvalidError):
        provider.verify_and_parse(headers, body)


def test_rotated_secret_any_h1_matches(provider):
    body = b'{"event_id":"evt_1","event_type":"transaction.completed","data":{}}'
    good = sign_payload(provider.webhook_secret, "1735732800", body)
    header = f"ts=1735732800;h1={'0' * 64};h1={good}"

    assert provider.verify_and_parse({"paddle-signature": header}, body).event_id == "evt_1"


def test_timestamp_tolerance(clock, make_delivery, provider):
    strict = PaddleProvider(
        webhook_secret=provider.webhook_secret, tolerance_seconds=300, price_catalog={}, clock=clock,
    )
    now_ts = int(clock().timestamp())

    fresh_headers, fresh_body = make_delivery("evt_1", "transaction.completed", ts=now_ts - 60)
    assert strict.verify_and_parse(fresh_headers, fresh_body).event_id == "evt_1"

    old_headers, old_body = make_delivery("evt_2", "transaction.completed", ts=now_ts - 3600)
    with pytest.raises(SignatureInvalidError):
        strict.verify_and_parse(old_headers, old_body)


def test_invalid_json_is_malformed(provider):
    body = b"{not json"
    header = f"ts=1735732800;h1={sign_payload(provider.webhook_secret, '1735732800', body)}"

    with pytest.raises(MalformedPayloadError):
        provider.verify_and_parse({"paddle-signature": header}, body)


def test_missing_event_id_is_malformed(provider):
    body = json.dumps({"event_type": "transaction.completed", "data": {}}).encode()
    header = f"ts=1735732800;h1={sign_payload(provider.webhook_secret, '1735732800', body)}"

    with pytest.raises(MalformedPayloadError):
        provider.verify_and_parse({"paddle-signature": header}, body)


def test_parse_signature_header():
    parsed = parse_signature_header("ts=1;h1=ABC;h1=def")
    assert parsed.ts == "1"
    assert parsed.h1 == ["abc", "def"]
    assert parse_signature_header("h1=abc") is None
    assert parse_signature_header("garbage") is None


# ----------------------------------------------------------------------------
# Normalization
# ----------------------------------------------------------------------------

def test_transaction_completed_activates_priced_tier(provider, clock):
    event = _event(clock, "transaction.completed", {
        "customer_id": "ctm_1", "subscription_id": "sub_1", "items": _items(PRO_MONTHLY),
    })

    action = provider.normalize(event)

    assert isinstance(action, ActivateTier)
    assert action.tier == Tier.PRO
    assert action.billing_period == BillingPeriod.MONTHLY
    assert action.subscription_id == "sub_1"
    assert action.price_id == PRO_MONTHLY
    assert action.expires_at == datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)


def test_subscription_created_yearly_pro_plus(provider, clock):
    event = _event(clock, "subscription.created", {"id": "sub_9", "items": [{"price_id": PRO_PLUS_YEARLY}]})

    action = provider.normalize(event)

    assert action.tier == Tier.PRO_PLUS
    assert action.billing_period == BillingPeriod.YEARLY
    assert action.subscription_id == "sub_9"
    assert action.expires_at == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_unknown_price_falls_back_to_pro(provider, clock, caplog):
    event = _event(clock, "transaction.paid", {
        "items": _items("pri_unknown"), "custom_data": {"billingPeriod": "yearly"},
    })

    with caplog.at_level(logging.WARNING, logger="planwise.billing"):
        action = provider.normalize(event)

    assert action.tier == Tier.PRO
    assert action.billing_period == BillingPeriod.YEARLY
    assert any(r.getMessage() == "billing.unknown_price" for r in caplog.records)


def test_price_catalog_overrides_from_settings(clock, monkeypatch):
    from planwise.core.config import settings

    monkeypatch.setattr(settings, "PADDLE_PRICE_PRO_PLUS_MONTHLY", "pri_sandbox_plus")
    provider = PaddleProvider(webhook_secret="x", clock=clock)
    event = _event(clock, "transaction.completed", {"items": _items("pri_sandbox_plus")})

    assert provider.normalize(event).tier == Tier.PRO_PLUS


def test_activation_without_items_is_unhandled(provider, clock):
    assert isinstance(provider.normalize(_event(clock, "transaction.completed", {})), Unhandled)


@pytest.mark.parametrize("items", [
    [{"price": {"id": ["pri_a", "pri_b"]}}],
    [{"price": {"id": {"nested": True}}}],
    [{"price_id": 42}],
])
def test_non_string_price_id_is_treated_as_missing(provider, clock, items):
    action = provider.normalize(_event(clock, "transaction.completed", {"items": items}))
    assert isinstance(action, Unhandled)


def test_non_string_identifiers_read_as_missing(clock):
    event = _event(clock, "transaction.paid", {
        "customer_id": ["ctm_1"],
        "subscription_id": {"id": "sub_1"},
        "custom_data": {"user_id": 7},
        "customer": {"email": ["a@example.com"]},
    })

    assert event.customer_id is None
    assert event.subscription_id is None
    assert event.correlation_user_id is None
    assert event.billing_email is None


def test_subscription_updated_status_mapping(provider, clock):
    canceled = provider.normalize(_event(clock, "subscription.updated", {"id": "sub_1", "status": "canceled"}))
    past_due = provider.normalize(_event(clock, "subscription.updated", {"id": "sub_1", "status": "past_due"}))
    active = provider.normalize(_event(clock, "subscription.updated", {"id": "sub_1", "status": "active"}))
    weird = provider.normalize(_event(clock, "subscription.updated", {"id": "sub_1", "status": "mystery"}))

    assert isinstance(canceled, CancelTier)
    assert past_due == UpdateStatus(status=SubscriptionStatus.PAST_DUE)
    assert active == UpdateStatus(status=SubscriptionStatus.ACTIVE)
    assert isinstance(weird, Unhandled)


def test_subscription_updated_with_price_is_plan_change(provider, clock):
    action = provider.normalize(_event(clock, "subscription.updated", {
        "id": "sub_1", "status": "active", "items": _items(PRO_PLUS_YEARLY),
    }))

    assert isinstance(action, ActivateTier)
    assert action.tier == Tier.PRO_PLUS
    assert action.subscription_id == "sub_1"


@pytest.mark.parametrize("event_type", [
    "subscription.past_due", "transaction.past_due", "transaction.payment_failed",
])
def test_past_due_events(provider, clock, event_type):
    action = provider.normalize(_event(clock, event_type, {"id": "sub_1"}))
    assert action == UpdateStatus(status=SubscriptionStatus.PAST_DUE)


def test_subscription_canceled(provider, clock):
    assert isinstance(provider.normalize(_event(clock, "subscription.canceled", {"id": "sub_1"})), CancelTier)


def test_pre_payment_transactions_are_unhandled(provider, clock):
    action = provider.normalize(_event(clock, "transaction.created", {"items": _items(PRO_MONTHLY)}))
    assert isinstance(action, Unhandled)


def test_payment_like_fallback(provider, clock):
    with_email = provider.normalize(_event(clock, "payment.succeeded", {"customer": {"email": "a@example.com"}}))
    bare = provider.normalize(_event(clock, "payment.succeeded", {}))

    assert isinstance(with_email, ActivateTier)
    assert with_email.tier == Tier.PRO
    assert isinstance(bare, Unhandled)


def test_unrelated_event_is_unhandled(provider, clock):
    action = provider.normalize(_event(clock, "customer.created", {"id": "ctm_1"}))
    assert isinstance(action, Unhandled)
    assert action.kind == "unhandled"


def test_add_months_clamps_month_end():
    assert add_months(datetime(2025, 1, 31, tzinfo=timezone.utc), 1) == datetime(2025, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2024, 2, 29, tzinfo=timezone.utc), 12) == datetime(2025, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2025, 12, 15, tzinfo=timezone.utc), 1) == datetime(2026, 1, 15, tzinfo=timezone.utc)
