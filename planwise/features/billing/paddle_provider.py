"""
Paddle billing provider implementation.

Implements the BillingProvider protocol for Paddle Billing webhooks:
- `paddle-signature: ts=<unix>;h1=<hex>` verification
  (HMAC-SHA256 over "<ts>:<raw body>", constant-time compare)
- envelope parsing ({event_type, event_id, occurred_at, data})
- mapping Paddle event types and price ids onto canonical actions
"""
import calendar
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from planwise.core.config import settings
from planwise.core.errors import MalformedPayloadError, SignatureInvalidError
from planwise.models.billing import (
    ActivateTier,
    CanonicalAction,
    CancelTier,
    ProviderEvent,
    Unhandled,
    UpdateStatus,
)
from planwise.models.entitlement import BillingPeriod, SubscriptionStatus, Tier, utc_now

logger = logging.getLogger("planwise.billing")

SIGNATURE_HEADER = "paddle-signature"

# Live catalog; PADDLE_PRICE_* settings take precedence
DEFAULT_PRICE_CATALOG: Dict[str, Tuple[Tier, BillingPeriod]] = {
    "pri_01k4afv37xb0qtqgf1x0bnmwf7": (Tier.PRO, BillingPeriod.MONTHLY),
    "pri_01k4arbvr91qy4gj4tk0pnw515": (Tier.PRO, BillingPeriod.YEARLY),
    "pri_01k4ar4ppv145d5mxq627zwnss": (Tier.PRO_PLUS, BillingPeriod.MONTHLY),
    "pri_01k4arhcs2wsvr1f0rfhb8z550": (Tier.PRO_PLUS, BillingPeriod.YEARLY),
}

# Unrecognized price ids fall back to the lowest paid tier
FALLBACK_TIER = Tier.PRO

ACTIVATION_EVENTS = {
    "transaction.completed",
    "transaction.paid",
    "subscription.created",
    "subscription.activated",
}

PAST_DUE_EVENTS = {
    "subscription.past_due",
    "transaction.past_due",
    "transaction.payment_failed",
}

# Transaction lifecycle steps that happen before any money moves
PRE_PAYMENT_EVENTS = {
    "transaction.created",
    "transaction.ready",
    "transaction.updated",
    "transaction.billed",
    "transaction.canceled",
}

_SUBSCRIPTION_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
}


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-aware month addition, clamping to the last day of the month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def expiry_for(period: BillingPeriod, received_at: datetime) -> datetime:
    return add_months(received_at, 12 if period == BillingPeriod.YEARLY else 1)


def build_price_catalog() -> Dict[str, Tuple[Tier, BillingPeriod]]:
    catalog = dict(DEFAULT_PRICE_CATALOG)
    overrides = {
        settings.PADDLE_PRICE_PRO_MONTHLY: (Tier.PRO, BillingPeriod.MONTHLY),
        settings.PADDLE_PRICE_PRO_YEARLY: (Tier.PRO, BillingPeriod.YEARLY),
        settings.PADDLE_PRICE_PRO_PLUS_MONTHLY: (Tier.PRO_PLUS, BillingPeriod.MONTHLY),
        settings.PADDLE_PRICE_PRO_PLUS_YEARLY: (Tier.PRO_PLUS, BillingPeriod.YEARLY),
    }
    for price_id, mapping in overrides.items():
        if price_id:
            catalog[price_id] = mapping
    return catalog


@dataclass(frozen=True)
class SignatureHeader:
    ts: str
    h1: List[str]


def parse_signature_header(header: str) -> Optional[SignatureHeader]:
    """Parse `ts=...;h1=...` (h1 may repeat during secret rotation)."""
    ts = None
    h1: List[str] = []
    for part in header.split(";"):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "ts":
            ts = value
        elif key == "h1" and value:
            h1.append(value.lower())
    if not ts or not h1:
        return None
    return SignatureHeader(ts=ts, h1=h1)


def sign_payload(secret: str, ts: str, body: bytes) -> str:
    """HMAC-SHA256 hex digest over "<ts>:<raw body>"."""
    signed_content = f"{ts}:".encode() + body
    return hmac.new(secret.encode(), signed_content, hashlib.sha256).hexdigest()


def _first_price_id(data: Dict[str, Any]) -> Optional[str]:
    items = data.get("items") or []
    if not isinstance(items, list) or not items:
        return None
    item = items[0] if isinstance(items[0], dict) else {}
    price = item.get("price")
    price_id = price.get("id") if isinstance(price, dict) else None
    if not price_id:
        price_id = item.get("price_id")
    # Anything but a non-empty string is treated as missing
    if isinstance(price_id, str) and price_id:
        return price_id
    return None


class PaddleProvider:
    """Paddle implementation of BillingProvider protocol."""

    name = "paddle"

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        price_catalog: Optional[Dict[str, Tuple[Tier, BillingPeriod]]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            webhook_secret: Paddle notification secret (defaults to PADDLE_WEBHOOK_SECRET)
            tolerance_seconds: max signature age; 0 disables the check
            price_catalog: price id -> (tier, billing period)
            clock: source of "now" for receipt time and signature age
        """
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.PADDLE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else settings.PADDLE_WEBHOOK_TOLERANCE_SECONDS
        )
        self.price_catalog = price_catalog if price_catalog is not None else build_price_catalog()
        self._clock = clock

    # ------------------------------------------------------------------
    # Verification and parsing
    # ------------------------------------------------------------------

    def verify_signature(self, signature_header: str, body: bytes) -> None:
        if not self.webhook_secret:
            # Never fall through to an unverified path
            logger.error("billing.webhook.secret_missing")
            raise SignatureInvalidError("Webhook secret not configured")

        parsed = parse_signature_header(signature_header)
        if parsed is None:
            raise SignatureInvalidError("Unparseable signature header")

        if self.tolerance_seconds and self.tolerance_seconds > 0:
            try:
                ts = int(parsed.ts)
            except ValueError:
                raise SignatureInvalidError("Invalid signature timestamp")
            age = abs(int(self._clock().timestamp()) - ts)
            if age > self.tolerance_seconds:
                raise SignatureInvalidError("Signature timestamp outside tolerance")

        expected = sign_payload(self.webhook_secret, parsed.ts, body)
        if not any(hmac.compare_digest(expected, candidate) for candidate in parsed.h1):
            raise SignatureInvalidError("Invalid signature")

    def verify_and_parse(self, headers: Mapping[str, str], body: bytes) -> ProviderEvent:
        """Verify Paddle webhook signature and parse the envelope."""
        lowered = {k.lower(): v for k, v in headers.items()}
        signature_header = lowered.get(SIGNATURE_HEADER)
        if not signature_header:
            raise MalformedPayloadError("Missing paddle-signature header")

        self.verify_signature(signature_header, body)

        try:
            payload = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedPayloadError(f"Invalid JSON: {e}")

        if not isinstance(payload, dict):
            raise MalformedPayloadError("Webhook body must be a JSON object")
        event_id = payload.get("event_id")
        event_type = payload.get("event_type")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedPayloadError("Missing event_id")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedPayloadError("Missing event_type")
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise MalformedPayloadError("data must be an object")

        return ProviderEvent(
            event_id=event_id,
            event_type=event_type,
            occurred_at=payload.get("occurred_at"),
            data=data,
            received_at=self._clock(),
            raw=payload,
        )

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def tier_for_price(self, price_id: Optional[str], event: ProviderEvent) -> Tuple[Tier, BillingPeriod]:
        if price_id and price_id in self.price_catalog:
            return self.price_catalog[price_id]
        logger.warning(
            "billing.unknown_price",
            extra={"event_id": event.event_id, "event_type": event.event_type, "price_id": price_id},
        )
        custom = event.data.get("custom_data")
        period = BillingPeriod.MONTHLY
        if isinstance(custom, dict) and custom.get("billingPeriod") == BillingPeriod.YEARLY.value:
            period = BillingPeriod.YEARLY
        return FALLBACK_TIER, period

    def _activation(self, event: ProviderEvent, price_id: Optional[str]) -> ActivateTier:
        tier, period = self.tier_for_price(price_id, event)
        return ActivateTier(
            tier=tier,
            subscription_id=event.subscription_id,
            billing_period=period,
            expires_at=expiry_for(period, event.received_at),
            price_id=price_id,
        )

    def normalize(self, event: ProviderEvent) -> CanonicalAction:
        event_type = event.event_type
        price_id = _first_price_id(event.data)

        if event_type in ACTIVATION_EVENTS:
            if price_id is None:
                return Unhandled(reason="activation event without line items")
            return self._activation(event, price_id)

        if event_type == "subscription.updated":
            raw_status = str(event.data.get("status") or "").lower()
            if raw_status == "canceled":
                return CancelTier()
            status = _SUBSCRIPTION_STATUS_MAP.get(raw_status)
            if status is None:
                return Unhandled(reason=f"unknown subscription status: {raw_status or '<missing>'}")
            if status == SubscriptionStatus.ACTIVE and price_id is not None:
                # Plan change or renewal: tier follows the current price
                return self._activation(event, price_id)
            return UpdateStatus(status=status)

        if event_type == "subscription.canceled":
            return CancelTier()

        if event_type in PAST_DUE_EVENTS:
            return UpdateStatus(status=SubscriptionStatus.PAST_DUE)

        if event_type in PRE_PAYMENT_EVENTS:
            return Unhandled(reason="pre-payment transaction lifecycle event")

        if "transaction" in event_type or "payment" in event_type:
            if price_id is not None or event.billing_email:
                logger.info(
                    "billing.payment_fallback",
                    extra={"event_id": event.event_id, "event_type": event_type},
                )
                return self._activation(event, price_id)
            return Unhandled(reason="payment-like event without price or billing email")

        return Unhandled(reason=f"unhandled event type: {event_type}")
