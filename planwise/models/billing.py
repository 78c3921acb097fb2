"""
Billing models: the parsed provider event envelope and the canonical actions
every provider event type is normalized into.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union

from planwise.models.entitlement import BillingPeriod, SubscriptionStatus, Tier


@dataclass(frozen=True)
class ActivateTier:
    tier: Tier
    subscription_id: Optional[str]
    billing_period: Optional[BillingPeriod]
    expires_at: Optional[datetime] = None
    price_id: Optional[str] = None
    kind: str = field(default="activate_tier", init=False)


@dataclass(frozen=True)
class UpdateStatus:
    status: SubscriptionStatus
    kind: str = field(default="update_status", init=False)


@dataclass(frozen=True)
class CancelTier:
    kind: str = field(default="cancel_tier", init=False)


@dataclass(frozen=True)
class Unhandled:
    reason: str
    kind: str = field(default="unhandled", init=False)


CanonicalAction = Union[ActivateTier, UpdateStatus, CancelTier, Unhandled]


def _text(value: Any) -> Optional[str]:
    """Non-empty string payload values; anything else reads as missing."""
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class ProviderEvent:
    """A verified, parsed provider delivery."""
    event_id: str
    event_type: str
    occurred_at: Optional[str]
    data: Dict[str, Any]
    received_at: datetime
    raw: Dict[str, Any]

    @property
    def customer_id(self) -> Optional[str]:
        return _text(self.data.get("customer_id"))

    @property
    def subscription_id(self) -> Optional[str]:
        if self.event_type.startswith("subscription."):
            return _text(self.data.get("id"))
        return _text(self.data.get("subscription_id"))

    @property
    def billing_email(self) -> Optional[str]:
        customer = self.data.get("customer")
        if isinstance(customer, dict) and _text(customer.get("email")):
            return customer["email"]
        return _text(self.data.get("customer_email")) or _text(self.data.get("email"))

    @property
    def correlation_user_id(self) -> Optional[str]:
        """User id echoed back from checkout custom data, when present."""
        custom = self.data.get("custom_data")
        if isinstance(custom, dict):
            return _text(custom.get("user_id")) or _text(custom.get("userId"))
        return None


@dataclass
class IngestResult:
    """Result of ingesting one webhook delivery."""
    event_id: str
    event_type: str
    outcome: str  # applied | duplicate | unresolved | ignored
    action: str
    user_id: Optional[str] = None
    resolved_via: Optional[str] = None
