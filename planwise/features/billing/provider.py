"""
Billing provider protocol.

Defines the interface for payment providers (Paddle today). A provider owns
everything provider-specific: signature verification, payload parsing, and
mapping its event vocabulary onto the canonical actions. Business logic only
ever sees ProviderEvent and CanonicalAction.
"""
from typing import Protocol, Mapping

from planwise.core.errors import MalformedPayloadError, SignatureInvalidError
from planwise.models.billing import CanonicalAction, ProviderEvent


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Webhook signature verification
    - Payload parsing
    - Normalization into canonical actions
    """

    name: str

    def verify_and_parse(self, headers: Mapping[str, str], body: bytes) -> ProviderEvent:
        """
        Verify webhook signature and parse the event envelope.

        Args:
            headers: HTTP headers (must include the signature header)
            body: Raw webhook body, exactly as received

        Returns:
            Parsed provider event

        Raises:
            MalformedPayloadError: missing signature header or invalid JSON
            SignatureInvalidError: signature does not match
        """
        ...

    def normalize(self, event: ProviderEvent) -> CanonicalAction:
        """
        Map a provider event onto exactly one canonical action.

        Unknown event types map to Unhandled; this never raises for an
        unrecognized type.
        """
        ...


# Re-exported so callers can catch provider failures from one place
BillingWebhookRejected = (MalformedPayloadError, SignatureInvalidError)
