"""
Paddle webhook routes.

- POST /api/paddle/webhook: verify, dedup and apply a Paddle event
- GET  /api/paddle/webhook: liveness probe for the endpoint
"""
from fastapi import APIRouter, Depends, Request

from planwise.api.deps import get_raw_body, get_webhook_ingestor
from planwise.core.logging import log_event
from planwise.features.billing.provider import BillingWebhookRejected
from planwise.features.billing.webhooks import WebhookIngestor


router = APIRouter(prefix="/paddle", tags=["billing"])


@router.post("/webhook")
def handle_webhook(
    request: Request,
    body: bytes = Depends(get_raw_body),
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    """
    Handle Paddle webhook events.

    The raw body is verified against the `paddle-signature` header before
    anything is parsed. Duplicates, unresolved identities and unhandled event
    types are all acknowledged with 200 so Paddle stops redelivering.

    Ingestion blocks on the database and on conflict backoff, so the route is
    sync and FastAPI runs it in the worker threadpool.

    Returns:
        {"received": true, "eventId": str, "outcome": str}

    Errors:
        400: Missing signature header, invalid JSON or envelope
        401: Signature mismatch
        503: Conditional writes kept conflicting (Paddle will retry)
    """
    try:
        result = ingestor.ingest(dict(request.headers), body)
    except BillingWebhookRejected as e:
        log_event("warning", "billing.webhook.rejected", error_code=e.code, extra={"reason": e.message})
        raise
    return {"received": True, "eventId": result.event_id, "outcome": result.outcome}


@router.get("/webhook")
def webhook_liveness():
    return {"status": "ok", "endpoint": "paddle-webhook"}
