"""
FastAPI dependencies for the services built in the app lifespan.

Services live on `app.state`; routes never construct their own.
"""
from fastapi import Request

from planwise.features.billing.admin_service import AdminBillingService
from planwise.features.billing.webhooks import WebhookIngestor
from planwise.features.quota.service import QuotaManager


def get_quota_manager(request: Request) -> QuotaManager:
    return request.app.state.quota_manager


def get_webhook_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.webhook_ingestor


def get_admin_service(request: Request) -> AdminBillingService:
    return request.app.state.admin_billing_service


async def get_raw_body(request: Request) -> bytes:
    """Raw request body, read on the event loop so sync routes can verify signatures."""
    return await request.body()
