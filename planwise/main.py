import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

# Load env from planwise/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from planwise.api import admin_billing, billing, health, subscription  # noqa: E402
from planwise.core.config import settings, validate_config  # noqa: E402
from planwise.core.database import create_all_tables  # noqa: E402
from planwise.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from planwise.core.logging import configure_logging  # noqa: E402
from planwise.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from planwise.features.billing.admin_service import AdminBillingService  # noqa: E402
from planwise.features.billing.identity import IdentityResolver  # noqa: E402
from planwise.features.billing.paddle_provider import PaddleProvider  # noqa: E402
from planwise.features.billing.webhooks import WebhookIngestor  # noqa: E402
from planwise.features.entitlements.store import EntitlementStore  # noqa: E402
from planwise.features.quota.service import QuotaManager  # noqa: E402
from planwise.models.entitlement import utc_now  # noqa: E402


def build_services(app: FastAPI, clock=utc_now) -> None:
    """Build the store-backed services once and hang them on app.state."""
    store = EntitlementStore(clock=clock)
    quota = QuotaManager(store, clock=clock)
    provider = PaddleProvider(clock=clock)
    resolver = IdentityResolver(store)
    app.state.entitlement_store = store
    app.state.quota_manager = quota
    app.state.webhook_ingestor = WebhookIngestor(provider, store, resolver, clock=clock)
    app.state.admin_billing_service = AdminBillingService(store, quota, clock=clock)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("planwise")
    logger.info("Starting Planwise backend...")
    create_all_tables()
    if not hasattr(app.state, "entitlement_store"):
        build_services(app)
    try:
        yield
    finally:
        logger.info("Stopping Planwise backend...")


def create_app() -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="Planwise - Entitlements", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(billing.router, prefix="/api")
    app.include_router(subscription.router, prefix="/api")
    app.include_router(admin_billing.router, tags=["admin-billing"])
    return app


app = create_app()
