# planwise/conftest.py
import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("ENVIRONMENT", "test")

from planwise.core.config import settings  # noqa: E402
from planwise.core.database import get_engine, init_engine, reset_database  # noqa: E402
from planwise.features.billing.identity import IdentityResolver  # noqa: E402
from planwise.features.billing.paddle_provider import DEFAULT_PRICE_CATALOG, PaddleProvider  # noqa: E402
from planwise.features.billing.webhooks import WebhookIngestor  # noqa: E402
from planwise.features.entitlements.store import EntitlementStore  # noqa: E402
from planwise.features.quota.service import QuotaManager  # noqa: E402

TEST_WEBHOOK_SECRET = "pdl_ntfset_test_secret"
TEST_ADMIN_KEY = "admin-test-key"

PRO_MONTHLY_PRICE = "pri_01k4afv37xb0qtqgf1x0bnmwf7"
PRO_YEARLY_PRICE = "pri_01k4arbvr91qy4gj4tk0pnw515"
PRO_PLUS_MONTHLY_PRICE = "pri_01k4ar4ppv145d5mxq627zwnss"


class FixedClock:
    """Settable clock; call it to read `now`."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="function", autouse=True)
def sqlite_db(tmp_path, monkeypatch):
    """
    Fresh SQLite database per test.

    Every test gets its own file under tmp_path, so there is nothing to
    truncate between tests.
    """
    url = f"sqlite:///{tmp_path / 'planwise_test.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    init_engine(url)
    reset_database()
    yield url
    get_engine().dispose()


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return EntitlementStore(clock=clock)


@pytest.fixture
def quota(store, clock):
    return QuotaManager(store, clock=clock, max_attempts=5, backoff_ms=0)


@pytest.fixture
def provider(clock):
    return PaddleProvider(
        webhook_secret=TEST_WEBHOOK_SECRET,
        tolerance_seconds=0,
        price_catalog=dict(DEFAULT_PRICE_CATALOG),
        clock=clock,
    )


@pytest.fixture
def resolver(store):
    return IdentityResolver(store, fallback_enabled=True, max_attempts=5, backoff_ms=0)


@pytest.fixture
def ingestor(provider, store, resolver, clock):
    return WebhookIngestor(provider, store, resolver, clock=clock, max_attempts=5, backoff_ms=0)


def sign_body(body: bytes, secret: str = TEST_WEBHOOK_SECRET, ts: int = 1735732800) -> str:
    """Build a `paddle-signature` header value for body."""
    digest = hmac.new(secret.encode(), f"{ts}:".encode() + body, hashlib.sha256).hexdigest()
    return f"ts={ts};h1={digest}"


@pytest.fixture
def make_delivery():
    """
    Build (headers, body) for a signed Paddle delivery.

    Usage:
        headers, body = make_delivery("evt_1", "transaction.completed", {...})
    """

    def _make(event_id, event_type, data=None, secret=TEST_WEBHOOK_SECRET, ts=1735732800):
        body = json.dumps({
            "event_id": event_id,
            "event_type": event_type,
            "occurred_at": "2025-01-01T12:00:00Z",
            "data": data or {},
        }).encode()
        return {"paddle-signature": sign_body(body, secret=secret, ts=ts)}, body

    return _make


@pytest.fixture
def api_app(clock, monkeypatch):
    """FastAPI app with services built against the fixed clock and test secrets."""
    monkeypatch.setattr(settings, "PADDLE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "PADDLE_WEBHOOK_TOLERANCE_SECONDS", 0)
    monkeypatch.setattr(settings, "QUOTA_RETRY_BACKOFF_MS", 0)
    monkeypatch.setenv("ADMIN_API_KEY", TEST_ADMIN_KEY)

    from planwise.main import build_services, create_app

    app = create_app()
    build_services(app, clock=clock)
    return app


@pytest.fixture
def client(api_app):
    from fastapi.testclient import TestClient

    with TestClient(api_app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": TEST_ADMIN_KEY}


@pytest.fixture
def sign():
    return sign_body
