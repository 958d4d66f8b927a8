import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

import services.merchant.database  # noqa: F401  registers products/orders tables
from acp_merchant.app import build_container, create_app
from acp_merchant.auth import sign_payload
from acp_merchant.catalog import InMemoryCatalog
from acp_merchant.config import Settings
from acp_merchant.database import create_engine, create_sessionmaker, init_db
from acp_merchant.models import CatalogEntry, CheckoutSession, LineItem, WebhookEvent


API_KEY = "acp_test_key_0123456789abcdefghijklmn"
WEBHOOK_SECRET = "whsec_test_secret_0123456789abcdefghij"
WEBHOOK_URL = "https://hooks.example.com/acp"


class WebhookReceiver:
    """httpx.MockTransport handler that records every delivery."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text="ok" if self.status_code < 300 else "error")


def acp_headers(
    body: bytes = b"",
    idempotency_key: str | None = None,
    timestamp: int | None = None,
    api_key: str = API_KEY,
    secret: str | None = None,
) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "Idempotency-Key": idempotency_key or f"idem_{uuid.uuid4().hex}",
        "Request-Id": f"req_{uuid.uuid4().hex[:8]}",
        "Timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "API-Version": "2026-01-30",
    }
    if secret:
        headers["Signature"] = sign_payload(body, secret)
    return headers


def make_session(**overrides) -> CheckoutSession:
    now = datetime.now(timezone.utc)
    values = dict(
        session_id=f"acp_session_{uuid.uuid4().hex}",
        intent_id=f"intent_{uuid.uuid4().hex}",
        amount=Decimal("20.00"),
        currency="USD",
        line_items=[
            LineItem(
                product_id="prod_mug",
                sku="mug",
                name="Coffee Mug",
                quantity=2,
                unit_price=Decimal("10.00"),
            )
        ],
        created_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return CheckoutSession(**values)


def make_event(**overrides) -> WebhookEvent:
    now = datetime.now(timezone.utc)
    values = dict(
        webhook_id=f"webhook_{uuid.uuid4().hex[:16]}",
        event_type="order.status_changed",
        order_id="order_1",
        payload={"order_id": "order_1", "new_status": "processing"},
        created_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return WebhookEvent(**values)


@pytest.fixture
def settings():
    return Settings(
        api_key=API_KEY,
        webhook_secret=WEBHOOK_SECRET,
        webhook_url=WEBHOOK_URL,
        enable_signature_validation=False,
        webhook_retry_backoff=0,
        database_url="sqlite+aiosqlite://",
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'acp.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return create_sessionmaker(engine)


@pytest.fixture
def catalog():
    return InMemoryCatalog(
        [
            CatalogEntry(product_id="prod_mug", sku="mug", name="Coffee Mug", price=Decimal("10.00")),
            CatalogEntry(
                product_id="prod_poster",
                sku="poster",
                name="Limited Poster",
                price=Decimal("35.00"),
                in_stock=False,
            ),
        ]
    )


@pytest.fixture
def receiver():
    return WebhookReceiver()


@pytest.fixture
async def webhook_http(receiver):
    client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
    yield client
    await client.aclose()


@pytest.fixture
def container(settings, engine, sessionmaker, catalog, webhook_http):
    return build_container(
        settings,
        engine=engine,
        sessionmaker=sessionmaker,
        catalog=catalog,
        http_client=webhook_http,
    )


def build_api(settings, engine, sessionmaker, catalog, webhook_http):
    return create_app(
        settings,
        create_tables=False,
        engine=engine,
        sessionmaker=sessionmaker,
        catalog=catalog,
        http_client=webhook_http,
    )


@pytest.fixture
def app(settings, engine, sessionmaker, catalog, webhook_http):
    return build_api(settings, engine, sessionmaker, catalog, webhook_http)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://merchant.test"
    ) as client:
        yield client
