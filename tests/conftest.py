"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-offline-sync")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from decimal import Decimal
from typing import Generator

import httpx
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from salesync.core.auth import SessionContext
from salesync.core.feature_flags import get_flags
from salesync.core.rate_limit import limiter
from salesync.core.security import create_access_token
from salesync.db.base import LedgerBase
from salesync.db.session import get_ledger_db, make_engine, make_session_factory
from salesync.main import app
from salesync.models.ledger import LedgerProduct, LedgerStock
from salesync.schemas.sales import LineItem, SaleDraft
from salesync.services.api_client import SalesApiClient
from salesync.services.local_store import create_local_store
from salesync.services.sync_engine import OfflineSyncEngine

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

LEDGER_BASE_URL = "http://ledger.test"

SELLER_ID = 7
OTHER_SELLER_ID = 8
REVIEWER_ID = 99
WAREHOUSE_ID = 1

# Product 1: taxed at 16%, plenty of stock. Product 2: untaxed, only 2 in stock.
COLA_ID = 1
CHIPS_ID = 2


# ============================================================================
# Reference ledger
# ============================================================================

@pytest.fixture(scope="function")
def ledger_engine():
    """Create a test ledger database engine."""
    engine = make_engine(TEST_DATABASE_URL)
    LedgerBase.metadata.create_all(bind=engine)
    yield engine
    LedgerBase.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def ledger_session_factory(ledger_engine):
    return make_session_factory(ledger_engine)


@pytest.fixture(scope="function")
def ledger_db(ledger_session_factory) -> Generator[Session, None, None]:
    """Session for seeding and inspecting the ledger from tests."""
    session = ledger_session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def catalog(ledger_db: Session):
    """Two products with stock in warehouse 1."""
    cola = LedgerProduct(id=COLA_ID, sku="COLA-600", name="Cola 600ml", tax_rate=Decimal("16"))
    chips = LedgerProduct(id=CHIPS_ID, sku="CHIPS-45", name="Chips 45g", tax_rate=Decimal("0"))
    ledger_db.add_all([cola, chips])
    ledger_db.flush()
    ledger_db.add_all([
        LedgerStock(warehouse_id=WAREHOUSE_ID, product_id=COLA_ID, qty=Decimal("100")),
        LedgerStock(warehouse_id=WAREHOUSE_ID, product_id=CHIPS_ID, qty=Decimal("2")),
    ])
    ledger_db.commit()
    return {"cola": cola, "chips": chips}


@pytest.fixture(scope="function")
def ledger_app(ledger_session_factory, catalog):
    """The ledger app wired to the in-memory database."""
    def override_get_ledger_db():
        db = ledger_session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_ledger_db] = override_get_ledger_db
    limiter.enabled = False
    yield app
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def ledger_client(ledger_app) -> TestClient:
    """Synchronous client for exercising ledger routes directly."""
    return TestClient(ledger_app, raise_server_exceptions=False)


@pytest.fixture
def asgi_transport(ledger_app) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=ledger_app)


# ============================================================================
# Tokens and sessions
# ============================================================================

def make_token(user_id: int, role: str = "seller") -> str:
    return create_access_token(data={"sub": str(user_id), "role": role})


@pytest.fixture
def seller_token() -> str:
    return make_token(SELLER_ID)


@pytest.fixture
def seller_headers(seller_token: str) -> dict:
    return {"Authorization": f"Bearer {seller_token}"}


@pytest.fixture
def other_seller_headers() -> dict:
    return {"Authorization": f"Bearer {make_token(OTHER_SELLER_ID)}"}


@pytest.fixture
def reviewer_token() -> str:
    return make_token(REVIEWER_ID, role="reviewer")


@pytest.fixture
def reviewer_headers(reviewer_token: str) -> dict:
    return {"Authorization": f"Bearer {reviewer_token}"}


@pytest.fixture
def seller_session(seller_token: str) -> SessionContext:
    return SessionContext(seller_id=SELLER_ID, access_token=seller_token, username="seller")


@pytest.fixture
def reviewer_session(reviewer_token: str) -> SessionContext:
    return SessionContext(seller_id=REVIEWER_ID, access_token=reviewer_token, is_reviewer=True)


# ============================================================================
# Client side
# ============================================================================

@pytest.fixture
def local_store():
    """Local Sale Store backed by in-memory SQLite."""
    return create_local_store(TEST_DATABASE_URL)


@pytest.fixture
def seller_client(seller_session, asgi_transport) -> SalesApiClient:
    return SalesApiClient(seller_session, base_url=LEDGER_BASE_URL, transport=asgi_transport)


@pytest.fixture
def reviewer_client(reviewer_session, asgi_transport) -> SalesApiClient:
    return SalesApiClient(reviewer_session, base_url=LEDGER_BASE_URL, transport=asgi_transport)


@pytest.fixture
def engine(seller_session, local_store, seller_client) -> OfflineSyncEngine:
    return OfflineSyncEngine(seller_session, local_store, seller_client)


@pytest.fixture
def make_draft():
    """Factory for single-line sale drafts."""
    def _make(
        sale_id: str = None,
        product_id: int = COLA_ID,
        qty="5",
        unit_price="10",
        unit_factor="1",
        discount="0",
        tax_rate="16",
        unit_code="UND",
        extra_lines=(),
    ) -> SaleDraft:
        line = LineItem.build(
            product_id=product_id,
            unit_code=unit_code,
            unit_factor=Decimal(unit_factor),
            qty=Decimal(qty),
            unit_price=Decimal(unit_price),
            discount=Decimal(discount),
            tax_rate=Decimal(tax_rate),
        )
        kwargs = {"customer_id": 3, "warehouse_id": WAREHOUSE_ID, "items": [line, *extra_lines]}
        if sale_id:
            kwargs["id"] = sale_id
        return SaleDraft(**kwargs)
    return _make


@pytest.fixture
def flags():
    """Feature flags, reset to environment values after the test."""
    feature_flags = get_flags()
    yield feature_flags
    feature_flags.reset()


def mock_client(session: SessionContext, handler) -> SalesApiClient:
    """SalesApiClient over an httpx.MockTransport."""
    async def no_sleep(_delay: float) -> None:
        return None

    return SalesApiClient(
        session,
        base_url=LEDGER_BASE_URL,
        transport=httpx.MockTransport(handler),
        sleep=no_sleep,
    )
