"""Pytest configuration for marketplace tests."""

import hashlib
import hmac
import time
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.core.config import MarketplaceConfig, set_config
from marketplace.database import Base, get_db
from marketplace.models import Order, OrderItem, Product, Profile
from marketplace.payments import StripeGateway, get_payment_gateway
from marketplace.realtime import ChangeFeed, get_change_feed

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_KEY = "sk_test_key"
STRIPE_SESSION_ID = "cs_test_123"
STRIPE_SESSION_URL = "https://checkout.stripe.test/pay/cs_test_123"


# ---------------------------------------------------------------------------
# Configuration: never read secrets or the database URL from the environment
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function", autouse=True)
def test_config():
    config = MarketplaceConfig(
        database_url="sqlite://",
        stripe_secret_key=STRIPE_KEY,
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_api_base="https://api.stripe.test",
    )
    set_config(config)
    yield config
    set_config(None)


# ---------------------------------------------------------------------------
# Database: one in-memory SQLite database per test
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def feed():
    return ChangeFeed()


# ---------------------------------------------------------------------------
# Stripe: stripe.checkout.Session.create replaced, nothing leaves the process
# ---------------------------------------------------------------------------

class StripeStub:
    """Stands in for stripe.checkout.Session.create and records each call."""

    def __init__(self):
        self.calls = []
        self.error = None

    def __call__(self, **params):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(id=STRIPE_SESSION_ID, url=STRIPE_SESSION_URL)


@pytest.fixture
def stripe_stub(monkeypatch):
    stub = StripeStub()
    monkeypatch.setattr(stripe.checkout.Session, "create", stub)
    return stub


@pytest.fixture
def gateway(stripe_stub):
    return StripeGateway(STRIPE_KEY)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Stripe-Signature header for `payload`, built the way Stripe signs webhooks."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


# ---------------------------------------------------------------------------
# API client with dependency overrides
# ---------------------------------------------------------------------------

@pytest.fixture
def client(session_factory, feed, gateway):
    from marketplace.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_change_feed] = lambda: feed
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    # Not used as a context manager: the lifespan would create the default database file.
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

def make_profile(db, user_id, role="buyer", full_name=None, email=None):
    profile = Profile(user_id=user_id, role=role, full_name=full_name or user_id.title(), email=email)
    db.add(profile)
    db.commit()
    return profile


def make_product(db, seller_id, name="Widget", price="10.00", stock=100, category=None, created_at=None):
    product = Product(
        seller_id=seller_id,
        name=name,
        price=Decimal(price),
        stock_quantity=stock,
        category=category,
    )
    if created_at is not None:
        product.created_at = created_at
    db.add(product)
    db.commit()
    return product


def make_order(db, buyer_id, lines, created_at=None, status="pending", address="1 Test Way"):
    """lines: [(product, quantity)]. Prices are taken from the products."""
    created_at = created_at or datetime.now(timezone.utc)
    total = sum((Decimal(p.price) * q for p, q in lines), Decimal("0"))
    order = Order(
        user_id=buyer_id,
        total_amount=total,
        status=status,
        shipping_address=address,
        payment_method="cash",
        created_at=created_at,
    )
    db.add(order)
    db.flush()
    for product, quantity in lines:
        db.add(OrderItem(
            order_id=order.id,
            product_id=product.id,
            quantity=quantity,
            price=Decimal(product.price),
            created_at=created_at,
        ))
    db.commit()
    return order


@pytest.fixture
def seller(db):
    return make_profile(db, "seller-1", role="seller", full_name="Sam Seller")


@pytest.fixture
def seller2(db):
    return make_profile(db, "seller-2", role="seller", full_name="Sally Seller")


@pytest.fixture
def buyer(db):
    return make_profile(db, "buyer-1", role="buyer", full_name="Bob Buyer")
