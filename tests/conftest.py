"""Pytest configuration and shared fixtures.

Database tests run against a SQLite file per test. Redis is replaced by an
in-memory double, and Stripe API calls by AsyncMocks on a real StripeClient
so webhook signatures are still verified by the Stripe library.
"""

import hashlib
import hmac
import json
import os
import time
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-billing-tests")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_convertviral")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_convertviral")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from convertviral.core.database import create_engine, create_session_factory, init_db
from convertviral.modules.auth.models import User
from convertviral.modules.billing.idempotency import IdempotencyStore
from convertviral.modules.billing.models import Subscription
from convertviral.modules.billing.retry import RetryPolicy
from convertviral.modules.billing.stripe_client import StripeClient, StripeSubscriptionData
from convertviral.modules.billing.webhook_service import StripeWebhookService

WEBHOOK_SECRET = "whsec_test_convertviral"
API_KEY = "sk_test_convertviral"

DEFAULT_PERIOD_END = datetime(2026, 11, 19, tzinfo=timezone.utc)


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the store uses."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def aclose(self) -> None:
        pass


def _sign(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _subscription_data(
    subscription_id: str = "sub_1",
    status: str = "active",
    price_id: str = "price_pro_monthly",
    period_end: Optional[datetime] = DEFAULT_PERIOD_END,
    customer_id: str = "cus_1",
    cancel_at_period_end: bool = False,
    price_amount: Optional[int] = None,
    default_payment_method_id: Optional[str] = None,
) -> StripeSubscriptionData:
    return StripeSubscriptionData(
        id=subscription_id,
        customer_id=customer_id,
        status=status,
        price_id=price_id,
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
        metadata={},
        price_amount=price_amount,
        currency="eur" if price_amount is not None else None,
        default_payment_method_id=default_payment_method_id,
    )


# ==================== Helpers exposed as fixtures ====================

@pytest.fixture
def as_utc():
    """SQLite drops tzinfo; read naive values back as UTC."""
    def convert(value: Optional[datetime]) -> Optional[datetime]:
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=timezone.utc)
    return convert


@pytest.fixture
def sign_payload():
    """Build a Stripe-Signature header for a raw payload."""
    def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
        return _sign(payload, secret, timestamp)
    return sign


@pytest.fixture
def signed_event():
    """Build a signed event delivery: returns (payload, signature header)."""
    def build(
        event_type: str,
        obj: dict,
        event_id: Optional[str] = None,
        secret: str = WEBHOOK_SECRET,
    ) -> tuple[bytes, str]:
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
        payload = json.dumps(event).encode("utf-8")
        return payload, _sign(payload, secret)
    return build


@pytest.fixture
def stripe_subscription():
    """Factory for the subscription snapshots returned by the Stripe client."""
    return _subscription_data


# ==================== Database ====================

@pytest.fixture
async def engine(tmp_path):
    """SQLite database with all tables created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(session_factory) -> User:
    """A free user with no Stripe customer yet."""
    async with session_factory() as session:
        user = User(email="anna@example.de", name="Anna Schmidt")
        session.add(user)
        await session.commit()
        return user


@pytest.fixture
def make_user(session_factory):
    async def create(email: str, **values) -> User:
        async with session_factory() as session:
            user = User(email=email, **values)
            session.add(user)
            await session.commit()
            return user
    return create


@pytest.fixture
def make_subscription(session_factory):
    """Seed a local subscription row for a user."""
    async def create(
        user: User,
        stripe_subscription_id: str = "sub_1",
        **values,
    ) -> Subscription:
        values.setdefault("status", "active")
        values.setdefault("stripe_customer_id", "cus_1")
        values.setdefault("stripe_price_id", "price_pro_monthly")
        values.setdefault("current_period_end", DEFAULT_PERIOD_END)
        async with session_factory() as session:
            subscription = Subscription(
                user_id=user.id,
                stripe_subscription_id=stripe_subscription_id,
                **values,
            )
            session.add(subscription)
            await session.commit()
            return subscription
    return create


@pytest.fixture
def fetch(session_factory):
    """Load rows in a fresh session, after the code under test committed."""
    async def load(model, *criteria) -> list:
        async with session_factory() as session:
            result = await session.execute(select(model).where(*criteria))
            return list(result.scalars().all())
    return load


# ==================== Stripe and Redis ====================

@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def stripe_client() -> StripeClient:
    """Real client with every API call replaced by an AsyncMock."""
    client = StripeClient(api_key=API_KEY, webhook_secret=WEBHOOK_SECRET)
    client.retrieve_subscription = AsyncMock(return_value=_subscription_data())
    client.retrieve_invoice = AsyncMock()
    client.retrieve_payment_intent = AsyncMock()
    client.confirm_payment_intent = AsyncMock()
    client.set_cancel_at_period_end = AsyncMock()
    client.create_customer = AsyncMock(return_value="cus_new")
    client.retrieve_price = AsyncMock()
    client.create_checkout_session = AsyncMock()
    client.retrieve_checkout_session = AsyncMock()
    client.list_subscriptions = AsyncMock(return_value=[])
    client.set_subscription_payment_method = AsyncMock()
    client.retrieve_customer = AsyncMock()
    client.set_default_payment_method = AsyncMock()
    client.list_payment_methods = AsyncMock(return_value=[])
    client.retrieve_payment_method = AsyncMock()
    client.attach_payment_method = AsyncMock()
    client.update_payment_method_billing = AsyncMock()
    client.detach_payment_method = AsyncMock()
    client.list_invoices = AsyncMock(return_value=[])
    return client


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def webhook_service(session_factory, stripe_client, fake_redis, sleep) -> StripeWebhookService:
    return StripeWebhookService(
        session_factory=session_factory,
        stripe_client=stripe_client,
        idempotency=IdempotencyStore(fake_redis),
        policy=RetryPolicy(max_retries=3, base_delay=2.0),
        sleep=sleep,
    )


# ==================== API ====================

@pytest.fixture
def app(session_factory, stripe_client, fake_redis):
    """Application with state wired to the test doubles (lifespan not run)."""
    from convertviral.main import create_app

    app = create_app()
    app.state.session_factory = session_factory
    app.state.redis = fake_redis
    app.state.stripe_client = stripe_client
    return app


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers(user: User) -> dict:
    from convertviral.modules.auth.jwt import create_access_token

    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
