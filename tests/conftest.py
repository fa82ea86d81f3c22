import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from creditledger.config import settings
from creditledger.database import get_db
from creditledger.dependencies.rate_limit import get_rate_limiter
from creditledger.dependencies.services import (
    get_email_sender,
    get_payment_gateway,
    get_receipt_jobs,
)
from creditledger.main import app
from creditledger.models import Base
from creditledger.services.fulfillment_service import FulfillmentEngine
from creditledger.services.jwt_service import JWTService
from creditledger.services.payment_gateway import CheckoutIntent, PaymentDetails, PaymentMethodSummary
from creditledger.services.rate_limiter import InMemoryRateLimiter
from creditledger.services.receipt_service import ReceiptService
from creditledger.services.user_service import UserService


STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
EMAIL_WEBHOOK_SECRET = "email_test_secret"


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_payment_details(payment_reference: str, **overrides) -> PaymentDetails:
    fields = {
        "payment_reference": payment_reference,
        "status": "succeeded",
        "amount": 1000,
        "currency": "USD",
        "created": 1767225600,
        "description": "Credit purchase",
        "metadata": {"userId": "u1", "packageId": "p100", "credits": "1200"},
        "charge_reference": "ch_123",
        "receipt_url": "https://pay.stripe.com/receipts/acct_1/ch_123",
        "billing_name": "Jane Doe",
        "billing_email": "jane.doe@example.com",
        "payment_method": PaymentMethodSummary(type="Credit Card", brand="visa", last4="4242"),
        "has_charge": True,
    }
    fields.update(overrides)
    return PaymentDetails(**fields)


def sign_stripe_payload(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        secret.encode(),
        f"{timestamp}.{payload}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, intent: dict, event_id: str = "evt_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": intent},
    })


def succeeded_intent(
    payment_reference: str = "pi_abc123",
    user_id: str = "u1",
    package_id: str = "p100",
    credits: str = "1200",
) -> dict:
    return {
        "id": payment_reference,
        "object": "payment_intent",
        "status": "succeeded",
        "amount": 1000,
        "currency": "usd",
        "metadata": {"userId": user_id, "packageId": package_id, "credits": credits},
    }


def auth_headers(user_id: str, email: str | None = None) -> dict:
    token = JWTService().create_token(user_id, email or f"{user_id}@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def webhook_secrets(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "EMAIL_WEBHOOK_SECRET", EMAIL_WEBHOOK_SECRET)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"timeout": 15},
    )
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def gateway():
    mock = MagicMock()
    mock.retrieve_payment = AsyncMock(side_effect=lambda ref: make_payment_details(ref))
    mock.create_payment_intent = AsyncMock(
        return_value=CheckoutIntent(payment_reference="pi_checkout1", client_secret="pi_checkout1_secret_abc")
    )
    return mock


@pytest.fixture
def email_sender():
    mock = MagicMock()
    mock.send = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def jobs():
    mock = MagicMock()
    mock.dispatch_receipt_email = AsyncMock(return_value=None)
    mock.schedule_receipt_generation = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limiter(clock):
    return InMemoryRateLimiter(limit=10, window=60, clock=clock)


@pytest_asyncio.fixture
async def users(db):
    service = UserService(db)
    await service.create("jane.doe@example.com", "Jane", "Doe", user_id="u1")
    await service.create("mallory@example.com", "Mal", "Lory", user_id="u2")
    return ["u1", "u2"]


@pytest.fixture
def make_engine(gateway, email_sender, jobs):
    def factory(session: AsyncSession) -> FulfillmentEngine:
        receipt_service = ReceiptService(session, gateway, email_sender, jobs=jobs)
        return FulfillmentEngine(session, receipt_service, gateway, jobs=jobs)
    return factory


@pytest_asyncio.fixture
async def client(session_maker, gateway, email_sender, jobs, rate_limiter):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    app.dependency_overrides[get_receipt_jobs] = lambda: jobs
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
