"""
MoMo Billing - Test Configuration

Pytest fixtures and configuration.
"""

from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, List
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_billing.config import settings
from momo_billing.database import Base, build_engine, build_session_factory, get_session_factory
from momo_billing.dependencies import get_event_dispatcher
from momo_billing.models.momo import (
    BillingPeriod,
    MoMoNetwork,
    MoMoSubscription,
    SubscriptionStatus,
)
from momo_billing.services.billing_events import BillingEvent, BillingEventDispatcher, BillingEventType
from momo_billing.services.billing_scheduler import next_payment_date
from momo_billing.services.callback_processor import CallbackProcessor
from momo_billing.services.gateway import (
    ChargeInitiation,
    GatewayClient,
    PaystackMoMoGateway,
    VerificationResult,
    get_gateway,
)
from momo_billing.services.lifecycle import SubscriptionLifecycleManager
from momo_billing.services.status_query import StatusQueryService
from momo_billing.services.subscription_store import SubscriptionStore
from tests.fixtures.paystack_mock import MockPaystackServer
from main import app


USER_ID = "user_2a9f61"
TIER = "premium"
NOW = datetime(2026, 3, 1, 12, 0, 0)


# ===========================================
# DATABASE FIXTURES
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Fresh file-backed SQLite database per test.
    
    A file (not :memory:) gives every session its own connection, so
    concurrency tests exercise real transaction isolation.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'momo_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    
    yield build_session_factory(engine)
    
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SubscriptionStore:
    return SubscriptionStore(session_factory, max_attempts=3)


# ===========================================
# EVENT FIXTURES
# ===========================================

@pytest.fixture
def recorded_events() -> List[BillingEvent]:
    return []


@pytest.fixture
def events(recorded_events) -> BillingEventDispatcher:
    """Dispatcher that records everything it publishes."""
    dispatcher = BillingEventDispatcher()
    for event_type in BillingEventType:
        dispatcher.subscribe(event_type, recorded_events.append)
    return dispatcher


# ===========================================
# GATEWAY FIXTURES
# ===========================================

@pytest.fixture
def mock_paystack() -> MockPaystackServer:
    return MockPaystackServer()


@pytest.fixture
def paystack_gateway(mock_paystack) -> PaystackMoMoGateway:
    return PaystackMoMoGateway(
        secret_key=mock_paystack.secret_key,
        base_url=MockPaystackServer.BASE_URL,
        timeout_seconds=5,
    )


@pytest.fixture
def fake_gateway() -> AsyncMock:
    """Gateway double; verify() succeeds with the subscription's amount unless reconfigured."""
    gateway = AsyncMock(spec=GatewayClient)
    counter = {"n": 0}
    
    async def initiate_charge(subscription, renewal=False):
        counter["n"] += 1
        kind = "renewal" if renewal else "first"
        return ChargeInitiation(
            reference=f"momo_{kind}_{subscription.id.hex}_{counter['n']}",
            redirect_or_prompt_target="Approve the prompt on your phone",
        )
    
    gateway.initiate_charge.side_effect = initiate_charge
    gateway.verify.return_value = VerificationResult(
        verified=True,
        amount_confirmed=None,
        gateway_response_code="success",
    )
    gateway.cancel_recurring_mandate.return_value = True
    return gateway


# ===========================================
# SERVICE FIXTURES
# ===========================================

@pytest.fixture
def lifecycle(store, fake_gateway, events) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(store, fake_gateway, events, max_failures=3)


@pytest.fixture
def processor(lifecycle) -> CallbackProcessor:
    return CallbackProcessor(lifecycle)


@pytest.fixture
def status_service(store) -> StatusQueryService:
    return StatusQueryService(store)


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest.fixture
def make_subscription(session_factory):
    """Factory inserting a subscription row directly."""
    
    async def _make(**overrides) -> MoMoSubscription:
        values = dict(
            id=uuid4(),
            user_id=USER_ID,
            tier=TIER,
            phone="0241234567",
            email="payer@example.com",
            network=MoMoNetwork.MTN,
            amount=Decimal("50.00"),
            currency="GHS",
            billing_period=BillingPeriod.MONTHLY,
            status=SubscriptionStatus.PENDING,
            failure_count=0,
        )
        values.update(overrides)
        if values.get("last_payment_date") and "next_payment_date" not in overrides:
            values["next_payment_date"] = next_payment_date(values["last_payment_date"], values["billing_period"])
        subscription = MoMoSubscription(**values)
        async with session_factory() as session:
            async with session.begin():
                session.add(subscription)
        return subscription
    
    return _make


# ===========================================
# HTTP CLIENT
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def client(session_factory, fake_gateway, events, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client wired to the test database and gateway double."""
    monkeypatch.setattr(settings, "paystack_webhook_secret", "test_webhook_secret")
    
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_event_dispatcher] = lambda: events
    
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    """Identity headers forwarded by the upstream auth layer."""
    return {"X-User-Id": USER_ID}
