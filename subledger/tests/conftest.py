"""Shared fixtures: temporary sqlite ledger store, frozen clock, reconciler, facade and app."""

from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from subledger.billing.domain import models
from subledger.billing.external.stripe import StripeGateway
from subledger.billing.shared import PlanCatalog, SnapshotCache
from subledger.billing.subscriptions import BillingService, SubscriptionReconciler
from subledger.common.model import Base
from subledger.core.conf import Settings
from subledger.tests.factories import TEST_PRICES, TEST_WEBHOOK_SECRET


class FrozenClock:
    """Controllable UTC clock; advance() moves it forward."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT='test',
        DATABASE_URL=f'sqlite+aiosqlite:///{tmp_path}/ledger.db',
        STRIPE_SECRET_KEY='sk_test_123',
        STRIPE_WEBHOOK_SECRET=TEST_WEBHOOK_SECRET,
        **TEST_PRICES,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime.now(dt_timezone.utc).replace(microsecond=0))


@pytest_asyncio.fixture
async def engine(test_settings):
    engine = create_async_engine(test_settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def catalog(test_settings) -> PlanCatalog:
    return PlanCatalog.from_settings(test_settings)


@pytest.fixture
def cache() -> SnapshotCache:
    return SnapshotCache()


@pytest.fixture
def reconciler(session_factory, catalog, cache, test_settings, clock) -> SubscriptionReconciler:
    return SubscriptionReconciler(session_factory, catalog, cache, test_settings, clock=clock)


@pytest.fixture
def fake_gateway():
    """Gateway double; the async methods are AsyncMocks."""
    gateway = MagicMock(spec=StripeGateway)
    gateway.create_customer.return_value = 'cus_new'
    gateway.create_checkout_session.return_value = 'https://checkout.stripe.test/c/pay/cs_test_1'
    return gateway


@pytest.fixture
def service(session_factory, reconciler, fake_gateway, catalog, cache, test_settings, clock) -> BillingService:
    return BillingService(session_factory, reconciler, fake_gateway, catalog, cache, test_settings, clock=clock)


@pytest.fixture
def app_factory(test_settings, session_factory):
    from subledger.main import create_app

    def build(gateway=None):
        return create_app(test_settings, engine=None, session_factory=session_factory, gateway=gateway)

    return build


@pytest_asyncio.fixture
async def client_for():
    """Open httpx clients against an app; closed at teardown."""
    clients = []

    async def open_client(app) -> AsyncClient:
        client = AsyncClient(transport=ASGITransport(app=app), base_url='http://test')
        clients.append(client)
        return client

    yield open_client
    for client in clients:
        await client.aclose()


class LedgerCounter:
    """Row counts per account, for asserting that nothing was written."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def _count(self, model, account_id: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(select(func.count()).select_from(model).where(model.account_id == account_id))
            return result.scalar_one()

    async def transactions(self, account_id: str) -> int:
        return await self._count(models.CreditTransaction, account_id)

    async def events(self, account_id: str) -> int:
        return await self._count(models.SubscriptionEvent, account_id)

    async def account(self, account_id: str):
        async with self._session_factory() as db:
            return await db.get(models.Account, account_id)

    async def subscription(self, account_id: str):
        async with self._session_factory() as db:
            result = await db.execute(select(models.Subscription).where(models.Subscription.account_id == account_id))
            return result.scalar_one_or_none()

    async def ledger_rows(self, account_id: str):
        async with self._session_factory() as db:
            result = await db.execute(
                select(models.CreditTransaction)
                .where(models.CreditTransaction.account_id == account_id)
                .order_by(models.CreditTransaction.created_at)
            )
            return list(result.scalars().all())


@pytest.fixture
def ledger_rows(session_factory) -> LedgerCounter:
    return LedgerCounter(session_factory)
