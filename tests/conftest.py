from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from decostudio.config import Settings
from decostudio.db.base import Base
from decostudio.db.models import Generation, UserAccount
from decostudio.db.session import create_engine, create_sessionmaker
from decostudio.services.container import Services, build_services
from decostudio.services.credits import CreditLedger
from decostudio.web.app import create_app

from fakes import FakeBlobStore, FakeGateway, FakeProvider


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f'sqlite+aiosqlite:///{tmp_path}/test.db',
        BLOB_STORAGE_PATH=str(tmp_path / 'blobs'),
        PUBLIC_BLOB_BASE_URL='https://blobs.test',
        PUBLIC_SITE_URL='https://app.test',
        STRIPE_PRICE_HD_UNLOCK='price_hd',
        STRIPE_PRICE_10_CREDITS='price_10',
        STRIPE_PRICE_25_CREDITS='price_25',
        STRIPE_PRICE_50_CREDITS='price_50',
        STRIPE_PRICE_100_CREDITS='price_100',
        KIE_WEBHOOK_HMAC_KEY='',
        KIE_WEBHOOK_REQUIRE_SIGNATURE=False,
        POLL_MAX_ATTEMPTS=5,
        POLL_INTERVAL_SECONDS=0,
        PENDING_SWEEP_INTERVAL_SECONDS=0,
    )


@pytest_asyncio.fixture
async def sessionmaker(settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def services(settings, sessionmaker, provider, blob_store, gateway) -> Services:
    return build_services(settings, sessionmaker, provider, blob_store, gateway)


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as ac:
        yield ac


@pytest.fixture
def make_user(sessionmaker):
    async def _make_user(user_id: str = 'user-1', credits: int = 0) -> UserAccount:
        async with sessionmaker() as session:
            ledger = CreditLedger(session)
            account = await ledger.ensure_account(user_id, f'{user_id}@example.com', signup_bonus=credits)
            await session.commit()
        return account

    return _make_user


@pytest.fixture
def balance_of(sessionmaker):
    async def _balance_of(user_id: str) -> int:
        async with sessionmaker() as session:
            return await CreditLedger(session).get_balance(user_id)

    return _balance_of


@pytest.fixture
def load_generation(sessionmaker):
    async def _load(generation_id: str):
        async with sessionmaker() as session:
            return await session.get(Generation, generation_id)

    return _load
