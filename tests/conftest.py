"""Shared fixtures: in-memory database, fake browser and a scripted site."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cartwatch.db.models import Base
from cartwatch.db.repository import ListingRepository
from fakes import FakeBrowser, FakeSessionManager, FakeSite


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def repository(session_factory):
    return ListingRepository(session_factory)


@pytest.fixture
def fake_browser():
    return FakeBrowser()


@pytest.fixture
def launcher(fake_browser):
    async def launch(headless=True):
        return fake_browser

    return launch


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def fake_sessions():
    return FakeSessionManager()
