"""Pytest configuration and fixtures for obracalc tests.

Provides a throwaway SQLite database and the shared fakes from
``tests.support``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from obracalc.config import reset_config
from obracalc.core.gateway import RateLimitedGateway
from obracalc.db.models import Base
from tests.support import FakeEmbedder, RecordingSleep


@pytest.fixture(autouse=True)
def env(monkeypatch):
    """Minimal environment so get_config() works in every test."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite file, same contract as get_session()."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def factory():
        session = maker()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    yield factory
    await engine.dispose()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def gateway(sleep) -> RateLimitedGateway:
    return RateLimitedGateway(base_delay=2.0, max_retries=3, sleep=sleep)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
