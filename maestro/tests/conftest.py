from __future__ import annotations

from typing import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from maestro.core.config import Settings
from maestro.domain.models import Base
from maestro.persistence.db import SessionFactory, build_engine, build_session_factory
from maestro.services.container import MaestroServices, build_services
from maestro.services.telemetry import reset_telemetry
from maestro.tests.utils.clock import MutableClock
from maestro.tests.utils.settings import make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture(autouse=True)
def reset_counters() -> None:
    # Keep telemetry assertions independent between tests.
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
async def engine(settings: Settings) -> AsyncIterator[AsyncEngine]:
    # Fresh in-memory schema per test; StaticPool keeps every session on one connection.
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return build_session_factory(engine)


@pytest.fixture
def services(session_factory: SessionFactory, settings: Settings, clock: MutableClock) -> MaestroServices:
    return build_services(session_factory, settings=settings, clock=clock, lease_holder="test-sweeper")
