"""Shared test fixtures for the coordinator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from coordinator.config import Settings
from coordinator.database import create_engine
from coordinator.main import create_app
from coordinator.models.base import Base
from coordinator.services.lookup_service import StaticNameLookup

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from coordinator.services.lookup_service import NameLookup

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin-password-123"


def make_lookup() -> StaticNameLookup:
    """Name tables used across tests: DS is licensed, GN is an unlicensed theme."""
    return StaticNameLookup(
        licensors={"DS": "Disney", "MR": "Marvel", "ZZ": "No License"},
        themes={"GN": "Generic Floral"},
        properties={
            "CW001": {"MV": "Mickey Vintage", "MVXX": "Mickey Classic", "SPDR": "Spider-Man"},
            "EH001": {"FL": "Florals", "MV": "Mountain Views"},
        },
    )


@asynccontextmanager
async def create_test_client(
    settings: Settings, lookup: NameLookup | None = None
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (engine, schema,
    admin user, name lookup) because ASGITransport does not trigger it.
    """
    from coordinator.services.auth_service import ensure_admin_user

    app = create_app(settings)
    settings.validate_runtime_security()

    engine, session_factory = create_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.settings = settings

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_factory() as session:
        await ensure_admin_user(session, settings)

    app.state.name_lookup = lookup if lookup is not None else make_lookup()

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await engine.dispose()


async def login(client: AsyncClient) -> dict[str, str]:
    """Login as the bootstrap admin and return auth headers."""
    resp = await client.post(
        "/api/auth/login", json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD}
    )
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


async def pair_agent(
    client: AsyncClient,
    admin_headers: dict[str, str],
    agent_type: str = "bridge",
    agent_name: str | None = None,
) -> tuple[str, dict[str, str]]:
    """Pair a new agent through the API. Returns (agent_id, agent headers)."""
    payload: dict[str, str] = {"agent_type": agent_type}
    if agent_name is not None:
        payload["agent_name"] = agent_name
    resp = await client.post("/api/admin/pairing-codes", json=payload, headers=admin_headers)
    assert resp.status_code == 201, resp.text
    code = resp.json()["pairing_code"]

    resp = await client.post("/api/agent/pair", json={"pairing_code": code})
    assert resp.status_code == 201, resp.text
    data = resp.json()
    return data["agent_id"], {"X-Agent-Key": data["agent_key"]}


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        secret_key=TEST_SECRET_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        db_retry_base_delay_seconds=0,
    )


@pytest.fixture
def lookup() -> StaticNameLookup:
    return make_lookup()


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine, _ = create_engine(test_settings.model_copy(update={"debug": False}))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for tests that need several independent sessions."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create test HTTP client."""
    async with create_test_client(test_settings) as ac:
        yield ac
