"""Service test fixtures — async DB, FastAPI test client, scripted backend.

Invariants:
    - Every test gets a fresh in-memory SQLite database
    - get_db dependency overridden to use test DB session
    - db_manager patched for transcript persistence that bypasses get_db
    - scripted_backend overrides get_model_backend with a ScriptedBackend

Design Decisions:
    - SQLite in-memory: fast, no external dependency, sufficient for route tests
    - db_manager patched: the conversation runner persists via db_manager.session()
    - Active runs cleared after each test: the registry is module-level
"""

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncSession, create_async_engine, async_sessionmaker,
)
from httpx import ASGITransport, AsyncClient

from turnloop.api.routes.conversation_stream_helpers import (
    get_model_backend, get_tool_registry,
)
from turnloop.db.base import Base
from turnloop.infrastructure.database import get_db, DatabaseSessionManager
from turnloop.main import app
from turnloop.models.conversation import Conversation
from turnloop.services import conversation_runner
from turnloop.services.tool_registry import ToolRegistry
import turnloop.infrastructure.database as db_module

from tests.services.mock_backend import ScriptedBackend


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def test_session_factory(test_engine):
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False,
    )


@pytest.fixture
async def test_db(test_session_factory):
    async with test_session_factory() as session:
        yield session


@pytest.fixture
async def client(test_engine, test_session_factory):
    """FastAPI test client with DB dependency overridden."""
    async def override_get_db():
        async with test_session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    original_manager = db_module.db_manager
    fake_manager = DatabaseSessionManager.__new__(DatabaseSessionManager)
    fake_manager.engine = test_engine
    fake_manager._session_factory = test_session_factory
    db_module.db_manager = fake_manager

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
    db_module.db_manager = original_manager
    conversation_runner._active_runs.clear()


@pytest.fixture
def scripted_backend():
    """Install a ScriptedBackend for the routes; configure via .responses."""
    holder = {"backend": ScriptedBackend([])}
    app.dependency_overrides[get_model_backend] = lambda: holder["backend"]

    def configure(*responses):
        holder["backend"] = ScriptedBackend(responses)
        return holder["backend"]

    return configure


@pytest.fixture
def tool_registry():
    registry = ToolRegistry()
    app.dependency_overrides[get_tool_registry] = lambda: registry
    return registry


@pytest.fixture
async def seed_conversation(test_db):
    conversation = Conversation(system_prompt="Be terse.", message_history=[])
    test_db.add(conversation)
    await test_db.commit()
    await test_db.refresh(conversation)
    return conversation
