"""Pytest configuration and fixtures."""

import os

# must be in place before playground.users / playground.database are imported
os.environ.setdefault("SECRET", "test-secret-value")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LLM_PROVIDER", "ollama")
os.environ.setdefault("DEFAULT_MODEL", "llama3.1:8b")

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from playground.database import Base, get_db
from playground.jobs import GenerationRegistry
from playground.models import Thread, User
from playground.routes_shared import get_orchestrator
from playground.services.orchestrator import StreamingOrchestrator
from playground.utils import require_authenticated_user

from tests.fakes.llm import REPORT_HTML, ScriptedGenerator, fenced


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def user(session_maker):
    async with session_maker() as db:
        u = User(email="analyst@example.com", username="analyst", hashed_password="not-a-real-hash")
        db.add(u)
        await db.commit()
        return u


@pytest.fixture
async def other_user(session_maker):
    async with session_maker() as db:
        u = User(email="someone@example.com", username="someone", hashed_password="not-a-real-hash")
        db.add(u)
        await db.commit()
        return u


@pytest.fixture
async def thread(session_maker, user):
    async with session_maker() as db:
        t = Thread(user_id=user.id)
        db.add(t)
        await db.commit()
        return t


@pytest.fixture
def registry():
    return GenerationRegistry()


@pytest.fixture
def fake_llm():
    return ScriptedGenerator(fenced(REPORT_HTML))


@pytest.fixture
def orchestrator(session_maker, fake_llm, registry):
    return StreamingOrchestrator(session_maker=session_maker, generate=fake_llm, registry=registry)


@pytest.fixture
def app(session_maker, user, orchestrator):
    from playground.main import app as fastapi_app

    async def _get_db():
        async with session_maker() as session:
            yield session

    async def _current_user():
        return user

    fastapi_app.dependency_overrides[get_db] = _get_db
    fastapi_app.dependency_overrides[require_authenticated_user] = _current_user
    fastapi_app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def http(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
