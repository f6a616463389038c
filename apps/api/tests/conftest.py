from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
import models  # noqa: F401
from routers import rate_limit
from services.templates import ensure_default_templates


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """File-backed SQLite database wired into every module that opens its own sessions."""
    db_path = tmp_path / "thumbnails.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with maker() as session:
        await ensure_default_templates(session)

    with (
        patch("services.generation.async_session_maker", maker),
        patch("services.generation_queue.async_session_maker", maker),
        patch("database.engine", engine),
        patch("services.storage.settings.ARTIFACT_STORAGE_DIR", str(tmp_path / "artifacts")),
        patch("services.generation.settings.EXTERNAL_BACKOFF_BASE_SECONDS", 0.0),
        patch("services.generation.settings.OPENAI_API_KEY", ""),
        patch("services.generation.settings.GENERATION_QUEUE_ENABLED", False),
    ):
        yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session
