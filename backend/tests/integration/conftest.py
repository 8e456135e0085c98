# tests/integration/conftest.py
"""Integration fixtures - real AsyncSession over a file-backed SQLite database."""

import pytest
import pytest_asyncio
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles

from app.database import Base
from app.models import AuditLog, LeadDuplicate, ScrapedLead, User  # noqa: F401


# Postgres column types rendered as their SQLite equivalents
@compiles(JSONB, "sqlite")
def _jsonb_as_json(element, compiler, **kw):
    return "JSON"


@compiles(UUID, "sqlite")
def _uuid_as_char(element, compiler, **kw):
    return "CHAR(32)"


@pytest_asyncio.fixture
async def engine(tmp_path):
    # A file, not :memory:, so separate sessions get separate connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dedupe.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Same session settings as app.database.AsyncSessionLocal."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def save_leads(session_factory):
    async def save(*leads):
        async with session_factory() as session:
            session.add_all(leads)
            await session.commit()
        return [lead.id for lead in leads]
    return save
