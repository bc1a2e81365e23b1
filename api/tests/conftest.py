"""Pytest configuration and shared fixtures.

This module provides:
- An in-memory SQLite mapping store (aiosqlite + StaticPool) per test
- Async session fixtures for repository/service tests
- A small catalog snapshot shared by resolver and pipeline tests
- Settings cache reset between tests
"""

# Set environment variables BEFORE any imports that trigger Settings validation
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers tables on Base.metadata
from core.config import clear_settings_cache
from core.database import Base
from models import RedirectStatus, SourceType, UrlRedirect
from schemas import BrandRecord, CategoryNode, LegacyUrlRecord
from services.catalog_service import CatalogIndex

# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_settings():
    """Each test sees settings built from its own environment."""
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory mapping store shared by every session of one test.

    StaticPool keeps a single connection alive so the in-memory database
    survives between sessions.
    """
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    async with session_maker() as session:
        yield session


@pytest.fixture
def add_redirect(
    session_maker: async_sessionmaker[AsyncSession],
) -> Callable[..., object]:
    """Insert a url_redirects row and commit it."""

    async def _add(
        old_url: str,
        new_url: str | None = None,
        *,
        record_id: str | None = None,
        source_type: SourceType = SourceType.CATEGORY,
        status: RedirectStatus | None = None,
        notes: str = "",
    ) -> UrlRedirect:
        if status is None:
            status = RedirectStatus.MAPPED if new_url else RedirectStatus.UNMAPPED
        row = UrlRedirect(
            id=record_id or old_url.strip("/").replace("/", "-") or "root",
            old_url=old_url,
            new_url=new_url,
            source_type=source_type,
            status=status,
            notes=notes,
        )
        async with session_maker() as session:
            session.add(row)
            await session.commit()
        return row

    return _add


# =============================================================================
# Catalog Fixtures
# =============================================================================


@pytest.fixture
def catalog() -> CatalogIndex:
    """Small catalog: two trees, a few roots and three brands."""
    return CatalogIndex.build(
        [
            CategoryNode(id="1", slug="solar-panels", title="Solar Panels"),
            CategoryNode(
                id="2",
                slug="off-grid-solar-panels",
                title="Off-Grid Solar Panels",
                parent_id="1",
            ),
            CategoryNode(id="3", slug="batteries", title="Batteries"),
            CategoryNode(
                id="4",
                slug="lithium-batteries",
                title="Lithium Batteries",
                parent_id="3",
            ),
            CategoryNode(id="5", slug="inverters", title="Inverters"),
            CategoryNode(id="6", slug="charge-controllers", title="Charge Controllers"),
            CategoryNode(id="7", slug="accessories", title="Accessories"),
        ],
        [
            BrandRecord(id="10", slug="victron-energy", title="Victron Energy"),
            BrandRecord(id="11", slug="rec-solar", title="REC Solar"),
            BrandRecord(id="12", slug="midnite-solar", title="MidNite Solar"),
        ],
    )


@pytest.fixture
def make_record() -> Callable[..., LegacyUrlRecord]:
    counter = iter(range(1, 10_000))

    def _make(
        old_url: str,
        source_type: SourceType = SourceType.CATEGORY,
        **overrides,
    ) -> LegacyUrlRecord:
        return LegacyUrlRecord(
            id=overrides.pop("id", f"rec-{next(counter)}"),
            old_url=old_url,
            source_type=source_type,
            **overrides,
        )

    return _make
