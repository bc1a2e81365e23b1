"""Integration tests for UrlRedirectRepository against in-memory SQLite."""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from models import RedirectStatus, SourceType, UrlRedirect
from repositories.redirect_repository import (
    StoreFailure,
    StoreOk,
    UrlRedirectRepository,
    mapped_notes,
)
from schemas import LegacyUrlRecord, ResolvedMapping

pytestmark = pytest.mark.integration


def _mapping(record_id: str, old_url: str, new_url: str, matched_by="exact match"):
    return ResolvedMapping(
        id=record_id,
        old_url=old_url,
        source_type=SourceType.CATEGORY,
        new_url=new_url,
        matched_by=matched_by,
    )


async def _get(db: AsyncSession, record_id: str) -> UrlRedirect:
    db.expire_all()
    result = await db.execute(select(UrlRedirect).where(UrlRedirect.id == record_id))
    return result.scalar_one()


class TestFindByPaths:
    async def test_finds_first_matching_variant(self, db_session, add_redirect):
        await add_redirect("/a/", "/x/", record_id="1")
        await add_redirect("/a", "/y/", record_id="2")

        result = await UrlRedirectRepository(db_session).find_by_paths(["/a/", "/a"])

        assert isinstance(result, StoreOk)
        assert result.value.new_url == "/x/"

    async def test_falls_back_to_second_variant(self, db_session, add_redirect):
        await add_redirect("/a", "/y/", record_id="2")

        result = await UrlRedirectRepository(db_session).find_by_paths(["/a/", "/a"])

        assert result.value.new_url == "/y/"

    async def test_ignores_rows_without_target(self, db_session, add_redirect):
        await add_redirect("/a/", None, record_id="1")
        await add_redirect("/b/", "", record_id="2", status=RedirectStatus.MAPPED)

        repo = UrlRedirectRepository(db_session)

        assert (await repo.find_by_paths(["/a/"])).value is None
        assert (await repo.find_by_paths(["/b/"])).value is None

    async def test_empty_paths(self, db_session):
        assert await UrlRedirectRepository(db_session).find_by_paths([]) == StoreOk(
            None
        )

    async def test_missing_table_is_a_failure_not_an_exception(self):
        engine = create_async_engine("sqlite+aiosqlite://")
        try:
            async with AsyncSession(engine) as session:
                result = await UrlRedirectRepository(session).find_by_paths(["/a/"])
        finally:
            await engine.dispose()

        assert isinstance(result, StoreFailure)
        assert result.operation == "find_by_paths"
        assert "url_redirects" in result.error


class TestListing:
    async def test_list_all_is_ordered(self, db_session, add_redirect):
        await add_redirect("/b/", "/x/")
        await add_redirect("/a/", None)

        result = await UrlRedirectRepository(db_session).list_all()

        assert [row.old_url for row in result.value] == ["/a/", "/b/"]

    async def test_list_by_status(self, db_session, add_redirect):
        await add_redirect("/b/", "/x/")
        await add_redirect("/a/", None)

        result = await UrlRedirectRepository(db_session).list_by_status(
            RedirectStatus.UNMAPPED
        )

        assert [row.old_url for row in result.value] == ["/a/"]


class TestImportLegacy:
    async def test_inserts_new_records(self, db_session):
        records = [
            LegacyUrlRecord(id=1, old_url="/a/", source_type="category"),
            LegacyUrlRecord(id=2, old_url="/b/", source_type="product"),
        ]

        result = await UrlRedirectRepository(db_session).import_legacy(records)
        await db_session.commit()

        assert result == StoreOk(2)
        row = await _get(db_session, "2")
        assert row.source_type == SourceType.PRODUCT
        assert row.status == RedirectStatus.UNMAPPED

    async def test_reimport_keeps_existing_rows(self, db_session, add_redirect):
        await add_redirect("/a/", "/fixed-by-hand/", record_id="1", notes="manual")

        records = [
            LegacyUrlRecord(id="1", old_url="/a/", source_type="category"),
            LegacyUrlRecord(id="3", old_url="/c/", source_type="page"),
        ]
        result = await UrlRedirectRepository(db_session).import_legacy(records)
        await db_session.commit()

        assert result == StoreOk(1)
        row = await _get(db_session, "1")
        assert row.new_url == "/fixed-by-hand/"
        assert row.notes == "manual"


class TestApplyMapping:
    async def test_maps_unmapped_record(self, db_session, add_redirect):
        await add_redirect("/a/", None, record_id="1")

        result = await UrlRedirectRepository(db_session).apply_mapping(
            _mapping("1", "/a/", "/inverters/")
        )
        await db_session.commit()

        assert result == StoreOk(True)
        row = await _get(db_session, "1")
        assert row.new_url == "/inverters/"
        assert row.status == RedirectStatus.MAPPED
        assert row.notes == mapped_notes("exact match") == "Mapped: exact match"

    async def test_protects_mapped_rows_by_default(self, db_session, add_redirect):
        await add_redirect("/a/", "/manual/", record_id="1")

        result = await UrlRedirectRepository(db_session).apply_mapping(
            _mapping("1", "/a/", "/inverters/")
        )
        await db_session.commit()

        assert result == StoreOk(False)
        assert (await _get(db_session, "1")).new_url == "/manual/"

    async def test_overwrite_replaces_mapped_rows(self, db_session, add_redirect):
        await add_redirect("/a/", "/manual/", record_id="1")

        result = await UrlRedirectRepository(db_session).apply_mapping(
            _mapping("1", "/a/", "/inverters/"), unmapped_only=False
        )
        await db_session.commit()

        assert result == StoreOk(True)
        assert (await _get(db_session, "1")).new_url == "/inverters/"

    async def test_needs_review_rows_can_be_mapped(self, db_session, add_redirect):
        await add_redirect(
            "/a/", None, record_id="1", status=RedirectStatus.NEEDS_REVIEW
        )

        result = await UrlRedirectRepository(db_session).apply_mapping(
            _mapping("1", "/a/", "/inverters/")
        )

        assert result == StoreOk(True)

    async def test_missing_record(self, db_session):
        result = await UrlRedirectRepository(db_session).apply_mapping(
            _mapping("404", "/a/", "/inverters/")
        )
        assert result == StoreOk(False)


class TestMarkNeedsReview:
    async def test_escalates_unmapped(self, db_session, add_redirect):
        await add_redirect("/a/", None, record_id="1")

        result = await UrlRedirectRepository(db_session).mark_needs_review(
            "1", "product - needs SKU lookup"
        )
        await db_session.commit()

        assert result == StoreOk(True)
        row = await _get(db_session, "1")
        assert row.status == RedirectStatus.NEEDS_REVIEW
        assert row.notes == "product - needs SKU lookup"

    async def test_never_downgrades_mapped(self, db_session, add_redirect):
        await add_redirect("/a/", "/x/", record_id="1")

        result = await UrlRedirectRepository(db_session).mark_needs_review("1", "x")
        await db_session.commit()

        assert result == StoreOk(False)
        assert (await _get(db_session, "1")).status == RedirectStatus.MAPPED
