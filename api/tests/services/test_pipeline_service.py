"""Tests for resolver pipeline stages, stage files and applying to the store."""

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest
from sqlalchemy import select

from models import RedirectStatus, SourceType, UrlRedirect
from repositories.redirect_repository import StoreFailure, UrlRedirectRepository
from schemas import ResolvedMapping, StageOutput
from services import pipeline_service
from services.pipeline_service import (
    StageInputError,
    apply_stage_output,
    format_summary,
    read_mappings,
    read_stage_input,
    render_sql,
    run_catalog_stage,
    run_product_stage,
    write_stage_output,
)


@pytest.mark.unit
class TestCatalogStage:
    def test_splits_resolved_and_unresolved(self, catalog, make_record):
        records = [
            make_record("/solar-panels/off-grid-solar-panels/"),
            make_record("/wind-turbines/"),
            make_record("/brands/rec-solar/", SourceType.BRAND),
            make_record("/sa-12k-2p/", SourceType.PRODUCT),
            make_record("/careers/", SourceType.PAGE),
        ]

        output = run_catalog_stage(records, catalog)

        assert output.stage == "catalog"
        assert [m.old_url for m in output.resolved] == [
            "/solar-panels/off-grid-solar-panels/",
            "/brands/rec-solar/",
        ]
        assert [r.old_url for r in output.unresolved] == [
            "/wind-turbines/",
            "/sa-12k-2p/",
            "/careers/",
        ]
        assert output.total == len(records)

    def test_unresolved_records_carry_reason(self, catalog, make_record):
        records = [
            make_record("/wind-turbines/", notes="from export", id="7"),
            make_record("/sa-12k-2p/", SourceType.PRODUCT),
            make_record("/careers/", SourceType.PAGE),
        ]

        output = run_catalog_stage(records, catalog)

        assert [r.notes for r in output.unresolved] == [
            "no match found for: /wind-turbines/",
            "product - needs SKU lookup",
            "deferred to product stage",
        ]
        assert {r.status for r in output.unresolved} == {RedirectStatus.UNMAPPED}
        assert (output.unresolved[0].id, output.unresolved[0].old_url) == (
            "7",
            "/wind-turbines/",
        )

    def test_does_not_mutate_input(self, catalog, make_record):
        records = [make_record("/inverters/"), make_record("/wind-turbines/")]
        snapshot = [r.model_copy() for r in records]

        run_catalog_stage(records, catalog)

        assert records == snapshot


@pytest.mark.unit
class TestProductStage:
    def test_resolves_pages_products_and_deprecated_categories(self, make_record):
        records = [
            make_record("/shipping/", SourceType.PAGE),
            make_record("/shipping-fee/", SourceType.PRODUCT),
            make_record("/ev-charging/", SourceType.CATEGORY),
        ]

        output = run_product_stage(records)

        assert [(m.new_url, m.matched_by) for m in output.resolved] == [
            ("/shipping-policy/", "static page"),
            ("/products/", "discontinued/internal product"),
            ("/products/", "deprecated category"),
        ]
        assert output.unresolved == []

    def test_leftovers_are_escalated_with_reason(self, make_record):
        records = [
            make_record("/sa-12k-2p/", SourceType.PRODUCT),
            make_record("/wind-turbines/", SourceType.CATEGORY),
            make_record("/unknown-brand/", SourceType.BRAND),
        ]

        output = run_product_stage(records)

        assert output.resolved == []
        assert [r.status for r in output.unresolved] == [
            RedirectStatus.NEEDS_REVIEW
        ] * 3
        assert output.unresolved[0].notes == "product - needs SKU lookup"
        assert output.unresolved[1].notes == "no match found for: /wind-turbines/"

    def test_tables_are_injectable(self, make_record):
        output = run_product_stage(
            [make_record("/sample-kit/", SourceType.PRODUCT)],
            discontinued_patterns=("sample",),
        )
        assert output.resolved[0].new_url == "/products/"


@pytest.mark.unit
class TestSummaryAndSql:
    def _output(self, make_record) -> StageOutput:
        return StageOutput(
            stage="catalog",
            resolved=[
                ResolvedMapping(
                    id="1",
                    old_url="/o'brien/",
                    source_type=SourceType.CATEGORY,
                    new_url="/o'brien-panels/",
                    matched_by="fuzzy match",
                ),
                ResolvedMapping(
                    id="2",
                    old_url="/inverters/",
                    source_type=SourceType.CATEGORY,
                    new_url="/inverters/",
                    matched_by="exact match",
                ),
                ResolvedMapping(
                    id="3",
                    old_url="/batteries/",
                    source_type=SourceType.CATEGORY,
                    new_url="/batteries/",
                    matched_by="exact match",
                ),
            ],
            unresolved=[make_record("/wind-turbines/", notes="no match")],
        )

    def test_counts_by_method_most_common_first(self, make_record):
        assert self._output(make_record).counts_by_method() == {
            "exact match": 2,
            "fuzzy match": 1,
        }

    def test_format_summary(self, make_record):
        summary = format_summary(self._output(make_record))

        assert "Total input: 4" in summary
        assert "Successfully mapped: 3" in summary
        assert "Still need review: 1" in summary
        assert "  exact match: 2" in summary

    def test_render_sql_escapes_quotes(self, make_record):
        sql = render_sql(
            self._output(make_record),
            generated_at=datetime(2026, 1, 1, tzinfo=UTC),
        )

        assert (
            "UPDATE url_redirects SET new_url = '/o''brien-panels/', "
            "status = 'mapped', notes = 'Mapped: fuzzy match' "
            "WHERE id = '1' AND status != 'mapped';"
        ) in sql
        assert "-- Generated: 2026-01-01T00:00:00+00:00" in sql
        assert "-- UNMATCHED REDIRECTS (need manual review):" in sql
        assert "-- /wind-turbines/ (category) - no match" in sql

    def test_render_sql_protects_mapped_rows(self, make_record):
        sql = render_sql(self._output(make_record))
        updates = [line for line in sql.splitlines() if line.startswith("UPDATE")]

        assert len(updates) == 3
        assert all(line.endswith(" AND status != 'mapped';") for line in updates)

    def test_render_sql_overwrite(self, make_record):
        sql = render_sql(self._output(make_record), unmapped_only=False)

        assert "status != 'mapped'" not in sql
        assert "WHERE id = '2';" in sql

    def test_written_sql_follows_overwrite_flag(self, tmp_path: Path, make_record):
        output = self._output(make_record)

        files = write_stage_output(output, tmp_path, unmapped_only=False)

        assert "status != 'mapped'" not in (tmp_path / files.sql).read_text()


@pytest.mark.unit
class TestStageFiles:
    def test_write_and_read_back(self, tmp_path: Path, catalog, make_record):
        output = run_catalog_stage(
            [make_record("/inverters/"), make_record("/wind-turbines/")], catalog
        )

        files = write_stage_output(output, tmp_path / "audit")

        assert files.results == "mapping-results.json"
        assert files.unresolved == "still-unmatched.json"
        assert read_mappings(tmp_path / "audit" / files.results) == output.resolved
        assert read_stage_input(tmp_path / "audit" / files.unresolved) == (
            output.unresolved
        )
        assert (tmp_path / "audit" / files.sql).read_text().startswith("-- URL")

    def test_product_stage_file_names(self, tmp_path: Path):
        files = write_stage_output(StageOutput(stage="product"), tmp_path)
        assert files.results == "product-mapping-results.json"
        assert files.unresolved == "need-product-lookup.json"

    def test_reads_export_with_integer_ids(self, tmp_path: Path):
        path = tmp_path / "export.json"
        path.write_text(
            json.dumps(
                [{"id": 7, "old_url": "/a/", "source_type": "page", "notes": None}]
            )
        )

        [record] = read_stage_input(path)

        assert record.id == "7"
        assert record.notes == ""

    def test_missing_input(self, tmp_path: Path):
        with pytest.raises(StageInputError, match="not found"):
            read_stage_input(tmp_path / "missing.json")

    def test_malformed_input(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text('[{"id": "1"}]')
        with pytest.raises(StageInputError, match="invalid records"):
            read_stage_input(path)

    def test_malformed_results(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text("nope")
        with pytest.raises(StageInputError, match="malformed"):
            read_mappings(path)


async def _rows(session_maker) -> dict[str, UrlRedirect]:
    async with session_maker() as session:
        result = await session.execute(select(UrlRedirect))
        return {row.id: row for row in result.scalars()}


@pytest.mark.integration
class TestApplyStageOutput:
    async def test_applies_and_escalates(
        self, db_session, session_maker, add_redirect, make_record
    ):
        await add_redirect("/shipping/", None, record_id="1")
        await add_redirect("/sa-12k-2p/", None, record_id="2")
        records = [
            make_record("/shipping/", SourceType.PAGE, id="1"),
            make_record("/sa-12k-2p/", SourceType.PRODUCT, id="2"),
        ]
        output = run_product_stage(records)

        report, adjusted = await apply_stage_output(
            db_session, output, escalate_unresolved=True
        )

        assert (report.applied, report.skipped, report.escalated) == (1, 0, 1)
        assert adjusted == output
        rows = await _rows(session_maker)
        assert rows["1"].status == RedirectStatus.MAPPED
        assert rows["1"].new_url == "/shipping-policy/"
        assert rows["1"].notes == "Mapped: static page"
        assert rows["2"].status == RedirectStatus.NEEDS_REVIEW
        assert rows["2"].notes == "product - needs SKU lookup"

    async def test_rerun_skips_mapped_rows(
        self, db_session, session_maker, add_redirect, catalog, make_record
    ):
        await add_redirect("/inverters/", "/hand-fixed/", record_id="1")
        output = run_catalog_stage([make_record("/inverters/", id="1")], catalog)

        report, _ = await apply_stage_output(db_session, output)

        assert (report.applied, report.skipped) == (0, 1)
        assert (await _rows(session_maker))["1"].new_url == "/hand-fixed/"

    async def test_failed_writes_return_to_unresolved(
        self, db_session, add_redirect, catalog, make_record, monkeypatch
    ):
        await add_redirect("/inverters/", None, record_id="1")
        await add_redirect("/batteries/", None, record_id="2")
        output = run_catalog_stage(
            [make_record("/inverters/", id="1"), make_record("/batteries/", id="2")],
            catalog,
        )

        original = UrlRedirectRepository.apply_mapping

        async def _flaky(self, mapping, *, unmapped_only=True):
            if mapping.id == "1":
                return StoreFailure(operation="apply_mapping", error="disk I/O error")
            return await original(self, mapping, unmapped_only=unmapped_only)

        monkeypatch.setattr(UrlRedirectRepository, "apply_mapping", _flaky)

        report, adjusted = await apply_stage_output(db_session, output)

        assert report.applied == 1
        assert [m.id for m in report.failed] == ["1"]
        assert [m.id for m in adjusted.resolved] == ["2"]
        assert [(r.id, r.source_type) for r in adjusted.unresolved] == [
            ("1", SourceType.CATEGORY)
        ]

    def test_default_stage_file_table(self):
        assert set(pipeline_service.STAGE_FILES) == {"catalog", "product"}
