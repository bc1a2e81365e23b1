"""Resolver pipeline stages.

A stage takes the records still unresolved after the previous stage and
returns a StageOutput: the mappings it resolved plus the records it could
not. Stage functions are pure; reading and writing stage files, rendering
SQL and applying results to the mapping store are separate helpers so the
transition itself can be tested without any I/O.

Stages, in order:
- ``catalog``: category and brand records against the catalog snapshot.
  Misses, products and pages are handed on unmapped with the reason in notes.
- ``product``: static pages, deprecated categories and the
  discontinued-product heuristic. Products that still need a SKU lookup
  (and anything else left) are escalated to needs_review.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logger import get_logger
from models import RedirectStatus, SourceType
from repositories.redirect_repository import (
    StoreFailure,
    UrlRedirectRepository,
    mapped_notes,
)
from schemas import LegacyUrlRecord, ResolvedMapping, StageOutput, Unresolved
from services import resolver_service
from services.catalog_service import CatalogIndex

logger = get_logger(__name__)

CATALOG_STAGE = "catalog"
PRODUCT_STAGE = "product"

REASON_DEFERRED = "deferred to product stage"


@dataclass(frozen=True)
class StageFiles:
    """File names one stage reads and writes inside the audit directory."""

    results: str
    unresolved: str
    sql: str


STAGE_FILES: dict[str, StageFiles] = {
    CATALOG_STAGE: StageFiles(
        results="mapping-results.json",
        unresolved="still-unmatched.json",
        sql="fix-url-mappings.sql",
    ),
    PRODUCT_STAGE: StageFiles(
        results="product-mapping-results.json",
        unresolved="need-product-lookup.json",
        sql="product-mappings.sql",
    ),
}

_records_adapter = TypeAdapter(list[LegacyUrlRecord])
_mappings_adapter = TypeAdapter(list[ResolvedMapping])


class StageInputError(Exception):
    """Raised when a stage input file is missing or malformed."""


def _escalate(record: LegacyUrlRecord, reason: str) -> LegacyUrlRecord:
    return record.model_copy(
        update={"status": RedirectStatus.NEEDS_REVIEW, "notes": reason}
    )


def _log_unresolved(stage: str, miss: Unresolved) -> None:
    logger.debug(
        "resolver.unresolved", stage=stage, old_url=miss.old_url, reason=miss.reason
    )


def run_catalog_stage(
    records: Iterable[LegacyUrlRecord],
    catalog: CatalogIndex,
    manual_table: Mapping[str, str] = resolver_service.MANUAL_CATEGORY_MAPPINGS,
) -> StageOutput:
    """Resolve category and brand records against the catalog index."""
    output = StageOutput(stage=CATALOG_STAGE)
    for record in records:
        match record.source_type:
            case SourceType.CATEGORY:
                result = resolver_service.resolve_category(
                    record, catalog, manual_table
                )
            case SourceType.BRAND:
                result = resolver_service.resolve_brand(record, catalog)
            case SourceType.PRODUCT:
                result = Unresolved(
                    old_url=record.old_url,
                    reason=resolver_service.REASON_NEEDS_SKU_LOOKUP,
                )
            case _:
                result = Unresolved(old_url=record.old_url, reason=REASON_DEFERRED)

        if isinstance(result, ResolvedMapping):
            output.resolved.append(result)
        else:
            _log_unresolved(CATALOG_STAGE, result)
            # Still unmapped; the reason travels with the record
            output.unresolved.append(record.model_copy(update={"notes": result.reason}))
    return output


def run_product_stage(
    records: Iterable[LegacyUrlRecord],
    page_table: Mapping[str, str] = resolver_service.STATIC_PAGE_MAPPINGS,
    deprecated_table: Mapping[str, str] | None = None,
    discontinued_patterns: Sequence[str] | None = None,
) -> StageOutput:
    """Resolve pages, deprecated categories and discontinued products.

    Whatever is left is escalated to needs_review with the miss reason in
    its notes.
    """
    if deprecated_table is None:
        deprecated_table = resolver_service.DEPRECATED_CATEGORY_MAPPINGS
    if discontinued_patterns is None:
        discontinued_patterns = resolver_service.DISCONTINUED_PRODUCT_PATTERNS

    output = StageOutput(stage=PRODUCT_STAGE)
    for record in records:
        match record.source_type:
            case SourceType.PAGE:
                result = resolver_service.resolve_page(record, page_table)
            case SourceType.CATEGORY:
                result = resolver_service.resolve_deprecated_category(
                    record, deprecated_table
                )
            case SourceType.PRODUCT:
                result = resolver_service.resolve_product(
                    record, discontinued_patterns
                )
            case _:
                result = Unresolved(
                    old_url=record.old_url,
                    reason=f"no match found for: {record.old_url}",
                )

        if isinstance(result, ResolvedMapping):
            output.resolved.append(result)
        else:
            _log_unresolved(PRODUCT_STAGE, result)
            output.unresolved.append(_escalate(record, result.reason))
    return output


def format_summary(output: StageOutput) -> str:
    """Human-readable totals and per-method counts for one stage."""
    lines = [
        f"=== {output.stage.upper()} STAGE SUMMARY ===",
        f"Total input: {output.total}",
        f"Successfully mapped: {len(output.resolved)}",
        f"Still need review: {len(output.unresolved)}",
    ]
    counts = output.counts_by_method()
    if counts:
        lines.append("")
        lines.append("Matched by method:")
        lines.extend(f"  {method}: {count}" for method, count in counts.items())
    return "\n".join(lines)


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def render_sql(
    output: StageOutput,
    *,
    generated_at: datetime | None = None,
    unmapped_only: bool = True,
) -> str:
    """UPDATE statements for resolved records plus a comment block of misses.

    With ``unmapped_only`` every UPDATE skips rows already mapped, so running
    the file never reverts a manual correction.
    """
    generated_at = generated_at or datetime.now(UTC)
    guard = " AND status != 'mapped'" if unmapped_only else ""
    lines = [
        f"-- URL redirect mappings ({output.stage} stage)",
        f"-- Generated: {generated_at.isoformat()}",
        f"-- Matched: {len(output.resolved)}, Unmatched: {len(output.unresolved)}",
        "",
    ]
    for mapping in output.resolved:
        lines.append(
            "UPDATE url_redirects SET "
            f"new_url = {_sql_literal(mapping.new_url)}, "
            "status = 'mapped', "
            f"notes = {_sql_literal(mapped_notes(mapping.matched_by))} "
            f"WHERE id = {_sql_literal(mapping.id)}{guard};"
        )
    if output.unresolved:
        lines.append("")
        lines.append("-- UNMATCHED REDIRECTS (need manual review):")
        for record in output.unresolved:
            lines.append(
                f"-- {record.old_url} ({record.source_type.value}) - {record.notes}"
            )
    return "\n".join(lines) + "\n"


def read_stage_input(path: Path) -> list[LegacyUrlRecord]:
    """Read a JSON array of records handed over by the previous stage."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise StageInputError(f"Stage input not found: {path}") from e
    except json.JSONDecodeError as e:
        raise StageInputError(f"Stage input {path} is not valid JSON: {e}") from e

    try:
        return _records_adapter.validate_python(data)
    except ValidationError as e:
        raise StageInputError(
            f"Stage input {path} has invalid records: {e.error_count()} error(s)"
        ) from e


def read_mappings(path: Path) -> list[ResolvedMapping]:
    """Read a results file written by :func:`write_stage_output`."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return _mappings_adapter.validate_python(data)
    except FileNotFoundError as e:
        raise StageInputError(f"Mapping results not found: {path}") from e
    except (json.JSONDecodeError, ValidationError) as e:
        raise StageInputError(f"Mapping results {path} are malformed: {e}") from e


def write_stage_output(
    output: StageOutput, audit_dir: Path, *, unmapped_only: bool = True
) -> StageFiles:
    """Write results, unresolved records and SQL for one stage.

    Returns:
        The file names written, relative to ``audit_dir``.
    """
    files = STAGE_FILES[output.stage]
    audit_dir.mkdir(parents=True, exist_ok=True)

    (audit_dir / files.results).write_bytes(
        _mappings_adapter.dump_json(output.resolved, indent=2)
    )
    (audit_dir / files.unresolved).write_bytes(
        _records_adapter.dump_json(output.unresolved, indent=2)
    )
    (audit_dir / files.sql).write_text(
        render_sql(output, unmapped_only=unmapped_only), encoding="utf-8"
    )

    logger.info(
        "pipeline.stage.written",
        stage=output.stage,
        audit_dir=str(audit_dir),
        results=files.results,
        unresolved=files.unresolved,
    )
    return files


@dataclass
class ApplyReport:
    """Outcome of writing one stage's results into the mapping store."""

    applied: int = 0
    skipped: int = 0
    escalated: int = 0
    failed: list[ResolvedMapping] = field(default_factory=list)


async def apply_mappings(
    db: AsyncSession,
    mappings: Iterable[ResolvedMapping],
    *,
    unmapped_only: bool = True,
) -> ApplyReport:
    """Write resolved mappings one record per transaction.

    A failing write does not abort the batch: the mapping lands in
    ``ApplyReport.failed`` and the record stays unresolved for the next run.
    Rows already mapped are skipped unless ``unmapped_only`` is False.
    """
    repo = UrlRedirectRepository(db)
    report = ApplyReport()
    for mapping in mappings:
        result = await repo.apply_mapping(mapping, unmapped_only=unmapped_only)
        if isinstance(result, StoreFailure):
            logger.warning(
                "pipeline.apply.failed",
                record_id=mapping.id,
                old_url=mapping.old_url,
                error=result.error,
            )
            report.failed.append(mapping)
            continue
        await db.commit()
        if result.value:
            report.applied += 1
        else:
            report.skipped += 1
    return report


async def apply_stage_output(
    db: AsyncSession,
    output: StageOutput,
    *,
    unmapped_only: bool = True,
    escalate_unresolved: bool = False,
) -> tuple[ApplyReport, StageOutput]:
    """Persist a stage into the store.

    Returns the apply report and a copy of ``output`` in which mappings that
    failed to persist have moved back to the unresolved set.
    """
    report = await apply_mappings(db, output.resolved, unmapped_only=unmapped_only)

    if escalate_unresolved:
        repo = UrlRedirectRepository(db)
        for record in output.unresolved:
            result = await repo.mark_needs_review(record.id, record.notes)
            if isinstance(result, StoreFailure):
                logger.warning(
                    "pipeline.escalate.failed", record_id=record.id, error=result.error
                )
                continue
            await db.commit()
            report.escalated += int(result.value)

    if not report.failed:
        return report, output

    failed_ids = {m.id for m in report.failed}
    returned = [
        LegacyUrlRecord(
            id=m.id,
            old_url=m.old_url,
            source_type=m.source_type,
            notes=m.notes,
        )
        for m in report.failed
    ]
    adjusted = StageOutput(
        stage=output.stage,
        resolved=[m for m in output.resolved if m.id not in failed_ids],
        unresolved=[*output.unresolved, *returned],
    )
    return report, adjusted
