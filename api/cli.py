#!/usr/bin/env python3
"""CLI for the storefront redirect system.

Usage:
    python -m cli <command>

Commands:
    migrate            Run database migrations
    init-db            Create tables directly from the models (local SQLite)
    import-legacy      Load the legacy URL export into the mapping store
    resolve-catalog    Resolve categories and brands against the catalog
    resolve-products   Resolve pages, deprecated categories and products
    apply              Write a stage results file into the mapping store
    validate           Probe a deployment and check every redirect
    export-mapping     Write url-mapping.json from the mapping store
    export-redirects   Write static _redirects rules from the mapping store

Resolve commands read the store's unmapped rows unless --input is given, so
a rerun never touches rows that are already mapped.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.database import (
    create_engine,
    create_session_maker,
    create_tables,
    dispose_engine,
)
from core.logger import bind_contextvars, configure_logging, get_logger
from models import RedirectStatus
from repositories.redirect_repository import StoreFailure, UrlRedirectRepository
from schemas import LegacyUrlRecord, StageOutput
from services import export_service, pipeline_service, validation_service
from services.catalog_service import CatalogSnapshotError, load_catalog

logger = get_logger(__name__)

MAPPING_SNAPSHOT_FILE = "url-mapping.json"
REDIRECT_RULES_FILE = "_redirects"


class StoreReadError(Exception):
    """Raised when the CLI cannot read its input from the mapping store."""


async def _run_with_session[T](fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
    engine = create_engine()
    try:
        if get_settings().is_sqlite:
            await create_tables(engine)
        session_maker = create_session_maker(engine)
        async with session_maker() as session:
            return await fn(session)
    finally:
        await dispose_engine(engine)


def _audit_dir(args: argparse.Namespace) -> Path:
    return Path(args.audit_dir) if args.audit_dir else get_settings().audit_dir_path


async def _load_unmapped(db: AsyncSession) -> list[LegacyUrlRecord]:
    result = await UrlRedirectRepository(db).list_by_status(RedirectStatus.UNMAPPED)
    if isinstance(result, StoreFailure):
        raise StoreReadError(f"Could not read unmapped records: {result.error}")
    return [LegacyUrlRecord.model_validate(row) for row in result.value]


def cmd_migrate(args: argparse.Namespace) -> int:
    """Run database migrations."""
    from alembic import command
    from alembic.config import Config

    api_dir = Path(__file__).resolve().parent
    cfg = Config(str(api_dir / "alembic.ini"))
    # Absolute so it works from any working directory
    cfg.set_main_option("script_location", str(api_dir / "alembic"))

    logger.info("migrate.started", revision=args.revision)
    command.upgrade(cfg, args.revision)
    logger.info("migrate.complete")
    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create tables from the models without Alembic."""

    async def _create() -> None:
        engine = create_engine()
        try:
            await create_tables(engine)
        finally:
            await dispose_engine(engine)

    asyncio.run(_create())
    print("Tables created")
    return 0


def cmd_import_legacy(args: argparse.Namespace) -> int:
    """Load the legacy export. Existing rows keep their status and target."""
    records = pipeline_service.read_stage_input(Path(args.file))

    async def _import(db: AsyncSession) -> int | None:
        result = await UrlRedirectRepository(db).import_legacy(records)
        if isinstance(result, StoreFailure):
            logger.error("import.failed", error=result.error)
            return None
        await db.commit()
        return result.value

    inserted = asyncio.run(_run_with_session(_import))
    if inserted is None:
        print("Import failed, see log for details", file=sys.stderr)
        return 1

    existing = len(records) - inserted
    print(f"Imported {inserted} new records ({existing} already present)")
    return 0


def _run_stage(
    args: argparse.Namespace,
    stage: Callable[[list[LegacyUrlRecord]], StageOutput],
    *,
    escalate_unresolved: bool,
) -> int:
    async def _execute(db: AsyncSession) -> StageOutput:
        if args.input:
            records = pipeline_service.read_stage_input(Path(args.input))
        else:
            records = await _load_unmapped(db)

        output = stage(records)
        if args.apply:
            report, output = await pipeline_service.apply_stage_output(
                db,
                output,
                unmapped_only=not args.overwrite,
                escalate_unresolved=escalate_unresolved,
            )
            print(
                f"Applied {report.applied}, skipped {report.skipped} already mapped, "
                f"escalated {report.escalated}, failed {len(report.failed)}"
            )
        return output

    if args.input and not args.apply:
        output = stage(pipeline_service.read_stage_input(Path(args.input)))
    else:
        output = asyncio.run(_run_with_session(_execute))
    files = pipeline_service.write_stage_output(
        output, _audit_dir(args), unmapped_only=not args.overwrite
    )
    logger.info(
        "pipeline.stage.complete",
        stage=output.stage,
        resolved=len(output.resolved),
        unresolved=len(output.unresolved),
    )

    print(pipeline_service.format_summary(output))
    print(f"\nResults: {files.results}")
    print(f"Unresolved: {files.unresolved}")
    print(f"SQL: {files.sql}")
    return 0


def cmd_resolve_catalog(args: argparse.Namespace) -> int:
    """Resolve category and brand records against the catalog snapshot."""
    settings = get_settings()
    catalog = load_catalog(
        Path(args.categories or settings.categories_snapshot_path),
        Path(args.brands or settings.brands_snapshot_path),
    )
    return _run_stage(
        args,
        lambda records: pipeline_service.run_catalog_stage(records, catalog),
        escalate_unresolved=False,
    )


def cmd_resolve_products(args: argparse.Namespace) -> int:
    """Resolve pages, deprecated categories and discontinued products."""
    return _run_stage(
        args,
        pipeline_service.run_product_stage,
        escalate_unresolved=True,
    )


def cmd_apply(args: argparse.Namespace) -> int:
    """Write a results file into the store, one transaction per record."""
    mappings = pipeline_service.read_mappings(Path(args.results_file))

    async def _apply(db: AsyncSession) -> pipeline_service.ApplyReport:
        return await pipeline_service.apply_mappings(
            db, mappings, unmapped_only=not args.overwrite
        )

    report = asyncio.run(_run_with_session(_apply))
    print(
        f"Applied {report.applied}, skipped {report.skipped} already mapped, "
        f"failed {len(report.failed)}"
    )
    return 1 if report.failed else 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Probe every mapped URL. Exit code 1 when any URL fails."""
    settings = get_settings()
    base_url = args.base_url or settings.validation_base_url
    batch_size = (
        args.batch_size
        if args.batch_size is not None
        else settings.validation_batch_size
    )
    timeout = (
        args.timeout
        if args.timeout is not None
        else settings.validation_timeout_seconds
    )
    report_path = Path(
        args.report if args.report is not None else settings.validation_report_path
    )

    if args.mapping_file:
        entries = validation_service.load_entries_from_file(Path(args.mapping_file))
    else:
        entries = asyncio.run(
            _run_with_session(validation_service.load_entries_from_store)
        )

    print(f"Target: {base_url}")
    print(f"Total URLs: {len(entries)}")
    print(f"Concurrency: {batch_size}\n")

    results = asyncio.run(
        validation_service.run_validation(
            entries, base_url, batch_size=batch_size, timeout=timeout
        )
    )
    report = validation_service.build_report(results, base_url)
    validation_service.write_report(report, report_path)

    print(validation_service.format_report(report))
    print(f"\nDetailed results saved to: {report_path}")
    return 1 if report.summary.failed else 0


def cmd_export_mapping(args: argparse.Namespace) -> int:
    """Write the mapped rows as url-mapping.json."""
    output = Path(args.output or get_settings().audit_dir_path / MAPPING_SNAPSHOT_FILE)
    entries = asyncio.run(_run_with_session(export_service.export_mapping_snapshot))
    export_service.write_mapping_snapshot(entries, output)
    print(f"Exported {len(entries)} mappings to {output}")
    return 0


def cmd_export_redirects(args: argparse.Namespace) -> int:
    """Write static redirect rules for the mapped rows."""
    output = Path(args.output or get_settings().audit_dir_path / REDIRECT_RULES_FILE)
    entries = asyncio.run(_run_with_session(export_service.export_mapping_snapshot))
    rules = export_service.render_redirect_rules(entries)
    export_service.write_redirect_rules(rules, output)
    print(f"Exported {len(rules)} redirect rules to {output}")
    return 0


def _add_stage_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--input",
        help="JSON array of records to resolve (default: unmapped store rows)",
    )
    parser.add_argument(
        "--audit-dir",
        help="Directory for stage output files (default: AUDIT_DIR)",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Write resolved mappings to the store",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Also replace rows that are already mapped (--apply and SQL file)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Storefront redirects CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    migrate = subparsers.add_parser("migrate", help="Run database migrations")
    migrate.add_argument(
        "revision",
        nargs="?",
        default="head",
        help="Target revision (default: head)",
    )

    subparsers.add_parser("init-db", help="Create tables without migrations")

    import_legacy = subparsers.add_parser(
        "import-legacy", help="Load the legacy URL export into the store"
    )
    import_legacy.add_argument("file", help="JSON array of legacy URL records")

    catalog = subparsers.add_parser(
        "resolve-catalog", help="Resolve categories and brands"
    )
    _add_stage_arguments(catalog)
    catalog.add_argument("--categories", help="Category snapshot JSON")
    catalog.add_argument("--brands", help="Brand snapshot JSON")

    products = subparsers.add_parser(
        "resolve-products",
        help="Resolve pages, deprecated categories and discontinued products",
    )
    _add_stage_arguments(products)

    apply = subparsers.add_parser("apply", help="Write a stage results file")
    apply.add_argument("results_file", help="Stage results JSON")
    apply.add_argument(
        "--overwrite",
        action="store_true",
        help="Also replace rows that are already mapped",
    )

    validate = subparsers.add_parser("validate", help="Validate a deployment")
    validate.add_argument(
        "base_url",
        nargs="?",
        help="Deployment origin (default: VALIDATION_BASE_URL)",
    )
    validate.add_argument(
        "--mapping-file",
        help="Validate a url-mapping.json snapshot instead of the store",
    )
    validate.add_argument("--batch-size", type=int, help="Requests in flight")
    validate.add_argument("--timeout", type=float, help="Per-request timeout (s)")
    validate.add_argument("--report", help="Where to write the JSON report")

    export_mapping = subparsers.add_parser(
        "export-mapping", help="Write url-mapping.json"
    )
    export_mapping.add_argument("--output", help="Output path")

    export_redirects = subparsers.add_parser(
        "export-redirects", help="Write static redirect rules"
    )
    export_redirects.add_argument("--output", help="Output path")

    return parser


COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
    "migrate": cmd_migrate,
    "init-db": cmd_init_db,
    "import-legacy": cmd_import_legacy,
    "resolve-catalog": cmd_resolve_catalog,
    "resolve-products": cmd_resolve_products,
    "apply": cmd_apply,
    "validate": cmd_validate,
    "export-mapping": cmd_export_mapping,
    "export-redirects": cmd_export_redirects,
}


def _check_validate_args(
    parser: argparse.ArgumentParser, args: argparse.Namespace
) -> None:
    if args.batch_size is not None and args.batch_size < 1:
        parser.error("--batch-size must be at least 1")
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")
    if args.base_url and not args.base_url.startswith(("http://", "https://")):
        parser.error("base_url must start with http:// or https://")


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "validate":
        _check_validate_args(parser, args)

    handler = COMMANDS.get(args.command or "")
    if handler is None:
        parser.print_help()
        return 1

    bind_contextvars(command=args.command)
    try:
        return handler(args)
    except (
        CatalogSnapshotError,
        pipeline_service.StageInputError,
        validation_service.MappingSourceError,
        export_service.ExportError,
        StoreReadError,
    ) as e:
        logger.error("cli.failed", error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
