"""Exports of the mapping store.

- ``url-mapping.json``: the old -> new snapshot the validation harness can
  run against without database access.
- ``_redirects``: static host redirect rules, one ``<old> <new> 301`` per
  line, for hosts that serve redirects without the app.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from pydantic import TypeAdapter
from sqlalchemy.ext.asyncio import AsyncSession

from core.logger import get_logger
from models import RedirectStatus
from repositories.redirect_repository import StoreFailure, UrlRedirectRepository
from schemas import UrlMappingEntry
from services.redirect_service import canonicalize

logger = get_logger(__name__)

_entries_adapter = TypeAdapter(list[UrlMappingEntry])


class ExportError(Exception):
    """Raised when the mapping store cannot be read for an export."""


async def export_mapping_snapshot(db: AsyncSession) -> list[UrlMappingEntry]:
    """Mapped rows as ``{old_url, new_url, source_type}``, sorted by old_url."""
    result = await UrlRedirectRepository(db).list_by_status(RedirectStatus.MAPPED)
    if isinstance(result, StoreFailure):
        raise ExportError(f"Could not read mapping store: {result.error}")

    entries = [
        UrlMappingEntry.model_validate(row) for row in result.value if row.new_url
    ]
    entries.sort(key=lambda entry: entry.old_url)
    return entries


def write_mapping_snapshot(entries: list[UrlMappingEntry], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(_entries_adapter.dump_json(entries, indent=2))
    logger.info("export.mapping.written", path=str(path), count=len(entries))


def render_redirect_rules(entries: Iterable[UrlMappingEntry]) -> list[str]:
    """Redirect rule lines with canonical targets.

    Entries whose canonical target is the source path are skipped; a rule
    for them would loop.
    """
    rules = []
    for entry in entries:
        target = canonicalize(entry.new_url)
        if target == entry.old_url:
            continue
        rules.append(f"{entry.old_url} {target} 301")
    return rules


def write_redirect_rules(rules: list[str], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{rule}\n" for rule in rules), encoding="utf-8")
    logger.info("export.redirects.written", path=str(path), count=len(rules))
