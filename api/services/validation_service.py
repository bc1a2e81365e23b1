"""Redirect validation harness.

Probes every legacy URL in the mapping set against a deployed site and
checks that it redirects to the canonical target (or, for unchanged paths,
serves the page directly). Meant to gate a DNS cutover: the CLI exits
non-zero when any URL fails.

CONCURRENCY:
- Mappings are probed in sequential batches; every probe in a batch runs
  concurrently and the batch completes only when all of them have.
- Each probe has its own deadline. A timeout fails that probe only.
- No retries. A network error is final for that URL in this run.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import httpx
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logger import get_logger
from repositories.redirect_repository import StoreFailure, UrlRedirectRepository
from schemas import (
    UrlMappingEntry,
    ValidationReport,
    ValidationResult,
    ValidationSummary,
)
from services.redirect_service import canonicalize

logger = get_logger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 308})
MAX_URLS_PER_GROUP = 10

_entries_adapter = TypeAdapter(list[UrlMappingEntry])


class MappingSourceError(Exception):
    """Raised when the mapping set to validate cannot be loaded."""


async def load_entries_from_store(db: AsyncSession) -> list[UrlMappingEntry]:
    """Every stored record that has a target, ordered by old_url."""
    result = await UrlRedirectRepository(db).list_all()
    if isinstance(result, StoreFailure):
        raise MappingSourceError(f"Could not read mapping store: {result.error}")
    return [
        UrlMappingEntry.model_validate(row) for row in result.value if row.new_url
    ]


def load_entries_from_file(path: Path) -> list[UrlMappingEntry]:
    """Read a ``url-mapping.json`` snapshot written by ``export-mapping``."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return _entries_adapter.validate_python(data)
    except FileNotFoundError as e:
        raise MappingSourceError(f"Mapping file not found: {path}") from e
    except (json.JSONDecodeError, ValidationError) as e:
        raise MappingSourceError(f"Mapping file {path} is malformed: {e}") from e


def _strip_slash(value: str) -> str:
    return value.removesuffix("/")


def is_expected_response(
    entry: UrlMappingEntry, status: int, location: str | None, base_url: str
) -> bool:
    """Whether an observed response satisfies the mapping.

    Unchanged paths must be served directly (200). Only a literal
    ``old_url == new_url`` counts as unchanged: ``/x/ -> /x`` is expected to
    redirect even though the middleware serves it, and fails here as a
    mapping worth cleaning up. Everything else must
    redirect to the canonical target, given either as a bare path or as an
    absolute URL on ``base_url``. One trailing slash is ignored on both sides.
    """
    if entry.old_url == entry.new_url:
        return status == 200
    if status not in REDIRECT_STATUSES:
        return False

    actual = _strip_slash(location or "")
    expected = _strip_slash(canonicalize(entry.new_url))
    return actual in (expected, f"{_strip_slash(base_url)}{expected}")


async def probe_mapping(
    client: httpx.AsyncClient,
    base_url: str,
    entry: UrlMappingEntry,
    timeout: float,
) -> ValidationResult:
    """HEAD one legacy URL without following redirects.

    Never raises for network problems: timeouts and transport errors come
    back as a failed result carrying the error message.
    """
    expected = canonicalize(entry.new_url)
    url = f"{_strip_slash(base_url)}{entry.old_url}"
    try:
        async with asyncio.timeout(timeout):
            response = await client.head(url, follow_redirects=False)
    except TimeoutError:
        error = f"Timed out after {timeout:g}s"
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        # InvalidURL is not an HTTPError; malformed legacy paths raise it
        error = str(e) or type(e).__name__
    else:
        location = response.headers.get("location")
        return ValidationResult(
            old_url=entry.old_url,
            expected_url=expected,
            actual_status=response.status_code,
            actual_location=location,
            passed=is_expected_response(
                entry, response.status_code, location, base_url
            ),
        )

    logger.debug("validation.probe.error", old_url=entry.old_url, error=error)
    return ValidationResult(
        old_url=entry.old_url,
        expected_url=expected,
        actual_status=0,
        actual_location=None,
        passed=False,
        error=error,
    )


async def _run_batches(
    client: httpx.AsyncClient,
    entries: Sequence[UrlMappingEntry],
    base_url: str,
    batch_size: int,
    timeout: float,
) -> list[ValidationResult]:
    results: list[ValidationResult] = []
    total = len(entries)
    for start in range(0, total, batch_size):
        batch = entries[start : start + batch_size]
        results.extend(
            await asyncio.gather(
                *(probe_mapping(client, base_url, e, timeout) for e in batch)
            )
        )
        passed = sum(1 for r in results if r.passed)
        logger.info(
            "validation.batch.complete",
            processed=len(results),
            total=total,
            passed=passed,
            failed=len(results) - passed,
        )
    return results


async def run_validation(
    entries: Sequence[UrlMappingEntry],
    base_url: str,
    *,
    batch_size: int = 10,
    timeout: float = 10.0,
    client: httpx.AsyncClient | None = None,
) -> list[ValidationResult]:
    """Probe every entry in batches of ``batch_size``.

    Args:
        entries: Mappings to check, probed in the given order.
        base_url: Origin of the deployment under test.
        batch_size: Maximum number of requests in flight.
        timeout: Per-probe deadline in seconds.
        client: Optional preconfigured client (tests inject a MockTransport).

    Returns:
        One ValidationResult per entry, in input order.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    logger.info(
        "validation.started",
        target=base_url,
        total=len(entries),
        batch_size=batch_size,
    )
    if client is not None:
        return await _run_batches(client, entries, base_url, batch_size, timeout)

    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=False,
        limits=httpx.Limits(max_connections=batch_size),
    ) as own_client:
        return await _run_batches(own_client, entries, base_url, batch_size, timeout)


def group_failures(
    results: Sequence[ValidationResult],
) -> dict[str, list[ValidationResult]]:
    """Failures keyed by error message, or ``Status <code>`` without one."""
    groups: dict[str, list[ValidationResult]] = {}
    for result in results:
        if result.passed:
            continue
        key = result.error or f"Status {result.actual_status}"
        groups.setdefault(key, []).append(result)
    return groups


def _percent(part: int, total: int) -> str:
    if total == 0:
        return "0%"
    # Half-up rounding, not banker's
    return f"{(part * 200 + total) // (total * 2)}%"


def build_report(
    results: Sequence[ValidationResult],
    target: str,
    *,
    timestamp: datetime | None = None,
) -> ValidationReport:
    passed = sum(1 for r in results if r.passed)
    return ValidationReport(
        timestamp=timestamp or datetime.now(UTC),
        target=target,
        summary=ValidationSummary(
            total=len(results),
            passed=passed,
            failed=len(results) - passed,
            pass_rate=_percent(passed, len(results)),
        ),
        failures=[r for r in results if not r.passed],
    )


def write_report(report: ValidationReport, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    logger.info("validation.report.written", path=str(path))


def format_report(report: ValidationReport) -> str:
    """Human-readable summary with failures grouped by cause."""
    summary = report.summary
    lines = [
        f"Target: {report.target}",
        f"Passed: {summary.passed} ({_percent(summary.passed, summary.total)})",
        f"Failed: {summary.failed} ({_percent(summary.failed, summary.total)})",
    ]

    for reason, items in group_failures(report.failures).items():
        lines.append("")
        lines.append(f"  {reason}: ({len(items)} URLs)")
        for item in items[:MAX_URLS_PER_GROUP]:
            lines.append(f"    {item.old_url}")
            lines.append(f"      Expected: {item.expected_url}")
            if item.actual_location:
                lines.append(f"      Got: {item.actual_location}")
        if len(items) > MAX_URLS_PER_GROUP:
            lines.append(f"    ... and {len(items) - MAX_URLS_PER_GROUP} more")

    lines.append("")
    if summary.failed:
        lines.append(
            f"{summary.failed} URLs failed validation. Review before launch."
        )
    else:
        lines.append("All URLs validated successfully.")
    return "\n".join(lines)
