"""Repository for the url_redirects mapping store.

Every method returns a StoreResult instead of raising SQLAlchemyError, so
callers branch on the outcome explicitly: the middleware treats a failure
as "no mapping", pipeline stages treat it as "not resolved yet".

Notes:
    Write methods do not commit; the caller controls the transaction. On a
    failed statement the session is rolled back before returning so it can
    be reused for the next record.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models import RedirectStatus, UrlRedirect, utcnow
from repositories.utils import log_slow_query
from schemas import LegacyUrlRecord, ResolvedMapping


@dataclass(frozen=True, slots=True)
class StoreOk[T]:
    value: T


@dataclass(frozen=True, slots=True)
class StoreFailure:
    operation: str
    error: str


type StoreResult[T] = StoreOk[T] | StoreFailure


def mapped_notes(matched_by: str) -> str:
    return f"Mapped: {matched_by}"


class UrlRedirectRepository:
    """Repository for UrlRedirect rows."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _fail(self, operation: str, error: SQLAlchemyError) -> StoreFailure:
        try:
            await self.db.rollback()
        except SQLAlchemyError:
            pass  # the original error is what the caller needs
        return StoreFailure(operation=operation, error=str(error))

    @log_slow_query("find_redirect_by_paths")
    async def find_by_paths(
        self, paths: Sequence[str]
    ) -> StoreResult[UrlRedirect | None]:
        """Point lookup of a mapped row by any of the given old_url spellings.

        When several spellings are stored, the earliest in ``paths`` wins.
        Rows without a target are ignored.
        """
        if not paths:
            return StoreOk(None)
        try:
            result = await self.db.execute(
                select(UrlRedirect).where(
                    UrlRedirect.old_url.in_(list(paths)),
                    UrlRedirect.new_url.is_not(None),
                    UrlRedirect.new_url != "",
                )
            )
            rows = {row.old_url: row for row in result.scalars().all()}
        except SQLAlchemyError as e:
            return await self._fail("find_by_paths", e)

        for path in paths:
            if path in rows:
                return StoreOk(rows[path])
        return StoreOk(None)

    @log_slow_query("list_all_redirects")
    async def list_all(self) -> StoreResult[list[UrlRedirect]]:
        try:
            result = await self.db.execute(
                select(UrlRedirect).order_by(UrlRedirect.old_url)
            )
            return StoreOk(list(result.scalars().all()))
        except SQLAlchemyError as e:
            return await self._fail("list_all", e)

    @log_slow_query("list_redirects_by_status")
    async def list_by_status(
        self, status: RedirectStatus
    ) -> StoreResult[list[UrlRedirect]]:
        try:
            result = await self.db.execute(
                select(UrlRedirect)
                .where(UrlRedirect.status == status)
                .order_by(UrlRedirect.old_url)
            )
            return StoreOk(list(result.scalars().all()))
        except SQLAlchemyError as e:
            return await self._fail("list_by_status", e)

    async def import_legacy(
        self, records: Iterable[LegacyUrlRecord]
    ) -> StoreResult[int]:
        """Insert legacy export rows, leaving existing rows untouched.

        Uses INSERT ... ON CONFLICT DO NOTHING on PostgreSQL/SQLite so a
        re-import never resets a record's status, target or notes.

        Returns:
            The number of rows actually inserted.
        """
        bind = self.db.get_bind()
        dialect = bind.dialect.name if bind else ""

        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            dialect_insert = None

        inserted = 0
        try:
            for record in records:
                values = {
                    "id": record.id,
                    "old_url": record.old_url,
                    "new_url": record.new_url,
                    "source_type": record.source_type,
                    "status": record.status,
                    "notes": record.notes,
                }
                if dialect_insert is not None:
                    stmt = (
                        dialect_insert(UrlRedirect)
                        .values(**values)
                        .on_conflict_do_nothing()
                    )
                    result = await self.db.execute(stmt)
                    inserted += result.rowcount or 0
                else:
                    existing = await self.db.execute(
                        select(UrlRedirect.id).where(
                            (UrlRedirect.id == record.id)
                            | (UrlRedirect.old_url == record.old_url)
                        )
                    )
                    if existing.first() is None:
                        self.db.add(UrlRedirect(**values))
                        await self.db.flush()
                        inserted += 1
        except SQLAlchemyError as e:
            return await self._fail("import_legacy", e)
        return StoreOk(inserted)

    async def apply_mapping(
        self, mapping: ResolvedMapping, *, unmapped_only: bool = True
    ) -> StoreResult[bool]:
        """Write a resolved target onto its record.

        With ``unmapped_only`` (the default) rows already marked mapped are
        left alone, so manual corrections survive a resolver rerun.

        Returns:
            StoreOk(True) if a row was updated, StoreOk(False) if the row is
            missing or was protected.
        """
        stmt = (
            update(UrlRedirect)
            .where(UrlRedirect.id == mapping.id)
            .values(
                new_url=mapping.new_url,
                status=RedirectStatus.MAPPED,
                notes=mapped_notes(mapping.matched_by),
                updated_at=utcnow(),
            )
        )
        if unmapped_only:
            stmt = stmt.where(UrlRedirect.status != RedirectStatus.MAPPED)
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            return await self._fail("apply_mapping", e)
        return StoreOk(bool(result.rowcount))

    async def mark_needs_review(self, record_id: str, reason: str) -> StoreResult[bool]:
        """Escalate an unresolved record. Mapped rows are never downgraded."""
        stmt = (
            update(UrlRedirect)
            .where(
                UrlRedirect.id == record_id,
                UrlRedirect.status != RedirectStatus.MAPPED,
            )
            .values(
                status=RedirectStatus.NEEDS_REVIEW, notes=reason, updated_at=utcnow()
            )
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            return await self._fail("mark_needs_review", e)
        return StoreOk(bool(result.rowcount))
