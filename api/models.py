"""SQLAlchemy models for the URL redirect mapping store."""

from datetime import UTC, datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, String, Text
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from core.database import Base


def utcnow() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime(timezone=True), default=utcnow)

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class SourceType(str, PyEnum):
    """What kind of page a legacy URL pointed at on the old platform."""

    CATEGORY = "category"
    BRAND = "brand"
    PRODUCT = "product"
    PAGE = "page"


class RedirectStatus(str, PyEnum):
    """Lifecycle of a legacy URL record.

    Records start as UNMAPPED, move to MAPPED when a pipeline stage (or an
    operator) writes a target, and to NEEDS_REVIEW when every automatic
    stage has given up on them. Records are never deleted.
    """

    UNMAPPED = "unmapped"
    MAPPED = "mapped"
    NEEDS_REVIEW = "needs_review"


class UrlRedirect(TimestampMixin, Base):
    """One legacy path and the target it redirects to on the new site."""

    __tablename__ = "url_redirects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    old_url: Mapped[str] = mapped_column(
        String(2048), nullable=False, unique=True, index=True
    )
    new_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_type: Mapped[SourceType] = mapped_column(
        Enum(
            SourceType,
            name="source_type",
            native_enum=False,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    status: Mapped[RedirectStatus] = mapped_column(
        Enum(
            RedirectStatus,
            name="redirect_status",
            native_enum=False,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=RedirectStatus.UNMAPPED,
        index=True,
    )
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
