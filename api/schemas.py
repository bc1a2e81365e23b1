"""Pydantic schemas shared by the resolver, pipeline, harness and HTTP layer."""

from collections import Counter
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from models import RedirectStatus, SourceType


def _as_id(value: Any) -> Any:
    # Catalog exports mix integer and string ids
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def _as_optional_id(value: Any) -> Any:
    if value is None or value == "":
        return None
    return _as_id(value)


def _none_as_empty(value: Any) -> Any:
    return "" if value is None else value


RecordId = Annotated[str, BeforeValidator(_as_id)]
OptionalRecordId = Annotated[str | None, BeforeValidator(_as_optional_id)]
Notes = Annotated[str, BeforeValidator(_none_as_empty)]


class LegacyUrlRecord(BaseModel):
    """A row of the legacy URL export, as stored and handed between stages."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: RecordId
    old_url: str
    source_type: SourceType
    status: RedirectStatus = RedirectStatus.UNMAPPED
    notes: Notes = ""
    new_url: str | None = None


class CategoryNode(BaseModel):
    """Category from the catalog snapshot. Root categories have no parent."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: RecordId
    slug: str
    title: str = ""
    parent_id: OptionalRecordId = None


class BrandRecord(BaseModel):
    """Brand from the catalog snapshot. Flat, no hierarchy."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: RecordId
    slug: str
    title: str = ""


class ResolvedMapping(BaseModel):
    """A computed target for one legacy URL.

    matched_by is the audit trail: it names the resolution method that
    produced new_url and is never empty.
    """

    model_config = ConfigDict(frozen=True)

    id: RecordId
    old_url: str
    source_type: SourceType
    new_url: str
    matched_by: str = Field(min_length=1)
    notes: Notes = ""


class Unresolved(BaseModel):
    """A resolver miss. Expected and non-fatal; carried to the next stage."""

    model_config = ConfigDict(frozen=True)

    old_url: str
    reason: str


class StageOutput(BaseModel):
    """Result of running one pipeline stage over a batch of records."""

    stage: str
    resolved: list[ResolvedMapping] = Field(default_factory=list)
    unresolved: list[LegacyUrlRecord] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.resolved) + len(self.unresolved)

    def counts_by_method(self) -> dict[str, int]:
        """Resolved counts per matched_by, most common first."""
        counts = Counter(m.matched_by for m in self.resolved)
        return dict(sorted(counts.items(), key=lambda item: (-item[1], item[0])))


class UrlMappingEntry(BaseModel):
    """One old -> new pair as read by the validation harness."""

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    old_url: str
    new_url: str
    source_type: SourceType


class ValidationResult(BaseModel):
    """Observed behaviour of one legacy URL against its expected target."""

    old_url: str
    expected_url: str
    actual_status: int
    actual_location: str | None = None
    passed: bool
    error: str | None = None


class ValidationSummary(BaseModel):
    total: int
    passed: int
    failed: int
    pass_rate: str


class ValidationReport(BaseModel):
    """Persisted report of one harness run. Only failures are kept in detail."""

    timestamp: datetime
    target: str
    summary: ValidationSummary
    failures: list[ValidationResult]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str


class PoolStatusResponse(BaseModel):
    """Connection pool metrics."""

    pool_size: int
    checked_out: int
    overflow: int
    checked_in: int


class DetailedHealthResponse(BaseModel):
    """Health check with per-component status."""

    status: str
    service: str
    database: bool
    pool: PoolStatusResponse | None = None
