"""Catalog snapshot loading and the per-run Catalog Index.

The index is an immutable value built once per resolver run from the
category and brand snapshots and passed by reference into the resolver.
Nothing here is module-global, so two pipeline stages can never observe
each other's lookups.

A malformed tree (a category whose parent_id points nowhere) is not fatal:
the node is treated as top-level and a warning is recorded. A missing or
unparseable snapshot file is fatal and raises CatalogSnapshotError.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from pydantic import TypeAdapter, ValidationError

from core.logger import get_logger
from schemas import BrandRecord, CategoryNode

logger = get_logger(__name__)

_categories_adapter = TypeAdapter(list[CategoryNode])
_brands_adapter = TypeAdapter(list[BrandRecord])


class CatalogSnapshotError(Exception):
    """Raised when a catalog snapshot file is missing or malformed."""


@dataclass(frozen=True, slots=True)
class CatalogIndex:
    """Read-only lookups over one catalog snapshot.

    Slug keys are case-folded. Iteration order of ``categories`` is the
    snapshot order and carries no meaning for matching.
    """

    categories: tuple[CategoryNode, ...]
    brands: tuple[BrandRecord, ...]
    by_slug: Mapping[str, CategoryNode]
    by_id: Mapping[str, CategoryNode]
    brand_by_slug: Mapping[str, BrandRecord]
    warnings: tuple[str, ...] = field(default=())

    @classmethod
    def build(
        cls,
        categories: Iterable[CategoryNode],
        brands: Iterable[BrandRecord] = (),
    ) -> CatalogIndex:
        categories = tuple(categories)
        brands = tuple(brands)

        by_slug: dict[str, CategoryNode] = {}
        by_id: dict[str, CategoryNode] = {}
        for node in categories:
            by_slug[node.slug.lower()] = node
            by_id[node.id] = node

        brand_by_slug = {brand.slug.lower(): brand for brand in brands}

        warnings: list[str] = []
        for node in categories:
            if node.parent_id is not None and node.parent_id not in by_id:
                message = (
                    f"category {node.slug!r} (id={node.id}) references missing "
                    f"parent id={node.parent_id}; treating it as top-level"
                )
                warnings.append(message)
                logger.warning(
                    "catalog.dangling_parent",
                    category_id=node.id,
                    slug=node.slug,
                    parent_id=node.parent_id,
                )

        return cls(
            categories=categories,
            brands=brands,
            by_slug=MappingProxyType(by_slug),
            by_id=MappingProxyType(by_id),
            brand_by_slug=MappingProxyType(brand_by_slug),
            warnings=tuple(warnings),
        )

    def category(self, slug: str) -> CategoryNode | None:
        return self.by_slug.get(slug.lower())

    def brand(self, slug: str) -> BrandRecord | None:
        return self.brand_by_slug.get(slug.lower())

    def parent_slug_of(self, node: CategoryNode) -> str | None:
        """Slug of the node's parent, or None for roots and dangling parents."""
        if node.parent_id is None:
            return None
        parent = self.by_id.get(node.parent_id)
        return parent.slug if parent is not None else None

    def canonical_category_url(self, node: CategoryNode) -> tuple[str, bool]:
        """Return ``(url, has_parent)`` for a category on the new site."""
        parent_slug = self.parent_slug_of(node)
        if parent_slug:
            return f"/{parent_slug}/{node.slug}/", True
        return f"/{node.slug}/", False


def _read_json_array(path: Path) -> list:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise CatalogSnapshotError(f"Catalog snapshot not found: {path}") from e
    except OSError as e:
        raise CatalogSnapshotError(f"Cannot read catalog snapshot {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CatalogSnapshotError(
            f"Catalog snapshot {path} is not valid JSON: {e}"
        ) from e

    if not isinstance(data, list):
        raise CatalogSnapshotError(
            f"Catalog snapshot {path} must contain a JSON array, "
            f"got {type(data).__name__}"
        )
    return data


def load_categories(path: Path) -> list[CategoryNode]:
    data = _read_json_array(path)
    try:
        return _categories_adapter.validate_python(data)
    except ValidationError as e:
        raise CatalogSnapshotError(
            f"Catalog snapshot {path} has invalid categories: "
            f"{e.error_count()} error(s), first: {e.errors()[0]['msg']}"
        ) from e


def load_brands(path: Path) -> list[BrandRecord]:
    data = _read_json_array(path)
    try:
        return _brands_adapter.validate_python(data)
    except ValidationError as e:
        raise CatalogSnapshotError(
            f"Catalog snapshot {path} has invalid brands: "
            f"{e.error_count()} error(s), first: {e.errors()[0]['msg']}"
        ) from e


def load_catalog(
    categories_path: Path, brands_path: Path | None = None
) -> CatalogIndex:
    """Load snapshot files and build the index for one resolver run."""
    categories = load_categories(categories_path)
    brands = load_brands(brands_path) if brands_path is not None else []
    index = CatalogIndex.build(categories, brands)
    logger.info(
        "catalog.loaded",
        categories=len(index.categories),
        brands=len(index.brands),
        warnings=len(index.warnings),
    )
    return index
