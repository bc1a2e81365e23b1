"""Tiered legacy URL resolver.

Turns one legacy URL record into either a ResolvedMapping (with the name of
the tier that matched in ``matched_by``) or an Unresolved miss. Resolution
is a pure function of (record, catalog index, hand-kept tables): the same
inputs always give the same output, including the fuzzy tier, whose ties
are broken by edit distance and then by slug.

Category tiers, first match wins:
1. manual override table
2. two-segment nested path (/parent/child/)
3. exact slug match on the last segment
4. fuzzy slug match (hyphens ignored, singular/plural folded)

Brands only get an exact slug match. Pages always resolve (unknown pages go
home). Products only resolve through the discontinued-item heuristic; the
rest wait for the SKU lookup stage.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from rapidfuzz.distance import Levenshtein

from models import SourceType
from schemas import CategoryNode, LegacyUrlRecord, ResolvedMapping, Unresolved
from services.catalog_service import CatalogIndex
from services.normalizer import fuzzy_key, keys_match, normalize_path, normalized_key

type Resolution = ResolvedMapping | Unresolved

MATCH_MANUAL = "manual mapping"
MATCH_NESTED = "nested match"
MATCH_CHILD_FIXED_PARENT = "child match (fixed parent)"
MATCH_CHILD_TOP_LEVEL = "child match (top-level)"
MATCH_PARENT_ONLY = "parent only match"
MATCH_EXACT = "exact match"
MATCH_FUZZY = "fuzzy match"
MATCH_BRAND = "exact brand match"
MATCH_STATIC_PAGE = "static page"
MATCH_PAGE_HOME_FALLBACK = "static page (homepage fallback)"
MATCH_DISCONTINUED = "discontinued/internal product"
MATCH_DEPRECATED_CATEGORY = "deprecated category"

WITH_PARENT_SUFFIX = " (with parent)"

REASON_NEEDS_SKU_LOOKUP = "product - needs SKU lookup"

HOME_URL = "/"
PRODUCTS_URL = "/products/"


def normalize_table(table: Mapping[str, str]) -> Mapping[str, str]:
    """Key a hand-kept ``path -> target`` table by normalized path."""
    return MappingProxyType(
        {normalized_key(path): target for path, target in table.items()}
    )


# Legacy category paths that no longer correspond to a catalog slug
MANUAL_CATEGORY_MAPPINGS = normalize_table(
    {
        "shop-all": "/products/",
        "lithium-battery": "/lithium-batteries/",
        "shop-by-brand": "/brands/",
        "all-categories": "/categories/",
        "brands": "/brands/",
        "bestsellers": "/products/",
        "featured-products": "/products/",
        "on-sale": "/products/",
        "new-products": "/products/",
        "clearance": "/products/",
    }
)

STATIC_PAGE_MAPPINGS = normalize_table(
    {
        "/shipping/": "/shipping-policy/",
        "/terms-and-conditions/": "/terms-and-conditions/",
        "/frequently-asked-questions/": "/faq/",
        "/disclaimer/": "/terms-and-conditions/",
        "/refund-return-policy/": "/refund-return-policy/",
        "/payment-policy/": "/terms-and-conditions/",
        "/customer-reviews/": "/",
        "/wholesale/": "/contact-us/",
        "/solamp-product-library/": "/products/",
        "/ai-voice-chat-with-redacted-chris/": "/",
        "/ebay/": "/products/",
        "/sponsorships-affiliations-and-organizations/": "/about-us/",
        "/careers/": "/contact-us/",
        "/portfolio/": "/about-us/",
    }
)

# Categories dropped from the new catalog and where their traffic goes
DEPRECATED_CATEGORY_MAPPINGS = normalize_table(
    {
        "/ev-charging/": "/products/",
        "/yard-sale/": "/products/",
        "/b2b-ninja-custom-products/": "/products/",
        "/solar-carports-canopies-and-awnings/": "/solar-power-systems/",
        "/aa-batteries/": "/batteries/",
    }
)

# Substrings marking internal SKUs, fee line-items and placeholders
DISCONTINUED_PRODUCT_PATTERNS: tuple[str, ...] = (
    "test",
    "shipping",
    "fee",
    "tax",
    "extra-charge",
    "difference",
    "quoted-shipping",
    "ma-taxes",
    "bank-fee",
    "processing-fee",
    "miscellaneous",
    "spare-parts",
    "bos",
    "prewire",
    "backplate",
    "storage",
    "custom-cable",
    "s-e-n-d",
    "item8",
)


def _no_match(record: LegacyUrlRecord) -> Unresolved:
    return Unresolved(
        old_url=record.old_url, reason=f"no match found for: {record.old_url}"
    )


def _mapped(record: LegacyUrlRecord, new_url: str, matched_by: str) -> ResolvedMapping:
    return ResolvedMapping(
        id=record.id,
        old_url=record.old_url,
        source_type=record.source_type,
        new_url=new_url,
        matched_by=matched_by,
        notes=record.notes,
    )


def find_fuzzy_category(segment: str, catalog: CatalogIndex) -> CategoryNode | None:
    """Closest category whose slug matches ``segment`` up to hyphens and plurals.

    Among several candidates the one with the smallest Levenshtein distance
    to the segment wins; equal distances fall back to the alphabetically
    first slug.
    """
    key = fuzzy_key(segment)
    candidates = [
        node
        for node in catalog.by_slug.values()
        if keys_match(fuzzy_key(node.slug), key)
    ]
    if not candidates:
        return None
    segment = segment.lower()
    return min(
        candidates,
        key=lambda node: (
            Levenshtein.distance(segment, node.slug.lower()),
            node.slug.lower(),
        ),
    )


def _resolve_nested(
    record: LegacyUrlRecord, segments: list[str], catalog: CatalogIndex
) -> ResolvedMapping | None:
    parent_slug, child_slug = segments
    parent = catalog.category(parent_slug)
    child = catalog.category(child_slug)

    if parent and child and child.parent_id == parent.id:
        return _mapped(record, f"/{parent_slug}/{child_slug}/", MATCH_NESTED)

    if child:
        actual_parent = catalog.parent_slug_of(child)
        if actual_parent:
            return _mapped(
                record, f"/{actual_parent}/{child.slug}/", MATCH_CHILD_FIXED_PARENT
            )
        return _mapped(record, f"/{child.slug}/", MATCH_CHILD_TOP_LEVEL)

    if parent:
        return _mapped(record, f"/{parent.slug}/", MATCH_PARENT_ONLY)

    return None


def resolve_category(
    record: LegacyUrlRecord,
    catalog: CatalogIndex,
    manual_table: Mapping[str, str] = MANUAL_CATEGORY_MAPPINGS,
) -> Resolution:
    segments = normalize_path(record.old_url)
    if not segments:
        return _no_match(record)

    manual_target = manual_table.get("/".join(segments))
    if manual_target:
        return _mapped(record, manual_target, MATCH_MANUAL)

    if len(segments) == 2:
        nested = _resolve_nested(record, segments, catalog)
        if nested is not None:
            return nested

    last_segment = segments[-1]

    exact = catalog.category(last_segment)
    if exact is not None:
        new_url, has_parent = catalog.canonical_category_url(exact)
        matched_by = MATCH_EXACT + (WITH_PARENT_SUFFIX if has_parent else "")
        return _mapped(record, new_url, matched_by)

    fuzzy = find_fuzzy_category(last_segment, catalog)
    if fuzzy is not None:
        new_url, has_parent = catalog.canonical_category_url(fuzzy)
        matched_by = MATCH_FUZZY + (WITH_PARENT_SUFFIX if has_parent else "")
        return _mapped(record, new_url, matched_by)

    return _no_match(record)


def resolve_brand(record: LegacyUrlRecord, catalog: CatalogIndex) -> Resolution:
    # No fuzzy tier: the brand list is small and curated
    segments = normalize_path(record.old_url)
    if not segments:
        return _no_match(record)

    brand = catalog.brand(segments[-1])
    if brand is None:
        return _no_match(record)
    return _mapped(record, f"/{brand.slug}/", MATCH_BRAND)


def resolve_page(
    record: LegacyUrlRecord,
    page_table: Mapping[str, str] = STATIC_PAGE_MAPPINGS,
) -> ResolvedMapping:
    """Static pages always resolve; unknown ones go to the homepage."""
    target = page_table.get(normalized_key(record.old_url))
    if target:
        return _mapped(record, target, MATCH_STATIC_PAGE)
    return _mapped(record, HOME_URL, MATCH_PAGE_HOME_FALLBACK)


def is_discontinued_product(
    old_url: str, patterns: Iterable[str] = DISCONTINUED_PRODUCT_PATTERNS
) -> bool:
    key = normalized_key(old_url)
    return any(pattern in key for pattern in patterns)


def resolve_product(
    record: LegacyUrlRecord,
    patterns: Iterable[str] = DISCONTINUED_PRODUCT_PATTERNS,
) -> Resolution:
    if is_discontinued_product(record.old_url, patterns):
        return _mapped(record, PRODUCTS_URL, MATCH_DISCONTINUED)
    return Unresolved(old_url=record.old_url, reason=REASON_NEEDS_SKU_LOOKUP)


def resolve_deprecated_category(
    record: LegacyUrlRecord,
    deprecated_table: Mapping[str, str] = DEPRECATED_CATEGORY_MAPPINGS,
) -> Resolution:
    target = deprecated_table.get(normalized_key(record.old_url))
    if target:
        return _mapped(record, target, MATCH_DEPRECATED_CATEGORY)
    return _no_match(record)


def resolve(
    record: LegacyUrlRecord,
    catalog: CatalogIndex,
    manual_table: Mapping[str, str] = MANUAL_CATEGORY_MAPPINGS,
) -> Resolution:
    """Resolve one record with the strategy for its source type."""
    match record.source_type:
        case SourceType.CATEGORY:
            return resolve_category(record, catalog, manual_table)
        case SourceType.BRAND:
            return resolve_brand(record, catalog)
        case SourceType.PAGE:
            return resolve_page(record)
        case SourceType.PRODUCT:
            return resolve_product(record)
        case _:
            raise ValueError(f"Unknown source type: {record.source_type}")
