"""Path and slug normalization shared by every redirect component.

All functions are total over strings: they never raise and have no side
effects.
"""

from __future__ import annotations


def normalize_path(url: str) -> list[str]:
    """Lowercase a path and split it into non-empty segments.

    >>> normalize_path("/Solar-Panels//Off-Grid/")
    ['solar-panels', 'off-grid']
    """
    return [segment for segment in url.lower().strip("/").split("/") if segment]


def normalized_key(url: str) -> str:
    """Segments of ``url`` re-joined with ``/``; the key for hand-kept tables."""
    return "/".join(normalize_path(url))


def fuzzy_key(slug: str) -> str:
    """Hyphen-free lowercase form of a slug, for approximate matching only."""
    return slug.replace("-", "").lower()


def plural_variants(key: str) -> set[str]:
    """Singular/plural spellings of a fuzzy key.

    Covers the plain key, ``+s``, ``+es`` and a trailing ``ies`` folded to
    ``y``. Callers check membership in both directions, so the reverse
    forms (dropping ``s``/``es``, ``y`` back to ``ies``) fall out of the
    symmetric comparison in :func:`keys_match`.
    """
    variants = {key, f"{key}s", f"{key}es"}
    if key.endswith("ies"):
        variants.add(key.removesuffix("ies") + "y")
    return variants


def keys_match(left: str, right: str) -> bool:
    """True when two fuzzy keys are equal up to a plural/singular variant."""
    return right in plural_variants(left) or left in plural_variants(right)


def slash_variants(path: str) -> tuple[str, str]:
    """Return ``(with_trailing_slash, without_trailing_slash)`` forms of a path.

    The root path has no slash-less form and is returned twice.
    """
    stripped = path.rstrip("/")
    if not stripped:
        return "/", "/"
    return f"{stripped}/", stripped
