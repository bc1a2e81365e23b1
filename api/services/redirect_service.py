"""Request-time redirect resolution.

Holds the Target Canonicalizer, the single transform applied to every
stored target before it is served as a redirect and before the validation
harness uses it as the expected value, and the store-backed resolver that
the redirect middleware calls for each inbound path.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.logger import get_logger
from repositories.redirect_repository import (
    StoreFailure,
    StoreOk,
    UrlRedirectRepository,
)
from services.normalizer import slash_variants

logger = get_logger(__name__)

PRODUCTS_PREFIX = "/products/"

# Old-site URL shapes that map onto new-site prefixes wholesale
LEGACY_PREFIX_REWRITES: tuple[tuple[str, str], ...] = (
    ("/products/category/", "/categories/"),
    ("/products/brand/", "/brands/"),
)


def canonicalize(new_url: str) -> str:
    """Canonical redirect target for a stored ``new_url``.

    Product detail pages live at the site root, so a ``/products/`` prefix
    is stripped unless the whole target is the ``/products/`` listing page.
    A trailing slash is then enforced.

    >>> canonicalize("/products/SA-12K-2P/")
    '/SA-12K-2P/'
    >>> canonicalize("/products/")
    '/products/'
    """
    target = new_url
    # Repeated so canonicalize(canonicalize(x)) == canonicalize(x)
    while target.startswith(PRODUCTS_PREFIX) and target != PRODUCTS_PREFIX:
        target = "/" + target.removeprefix(PRODUCTS_PREFIX)
    if not target.endswith("/"):
        target = f"{target}/"
    return target


def rewrite_legacy_prefix(path: str) -> str | None:
    """Rewrite old-site prefix URL shapes, or None if none applies."""
    for old_prefix, new_prefix in LEGACY_PREFIX_REWRITES:
        if path.startswith(old_prefix):
            return new_prefix + path.removeprefix(old_prefix)
    return None


def _matches_prefix(path: str, prefix: str) -> bool:
    if prefix.endswith("/"):
        return path.startswith(prefix)
    return path == prefix or path.startswith(f"{prefix}/")


def is_passthrough_path(path: str, skip_prefixes: Sequence[str]) -> bool:
    """True for paths owned by the current site; these skip the store lookup."""
    if path in ("", "/"):
        return True
    return any(_matches_prefix(path, prefix) for prefix in skip_prefixes)


class StoreRedirectResolver:
    """Resolve an inbound path to a redirect target from the mapping store.

    Instances are the ``resolver`` callable handed to
    :class:`core.redirects.LegacyRedirectMiddleware`. The session factory is
    fetched lazily per request because the engine is created in the app
    lifespan, after middleware is registered.

    Args:
        get_session_maker: Zero-arg callable returning the session factory.
        skip_prefixes: Current-site prefixes that never hit the store.
    """

    def __init__(
        self,
        get_session_maker: Callable[[], async_sessionmaker[AsyncSession]],
        skip_prefixes: Sequence[str] = (),
    ) -> None:
        self._get_session_maker = get_session_maker
        self._skip_prefixes = tuple(skip_prefixes)

    async def __call__(self, path: str) -> str | None:
        rewritten = rewrite_legacy_prefix(path)
        if rewritten is not None:
            return rewritten

        if is_passthrough_path(path, self._skip_prefixes):
            return None

        with_slash, without_slash = slash_variants(path)
        session_maker = self._get_session_maker()
        async with session_maker() as session:
            result = await UrlRedirectRepository(session).find_by_paths(
                [with_slash, without_slash]
            )

        match result:
            case StoreFailure(operation=operation, error=error):
                logger.warning(
                    "redirect.lookup.failed",
                    path=path,
                    operation=operation,
                    error=error,
                )
                return None
            case StoreOk(value=None):
                return None
            case StoreOk(value=record):
                target = canonicalize(record.new_url)
                # Same path: serving a redirect here would loop
                if target == path:
                    return None
                return target
