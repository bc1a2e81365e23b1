"""Legacy storefront URL redirect middleware.

Pure ASGI middleware. The path-resolution callable is injected at
construction time so ``core`` never imports from ``services``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from fastapi.responses import RedirectResponse
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODE = 301


async def _no_redirect(path: str) -> str | None:
    return None


class LegacyRedirectMiddleware:
    """Redirect legacy storefront URLs to their new-site targets (301 Permanent).

    Registered as the outermost middleware so redirects are served before
    any other middleware or routing runs.

    A resolver failure never fails the request: the error is logged and
    the request continues unredirected.

    Args:
        app: The next ASGI application in the middleware stack.
        resolver: An async callable ``(path: str) -> str | None`` that
            returns the redirect target or ``None`` if no redirect is needed.
    """

    def __init__(
        self,
        app: ASGIApp,
        resolver: Callable[[str], Awaitable[str | None]] | None = None,
    ) -> None:
        self.app = app
        self._resolve = resolver or _no_redirect

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path: str = scope["path"]
        try:
            target_path = await self._resolve(path)
        except Exception:
            logger.exception("legacy_url.resolve_error", extra={"path": path})
            target_path = None

        if target_path is not None and target_path != path:
            query = scope.get("query_string", b"").decode("latin-1")
            target_url = target_path if not query else f"{target_path}?{query}"
            logger.info(
                "legacy_url.redirect",
                extra={
                    "from_path": path,
                    "to_path": target_path,
                    "has_query": bool(query),
                    "status_code": REDIRECT_STATUS_CODE,
                },
            )
            response = RedirectResponse(
                url=target_url, status_code=REDIRECT_STATUS_CODE
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
