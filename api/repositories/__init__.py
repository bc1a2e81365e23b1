"""Repository layer for mapping store operations.

Repositories encapsulate all database queries, keeping the middleware,
pipeline stages and the validation harness free of SQL. Every call returns
a StoreResult rather than raising, so store outages are handled explicitly
at each call site.
"""

from repositories.redirect_repository import (
    StoreFailure,
    StoreOk,
    StoreResult,
    UrlRedirectRepository,
)
from repositories.utils import log_slow_query

__all__ = [
    "StoreFailure",
    "StoreOk",
    "StoreResult",
    "UrlRedirectRepository",
    "log_slow_query",
]
