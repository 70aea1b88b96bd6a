"""Datasette plugin for book requests reconciled against a catalog service."""

from datasette_book_requests.plugin import (
    permission_allowed,
    register_routes,
    skip_csrf,
    startup,
)

__all__ = [
    "permission_allowed",
    "register_routes",
    "skip_csrf",
    "startup",
]
