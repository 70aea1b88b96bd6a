"""
Error taxonomy for catalog-bridge.

Every failure talking to the catalog service is converted into one of the
exceptions below, carrying the HTTP status, the response body and the
request URL with its API key redacted.
"""

import re
from enum import Enum

BODY_LIMIT = 200

# Upper bound on a response body kept on an error and stored with a request
STORED_BODY_LIMIT = 2048

APIKEY_PATTERN = re.compile(r"([?&]apikey=)[^&]+")

# Lowercased substrings that mark a duplicate-entity failure
DUPLICATE_MARKERS = (
    "ix_editions_foreigneditionid",
    "duplicate key value",
    "already exists",
    "unique constraint",
)


def redact_api_key(url: str | None) -> str:
    """Hide apikey query parameter values in a URL."""
    if not url:
        return ""
    if "apikey=" not in url:
        return url
    return APIKEY_PATTERN.sub(r"\1***", url)


def truncate_body(body: str | bytes | None, limit: int = BODY_LIMIT) -> str:
    """Shorten a response body for logs and error messages."""
    if body is None:
        return ""
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if len(body) > limit:
        return body[:limit] + "..."
    return body


class ErrorKind(str, Enum):
    """Classification of a failed catalog service response."""

    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    CLIENT = "client"
    SERVER = "server"
    UNKNOWN = "unknown"


def classify_error(response_body: str | bytes | None, status_code: int | None) -> ErrorKind:
    """
    Classify a failed response.

    The catalog service has no structured conflict code, so duplicates are
    recognised by substring markers in the body. Keep that heuristic here and
    nowhere else.
    """
    text = response_body
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    lowered = (text or "").lower()
    if any(marker in lowered for marker in DUPLICATE_MARKERS):
        return ErrorKind.CONFLICT
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code is not None and 400 <= status_code < 500:
        return ErrorKind.CLIENT
    if status_code is not None and status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


class CatalogError(Exception):
    """Base class for catalog service failures."""

    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | bytes | None = None,
        url: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = truncate_body(body, STORED_BODY_LIMIT) if body is not None else None
        self.url = redact_api_key(url)


class TransportError(CatalogError):
    """Network failure or timeout reaching the catalog service."""

    http_status = 504


class InvalidResponseError(CatalogError):
    """Non-2xx response or a body that is not the expected JSON shape."""


class ConflictError(CatalogError):
    """The entity already exists in the catalog service."""

    http_status = 409


class ReferenceResolutionError(CatalogError):
    """A quality profile, root folder or author could not be resolved."""


class ValidationError(CatalogError):
    """Caller-side problem: missing payload, unsupported transition, bad input."""

    http_status = 400


class RequestNotFoundError(ValidationError):
    """No book request exists with the given id."""

    http_status = 404


class TokenNotFoundError(ValidationError):
    """Unknown or already redeemed approval token."""

    http_status = 404


class TokenExpiredError(ValidationError):
    """Approval token past its expiry."""

    http_status = 410
