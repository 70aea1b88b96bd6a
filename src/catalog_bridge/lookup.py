"""
Candidate lookup against the catalog service search endpoint.

Successful responses are cached for an hour, keyed by the lowercased term.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .cache import LOOKUP_TTL, CacheStore
from .client import CatalogClient, decode_json, raise_for_status
from .coerce import as_int, as_str
from .errors import InvalidResponseError, redact_api_key, truncate_body

logger = logging.getLogger(__name__)

CACHE_KIND = "lookup"


@dataclass
class CandidateRecord:
    """A single search result from the catalog service."""

    title: str = ""
    title_slug: str = ""
    author: dict[str, Any] | None = None
    authors: list[dict[str, Any]] = field(default_factory=list)
    author_id: int = 0
    author_title: str = ""
    foreign_book_id: str = ""
    foreign_edition_id: str = ""
    identifiers: list[dict[str, Any]] = field(default_factory=list)
    editions: list[Any] = field(default_factory=list)
    remote_cover: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CandidateRecord":
        """Create from a catalog service JSON object."""
        author = data.get("author")
        authors = data.get("authors") or []
        return cls(
            title=as_str(data.get("title")),
            title_slug=as_str(data.get("titleSlug")),
            author=author if isinstance(author, dict) else None,
            authors=[a for a in authors if isinstance(a, dict)],
            author_id=as_int(data.get("authorId")),
            author_title=as_str(data.get("authorTitle")),
            foreign_book_id=as_str(data.get("foreignBookId")),
            foreign_edition_id=as_str(data.get("foreignEditionId")),
            identifiers=[i for i in data.get("identifiers") or [] if isinstance(i, dict)],
            editions=list(data.get("editions") or []),
            remote_cover=as_str(data.get("remoteCover")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert back to the catalog service's camelCase shape."""
        result: dict[str, Any] = {"title": self.title}
        if self.title_slug:
            result["titleSlug"] = self.title_slug
        if self.author is not None:
            result["author"] = self.author
        if self.authors:
            result["authors"] = self.authors
        if self.author_id:
            result["authorId"] = self.author_id
        if self.author_title:
            result["authorTitle"] = self.author_title
        if self.foreign_book_id:
            result["foreignBookId"] = self.foreign_book_id
        if self.foreign_edition_id:
            result["foreignEditionId"] = self.foreign_edition_id
        if self.identifiers:
            result["identifiers"] = self.identifiers
        if self.editions:
            result["editions"] = self.editions
        if self.remote_cover:
            result["remoteCover"] = self.remote_cover
        return result

    def has_identifier(self, kind: str, value: str) -> bool:
        """Exact identifier match; the type compares case-insensitively."""
        wanted = value.upper()
        for ident in self.identifiers:
            ident_type = as_str(ident.get("identifierType"))
            ident_value = as_str(ident.get("value"))
            if ident_type.lower() == kind.lower() and ident_value.upper() == wanted:
                return True
        return False

    def author_name(self) -> str:
        """Name from the structured author, or the first of ``authors``."""
        if self.author is not None:
            return as_str(self.author.get("name"))
        if self.authors:
            return as_str(self.authors[0].get("name"))
        return ""


def parse_records(data: Any, url: str = "") -> list[CandidateRecord]:
    """Parse a lookup response body into records."""
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise InvalidResponseError(
            f"unexpected lookup response shape from {redact_api_key(url)}: "
            f"{truncate_body(json.dumps(data))}",
            url=url,
        )
    return [CandidateRecord.from_dict(item) for item in data]


def find_best_match(
    records: list[CandidateRecord],
    title: str | None,
    author: str | None,
) -> CandidateRecord | None:
    """
    Prefer a record whose title and author both match, else the first record.

    ``authorTitle`` strings ("lastname, firstname Title") are matched by
    substring with spaces removed from the wanted author.
    """
    if not records:
        return None

    want_title = (title or "").strip().lower()
    want_author = (author or "").strip()
    for record in records:
        title_ok = bool(record.title.strip()) and record.title.strip().lower() == want_title
        author_ok = False
        if want_author:
            name = record.author_name()
            if name:
                author_ok = name.lower() == want_author.lower()
            elif record.author_title:
                author_ok = want_author.replace(" ", "").lower() in record.author_title.lower()
        if title_ok and author_ok:
            return record
    return records[0]


class CandidateLookupClient:
    """Cached search against the catalog service lookup endpoint."""

    def __init__(self, client: CatalogClient, cache: CacheStore):
        self.client = client
        self.cache = cache

    @staticmethod
    def cache_key(term: str) -> str:
        return "lookup:" + term.lower()

    async def lookup(self, term: str) -> list[CandidateRecord]:
        """
        Search the catalog service for a term.

        Returns:
            Candidate records in the order the service returned them

        Raises:
            TransportError: connection failure or timeout
            InvalidResponseError: non-2xx status or unparseable body
        """
        key = self.cache_key(term)
        cached = self.cache.get(key, CACHE_KIND)
        if cached is not None:
            try:
                return parse_records(json.loads(cached))
            except (ValueError, InvalidResponseError):
                logger.warning(f"Discarding unreadable cached lookup for {key!r}")

        instance = self.client.instance
        response = await self.client.request(
            "GET",
            instance.lookup_endpoint,
            params={"term": term},
            timeout=instance.lookup_timeout_seconds,
        )
        raise_for_status(response, "lookup")
        data = decode_json(response)
        records = parse_records(data, str(response.request.url))
        logger.debug(f"Lookup {term!r} returned {len(records)} record(s): {response.text}")

        self.cache.set(key, CACHE_KIND, json.dumps(data), LOOKUP_TTL)
        return records

    async def ping(self) -> None:
        """Run an uncached lookup to verify connectivity and credentials."""
        instance = self.client.instance
        response = await self.client.request(
            "GET",
            instance.lookup_endpoint,
            params={"term": "test"},
            timeout=instance.lookup_timeout_seconds,
        )
        raise_for_status(response, "ping")
