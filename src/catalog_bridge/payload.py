"""
Creation payload building and sanitization.

A payload starts from an operator-customizable Jinja2 template, is completed
from a typed base built from the candidate, and then goes through a
sanitization pass that validates reference data against the live service.

Sanitization only fills gaps and removes null markers. A value the caller set
explicitly (non-empty, non-zero) is preserved unless the service reports it
as invalid.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError

from .coerce import as_int, as_str, is_blank, tags_to_ints
from .config import CatalogInstanceConfig
from .errors import CatalogError, ValidationError
from .reference import METADATA_PROFILE_ID, ReferenceResolver, foreign_id_from_name

logger = logging.getLogger(__name__)

DEFAULT_ADD_PAYLOAD_TEMPLATE = """{
  "id": {{ (candidate.get("id") or 0) | tojson }},
  "title": {{ candidate.get("title") | tojson }},
  "authorTitle": {{ candidate.get("authorTitle") | tojson }},
  "seriesTitle": {{ candidate.get("seriesTitle") | tojson }},
  "disambiguation": {{ candidate.get("disambiguation") | tojson }},
  "overview": {{ candidate.get("overview") | tojson }},
  "authorId": {{ candidate.get("authorId") | tojson }},
  "foreignBookId": {{ candidate.get("foreignBookId") | tojson }},
  "foreignEditionId": {{ candidate.get("foreignEditionId") | tojson }},
  "titleSlug": {{ candidate.get("titleSlug") | tojson }},
  "monitored": {{ (candidate.get("monitored") or true) | tojson }},
  "anyEditionOk": {{ (candidate.get("anyEditionOk") or true) | tojson }},
  "ratings": {{ (candidate.get("ratings") or {"votes": 0, "value": 0}) | tojson }},
  "releaseDate": {{ candidate.get("releaseDate") | tojson }},
  "pageCount": {{ (candidate.get("pageCount") or 0) | tojson }},
  "genres": {{ (candidate.get("genres") or []) | tojson }},
  "author": {{ candidate.get("author") | tojson }},
  "images": {{ (candidate.get("images") or []) | tojson }},
  "links": {{ (candidate.get("links") or []) | tojson }},
  "statistics": {{ (candidate.get("statistics") or {"bookFileCount": 0, "bookCount": 0, "totalBookCount": 0, "sizeOnDisk": 0}) | tojson }},
  "added": {{ candidate.get("added") | tojson }},
  "addOptions": {
    "addType": {{ ((candidate.get("addOptions") or {}).get("addType") or "automatic") | tojson }},
    "searchForNewBook": {{ ((candidate.get("addOptions") or {}).get("searchForNewBook") or true) | tojson }},
    "monitor": "all",
    "monitored": true,
    "booksToMonitor": [],
    "searchForMissingBooks": {{ options.search_for_missing | tojson }}
  },
  "remoteCover": {{ candidate.get("remoteCover") | tojson }},
  "lastSearchTime": {{ candidate.get("lastSearchTime") | tojson }},
  "editions": {{ (candidate.get("editions") or []) | tojson }},
  "qualityProfileId": {{ (options.quality_profile_id or instance.default_quality_profile_id) | tojson }},
  "rootFolderPath": {{ options.root_folder_path | tojson }},
  "tags": {{ options.tags | tojson }}
}"""

# Keys whose presence marks a stored payload as a full book document
FULL_PAYLOAD_MARKERS = ("author", "editions", "addOptions")


@dataclass
class AddOptions:
    """Per-submission choices layered over the instance defaults."""

    quality_profile_id: int = 0
    root_folder_path: str = ""
    search_for_missing: bool = False
    tags: list[Any] | None = None


@dataclass
class BookPayload:
    """Typed base document; fills whatever the template left missing or null."""

    title: str = ""
    title_slug: str | None = None
    author: dict[str, Any] | None = None
    editions: list[Any] = field(default_factory=list)
    foreign_book_id: str | None = None
    foreign_edition_id: str | None = None
    monitored: bool = True
    add_options: dict[str, Any] | None = None

    @classmethod
    def from_candidate(cls, candidate: dict[str, Any], options: AddOptions) -> "BookPayload":
        author = candidate.get("author")
        editions = candidate.get("editions")
        return cls(
            title=as_str(candidate.get("title")),
            title_slug=as_str(candidate.get("titleSlug")) or None,
            author=author if isinstance(author, dict) else None,
            editions=editions if isinstance(editions, list) else [],
            foreign_book_id=as_str(candidate.get("foreignBookId")) or None,
            foreign_edition_id=as_str(candidate.get("foreignEditionId")) or None,
            add_options=standard_add_options(options.search_for_missing),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "title": self.title,
            "editions": self.editions,
            "monitored": self.monitored,
        }
        if self.title_slug:
            result["titleSlug"] = self.title_slug
        if self.author is not None:
            result["author"] = self.author
        if self.foreign_book_id:
            result["foreignBookId"] = self.foreign_book_id
        if self.foreign_edition_id:
            result["foreignEditionId"] = self.foreign_edition_id
        if self.add_options is not None:
            result["addOptions"] = self.add_options
        return result


def standard_add_options(search_for_missing: bool) -> dict[str, Any]:
    return {
        "addType": "automatic",
        "monitor": "all",
        "monitored": True,
        "booksToMonitor": [],
        "searchForMissingBooks": search_for_missing,
        "searchForNewBook": True,
    }


def author_add_options(search_for_missing: bool) -> dict[str, Any]:
    return {
        "monitor": "all",
        "booksToMonitor": [],
        "monitored": True,
        "searchForMissingBooks": search_for_missing,
    }


def looks_like_full_payload(document: Any) -> bool:
    """Heuristic: a stored selection that is already a full book document."""
    if not isinstance(document, dict):
        return False
    if "authorTitle" in document:
        return True
    return any(document.get(key) is not None for key in FULL_PAYLOAD_MARKERS)


def normalize_author_id(document: dict[str, Any]) -> None:
    """Coerce ``authorId`` to a positive int or remove it entirely."""
    if "authorId" not in document:
        return
    author_id = as_int(document["authorId"])
    if author_id > 0:
        document["authorId"] = author_id
    else:
        del document["authorId"]


_environment = Environment(undefined=StrictUndefined, autoescape=False)


def render_template(
    template_text: str,
    candidate: dict[str, Any],
    options: AddOptions,
    instance: CatalogInstanceConfig,
) -> str:
    """Render the add-payload template over candidate, options and instance."""
    try:
        template = _environment.from_string(template_text or DEFAULT_ADD_PAYLOAD_TEMPLATE)
        return template.render(candidate=candidate, options=options, instance=instance)
    except TemplateError as e:
        raise ValidationError(f"add payload template failed to render: {e}") from e


class PayloadBuilder:
    """Builds sanitized creation payloads for one approval attempt."""

    def __init__(self, resolver: ReferenceResolver):
        self.resolver = resolver
        self.instance = resolver.instance

    async def build(self, candidate: dict[str, Any], options: AddOptions) -> bytes:
        """Render the template for a candidate and sanitize the result."""
        rendered = render_template(
            self.instance.add_payload_template, candidate, options, self.instance
        )
        try:
            document = json.loads(rendered)
        except ValueError:
            document = None

        if not isinstance(document, dict):
            logger.warning("Add payload template did not render a JSON object; sending as-is")
            return rendered.encode()

        base = BookPayload.from_candidate(candidate, options).to_dict()
        for key, value in base.items():
            if document.get(key) is None:
                document[key] = value

        document = await self.sanitize(document, options)
        return json.dumps(document).encode()

    async def build_from_raw(self, raw: str | bytes) -> bytes:
        """Sanitize a stored full document; anything but a JSON object passes through."""
        raw_bytes = raw.encode() if isinstance(raw, str) else raw
        try:
            document = json.loads(raw_bytes)
        except ValueError:
            return raw_bytes
        if not isinstance(document, dict):
            return raw_bytes

        document = await self.sanitize(document, AddOptions())
        return json.dumps(document).encode()

    # -------------------------------------------------------------------------
    # Sanitization
    # -------------------------------------------------------------------------

    async def sanitize(self, document: dict[str, Any], options: AddOptions) -> dict[str, Any]:
        """Apply defaults, validate reference data and enrich the author."""
        quality_profile_id = await self._quality_profile(document, options)
        if quality_profile_id:
            document["qualityProfileId"] = quality_profile_id
        elif is_blank(document.get("qualityProfileId")):
            document.pop("qualityProfileId", None)

        if is_blank(document.get("metadataProfileId")):
            document["metadataProfileId"] = METADATA_PROFILE_ID

        if not as_str(document.get("rootFolderPath")):
            root_folder = await self._root_folder(options)
            if root_folder:
                document["rootFolderPath"] = root_folder
            else:
                document.pop("rootFolderPath", None)

        if "monitored" not in document:
            document["monitored"] = True
        if document.get("addOptions") is None:
            document["addOptions"] = standard_add_options(options.search_for_missing)

        self._normalize_tags(document)

        editions = document.get("editions")
        if not isinstance(editions, list):
            editions = []
        foreign_edition_id = as_str(document.get("foreignEditionId"))
        if not editions and foreign_edition_id:
            editions = [{"foreignEditionId": foreign_edition_id, "monitored": True}]
        document["editions"] = editions

        normalize_author_id(document)

        if "author" in document:
            author = document["author"]
            if author is None:
                del document["author"]
            elif isinstance(author, dict):
                await self._enrich_author(author, document, options, quality_profile_id)

        if "author" not in document and document.get("authorId"):
            document["author"] = await self._author_from_id(
                document["authorId"], document, options, quality_profile_id
            )

        return document

    async def _quality_profile(self, document: dict[str, Any], options: AddOptions) -> int:
        explicit = as_int(document.get("qualityProfileId"))
        preferred = explicit or options.quality_profile_id
        return await self.resolver.valid_quality_profile_id(preferred)

    async def _root_folder(self, options: AddOptions) -> str:
        return await self.resolver.valid_root_folder_path(options.root_folder_path)

    def _normalize_tags(self, document: dict[str, Any]) -> None:
        if document.get("tags") is not None:
            document["tags"] = tags_to_ints(document["tags"]) or []
            return
        default_tags = tags_to_ints(self.instance.default_tags)
        if default_tags:
            document["tags"] = default_tags
        else:
            document.pop("tags", None)

    def _author_tags(self, document: dict[str, Any]) -> list[int] | None:
        if document.get("tags") is not None:
            return tags_to_ints(document["tags"])
        return tags_to_ints(self.instance.default_tags)

    async def _enrich_author(
        self,
        author: dict[str, Any],
        document: dict[str, Any],
        options: AddOptions,
        quality_profile_id: int,
    ) -> None:
        if quality_profile_id and is_blank(author.get("qualityProfileId")):
            author["qualityProfileId"] = quality_profile_id

        if not as_str(author.get("rootFolderPath")):
            root_folder = await self._root_folder(options)
            if root_folder:
                author["rootFolderPath"] = root_folder

        value = author.get("value")
        if isinstance(value, dict):
            if quality_profile_id and is_blank(value.get("qualityProfileId")):
                value["qualityProfileId"] = quality_profile_id
            if is_blank(value.get("metadataProfileId")):
                value["metadataProfileId"] = METADATA_PROFILE_ID
            if not as_str(value.get("rootFolderPath")):
                root_folder = await self._root_folder(options)
                if root_folder:
                    value["rootFolderPath"] = root_folder

        if not as_str(author.get("foreignAuthorId")):
            name = as_str(author.get("name"))
            if name:
                await self._fill_foreign_id_by_name(author, name)
            elif as_int(author.get("id")) > 0:
                await self._backfill_from_id(author, as_int(author["id"]))

        if is_blank(author.get("metadataProfileId")):
            author["metadataProfileId"] = METADATA_PROFILE_ID

        if author.get("tags") is None:
            tags = self._author_tags(document)
            if tags:
                author["tags"] = tags

        if not isinstance(author.get("addOptions"), dict):
            author["addOptions"] = author_add_options(options.search_for_missing)

    async def _fill_foreign_id_by_name(self, author: dict[str, Any], name: str) -> None:
        foreign_id = await self.resolver.foreign_author_id_by_name(name)
        if foreign_id:
            author["foreignAuthorId"] = foreign_id
            return

        cleaned = foreign_id_from_name(name)
        try:
            imported = await self.resolver.import_author(cleaned)
        except CatalogError as e:
            logger.info(f"Author import for {name!r} failed: {e}")
            return
        if imported:
            author["foreignAuthorId"] = cleaned

    async def _backfill_from_id(self, author: dict[str, Any], author_id: int) -> None:
        try:
            details = await self.resolver.author_by_id(author_id)
        except CatalogError as e:
            logger.info(f"Author {author_id} backfill failed: {e}")
            return
        foreign_id = as_str(details.get("foreignAuthorId"))
        if foreign_id:
            author["foreignAuthorId"] = foreign_id
        name = as_str(details.get("name"))
        if name:
            author["name"] = name

    async def _author_from_id(
        self,
        author_id: int,
        document: dict[str, Any],
        options: AddOptions,
        quality_profile_id: int,
    ) -> dict[str, Any]:
        author: dict[str, Any] = {"id": author_id}
        await self._backfill_from_id(author, author_id)
        if quality_profile_id:
            author["qualityProfileId"] = quality_profile_id
        author["metadataProfileId"] = METADATA_PROFILE_ID
        root_folder = await self.resolver.valid_root_folder_path()
        if root_folder:
            author["rootFolderPath"] = root_folder
        tags = self._author_tags(document)
        if tags:
            author["tags"] = tags
        author["addOptions"] = author_add_options(options.search_for_missing)
        return author
