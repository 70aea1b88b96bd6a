"""
Reference data resolution against the live catalog service.

Quality profiles, root folders and authors are instance-specific and mutable,
so they are validated live. A resolver memoizes profile and folder lists for
its own lifetime, which is one approval attempt.
"""

import json
import logging
from typing import Any

from .cache import CacheStore
from .client import CatalogClient, decode_json, raise_for_status
from .coerce import as_int, as_str
from .errors import CatalogError, ReferenceResolutionError, redact_api_key, truncate_body

logger = logging.getLogger(__name__)

AUTHOR_PATH = "/api/v1/author"
AUTHOR_LOOKUP_PATH = "/api/v1/author/lookup"
QUALITY_PROFILE_PATH = "/api/v1/qualityprofile"
ROOT_FOLDER_PATH = "/api/v1/rootfolder"

METADATA_PROFILE_ID = 1

# Substrings of a create-author failure that trigger the fallback creates
ROOT_FOLDER_HINTS = ("root", "rootfolder", "rootfolderpath")
MINIMAL_CREATE_HINTS = ("quality", "object reference not set", "nullreferenceexception")


def foreign_id_from_name(name: str) -> str:
    return name.strip().replace(" ", "-")


def error_details(body: str) -> str:
    """
    Flatten a validation failure into "title: message; field=value, ...".

    Falls back to the raw body (up to 400 characters) when it is not a JSON
    object or carries none of those fields.
    """
    details = ""
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None

    if isinstance(parsed, dict):
        title = as_str(parsed.get("title"))
        message = as_str(parsed.get("message"))
        if title:
            details += title
        if message:
            details += (": " if details else "") + message
        errors = parsed.get("errors")
        if isinstance(errors, dict) and errors:
            flat = ", ".join(f"{k}={v}" for k, v in errors.items())
            details += ("; " if details else "") + flat

    if not details:
        details = truncate_body(body.strip(), limit=400)
    return details


class ReferenceResolver:
    """Fetches, validates and creates reference data for one approval attempt."""

    def __init__(self, client: CatalogClient, cache: CacheStore):
        self.client = client
        self.cache = cache
        self.instance = client.instance
        self._quality_profiles: dict[int, str] | None = None
        self._root_folders: list[str] | None = None

    # -------------------------------------------------------------------------
    # Quality profiles
    # -------------------------------------------------------------------------

    async def quality_profiles(self) -> dict[int, str]:
        """Map of profile id to name, in server order. Id 0 is skipped."""
        if self._quality_profiles is not None:
            return self._quality_profiles

        data = await self.client.get_json(QUALITY_PROFILE_PATH)
        if not isinstance(data, list):
            raise ReferenceResolutionError("unexpected quality profile response shape")

        profiles: dict[int, str] = {}
        for profile in data:
            if not isinstance(profile, dict):
                continue
            profile_id = as_int(profile.get("id"))
            if profile_id == 0:
                continue
            profiles[profile_id] = as_str(profile.get("name"))

        self._quality_profiles = profiles
        return profiles

    async def quality_profile_by_id(self, profile_id: int) -> str | None:
        """Name of a single profile, or None when the service returns 404."""
        response = await self.client.request("GET", f"{QUALITY_PROFILE_PATH}/{profile_id}")
        if response.status_code == 404:
            return None
        raise_for_status(response, "quality profile fetch")
        data = decode_json(response)
        return as_str(data.get("name")) if isinstance(data, dict) else ""

    async def quality_profiles_by_id(self) -> dict[int, str]:
        """
        Sweep the per-id endpoint from 1 upward until the first 404.

        For services whose list endpoint is disabled or broken.
        """
        profiles: dict[int, str] = {}
        profile_id = 1
        while True:
            name = await self.quality_profile_by_id(profile_id)
            if name is None:
                break
            profiles[profile_id] = name
            profile_id += 1
        return profiles

    async def valid_quality_profile_id(self, preferred: int = 0) -> int:
        """
        Pick a quality profile id that exists on the server.

        Preference order: ``preferred``, the configured default, the first
        profile the server lists. 0 means the caller must omit the field.
        """
        default = self.instance.default_quality_profile_id
        try:
            profiles = await self.quality_profiles()
        except CatalogError as e:
            logger.warning(f"Could not fetch quality profiles: {e}")
            return preferred or default or 0

        for candidate in (preferred, default):
            if candidate and candidate in profiles:
                return candidate
        return next(iter(profiles), 0)

    # -------------------------------------------------------------------------
    # Root folders
    # -------------------------------------------------------------------------

    async def root_folders(self) -> list[str]:
        if self._root_folders is not None:
            return self._root_folders

        data = await self.client.get_json(ROOT_FOLDER_PATH)
        if not isinstance(data, list):
            raise ReferenceResolutionError("unexpected root folder response shape")

        folders = [
            as_str(folder.get("path"))
            for folder in data
            if isinstance(folder, dict) and as_str(folder.get("path"))
        ]
        self._root_folders = folders
        return folders

    async def valid_root_folder_path(self, preferred: str = "") -> str:
        """Same preference order as quality profiles; "" when nothing resolves."""
        default = self.instance.default_root_folder_path
        try:
            folders = await self.root_folders()
        except CatalogError as e:
            logger.warning(f"Could not fetch root folders: {e}")
            return preferred or default or ""

        for candidate in (preferred, default):
            if candidate and candidate in folders:
                return candidate
        return folders[0] if folders else ""

    # -------------------------------------------------------------------------
    # Authors
    # -------------------------------------------------------------------------

    async def _author_lookup(self, name: str) -> list[dict[str, Any]]:
        data = await self.client.get_json(AUTHOR_LOOKUP_PATH, params={"term": name})
        if not isinstance(data, list):
            raise ReferenceResolutionError(f"unexpected author lookup response for {name!r}")
        return [a for a in data if isinstance(a, dict)]

    async def author_id_by_name(self, name: str) -> int:
        """
        Resolve an author id by name; 0 when the service knows no such author.

        Prefers an exact case-insensitive name match, then the first result
        with any id. Raises only on transport and parse failures.
        """
        name = (name or "").strip()
        if not name:
            return 0

        cached = self.cache.get_author(name)
        if cached:
            return cached

        authors = await self._author_lookup(name)
        for author in authors:
            author_id = as_int(author.get("id"))
            if author_id > 0 and as_str(author.get("name")).lower() == name.lower():
                self.cache.set_author(name, author_id)
                return author_id

        for author in authors:
            author_id = as_int(author.get("id"))
            if author_id > 0:
                self.cache.set_author(name, author_id)
                return author_id

        return 0

    async def foreign_author_id_by_name(self, name: str) -> str:
        """Like author_id_by_name but returns ``foreignAuthorId``; "" on any failure."""
        name = (name or "").strip()
        if not name:
            return ""

        try:
            authors = await self._author_lookup(name)
        except CatalogError as e:
            logger.debug(f"Foreign author lookup for {name!r} failed: {e}")
            return ""

        for author in authors:
            foreign_id = as_str(author.get("foreignAuthorId"))
            if foreign_id and as_str(author.get("name")).lower() == name.lower():
                return foreign_id

        for author in authors:
            foreign_id = as_str(author.get("foreignAuthorId"))
            if foreign_id:
                return foreign_id

        return ""

    async def author_by_id(self, author_id: int) -> dict[str, Any]:
        """Fetch one author record by its catalog id."""
        if author_id <= 0:
            raise ReferenceResolutionError(f"invalid author id {author_id}")
        data = await self.client.get_json(f"{AUTHOR_PATH}/{author_id}")
        if not isinstance(data, dict):
            raise ReferenceResolutionError(f"unexpected author response for id {author_id}")
        return data

    async def _post_author(self, payload: dict[str, Any]):
        body = json.dumps(payload).encode()
        logger.debug(f"Create author payload: {body.decode()}")
        return await self.client.request("POST", AUTHOR_PATH, content=body)

    async def import_author(self, foreign_id: str) -> int:
        """Create an author from a foreign author id."""
        foreign_id = (foreign_id or "").strip()
        if not foreign_id:
            raise ReferenceResolutionError("empty foreign author id")

        payload = {
            "authorName": foreign_id,
            "foreignAuthorId": foreign_id,
            "rootFolderPath": await self.valid_root_folder_path(),
        }
        response = await self._post_author(payload)
        raise_for_status(response, "import author")
        data = decode_json(response)
        author_id = as_int(data.get("id")) if isinstance(data, dict) else 0
        if author_id <= 0:
            raise ReferenceResolutionError("author import succeeded but no id returned")
        return author_id

    async def create_author(self, name: str) -> int:
        """
        Create an author with best-effort defaults.

        When the service rejects the payload, retries once without the root
        folder (if the failure mentions it) and once with a minimal payload
        (if it mentions quality profiles or a null reference). A fallback
        that succeeds without echoing an id returns 0.

        Raises:
            ReferenceResolutionError: with every collected failure detail
        """
        name = (name or "").strip()
        if not name:
            raise ReferenceResolutionError("empty author name")

        payload: dict[str, Any] = {
            "name": name,
            "addOptions": {"monitor": "none", "searchForMissingBooks": False},
        }
        quality_profile_id = await self.valid_quality_profile_id()
        if quality_profile_id:
            payload["qualityProfileId"] = quality_profile_id
        payload["metadataProfileId"] = METADATA_PROFILE_ID
        root_folder = await self.valid_root_folder_path()
        if root_folder:
            payload["rootFolderPath"] = root_folder
        payload["authorName"] = name
        payload["foreignAuthorId"] = foreign_id_from_name(name)

        response = await self._post_author(payload)
        if response.is_success:
            data = decode_json(response)
            author_id = as_int(data.get("id")) if isinstance(data, dict) else 0
            if author_id <= 0:
                raise ReferenceResolutionError("author created but no id returned")
            self.cache.set_author(name, author_id)
            return author_id

        details = error_details(response.text)
        logger.debug(f"Create author {name!r} rejected: {details}")
        lowered = details.lower()

        if any(hint in lowered for hint in ROOT_FOLDER_HINTS):
            fallback = {
                "name": name,
                "qualityProfileId": self.instance.default_quality_profile_id,
                "metadataProfileId": METADATA_PROFILE_ID,
                "addOptions": {"searchForMissingBooks": False},
            }
            created, extra = await self._try_fallback(fallback)
            if created is not None:
                return created
            details += f"; fallback_attempt_response: {extra}"

        if any(hint in lowered for hint in MINIMAL_CREATE_HINTS):
            minimal = {
                "name": name,
                "metadataProfileId": METADATA_PROFILE_ID,
                "addOptions": {"searchForMissingBooks": False},
            }
            created, extra = await self._try_fallback(minimal)
            if created is not None:
                return created
            details += f"; minimal_fallback_response: {extra}"

        url = str(response.request.url)
        raise ReferenceResolutionError(
            f"create author failed (HTTP {response.status_code}) to {redact_api_key(url)}: {details}",
            status_code=response.status_code,
            body=response.text,
            url=url,
        )

    async def _try_fallback(self, payload: dict[str, Any]) -> tuple[int | None, str]:
        """Returns (author id or None on failure, diagnostic text)."""
        try:
            response = await self._post_author(payload)
        except CatalogError as e:
            return None, str(e)

        if not response.is_success:
            return None, response.text.strip()

        try:
            data = json.loads(response.content)
        except ValueError:
            data = None
        author_id = as_int(data.get("id")) if isinstance(data, dict) else 0
        if author_id > 0:
            self.cache.set_author(payload["name"], author_id)
        return author_id, ""
