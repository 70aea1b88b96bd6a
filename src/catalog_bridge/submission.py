"""
Payload submission with duplicate-conflict recovery.

When the service rejects a creation because the book already exists, the
existing entity is recovered and flipped to monitored. The request counts as
fulfilled either way.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .client import CatalogClient, decode_json, raise_for_status
from .coerce import as_int, as_str
from .errors import (
    CatalogError,
    ConflictError,
    ErrorKind,
    InvalidResponseError,
    ValidationError,
    classify_error,
    redact_api_key,
    truncate_body,
)

logger = logging.getLogger(__name__)

MONITOR_PATH = "/api/v1/book/monitor"

REASON_CREATED = "sent to catalog service"
REASON_DUPLICATE = "already in catalog (duplicate edition)"


class SubmissionOutcome(str, Enum):
    """How a submission ended, short of a hard failure."""

    CREATED = "created"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONFLICT_UNRESOLVED = "conflict_unresolved"


@dataclass
class SubmissionResult:
    """Outcome of one submission attempt."""

    outcome: SubmissionOutcome
    sent_payload: bytes
    response_body: bytes
    entity_id: int = 0
    reason: str = ""


def entity_id_from(data: Any) -> int:
    if isinstance(data, dict):
        return as_int(data.get("id"))
    return 0


def created_entity_id(response_body: bytes) -> int:
    """Id of a newly created book from the creation response; 0 if absent."""
    try:
        return entity_id_from(json.loads(response_body))
    except ValueError:
        return 0


class SubmissionHandler:
    """Sends creation payloads and monitor updates to the catalog service."""

    def __init__(self, client: CatalogClient):
        self.client = client
        self.instance = client.instance

    async def submit(self, payload: bytes) -> SubmissionResult:
        """
        Create a book from a sanitized payload.

        Raises:
            TransportError: the request never completed
            CatalogError: the service rejected the payload for a reason other
                than a duplicate
        """
        response = await self.client.request(
            self.instance.add_method,
            self.instance.add_endpoint,
            params={"includeAllAuthorBooks": "false"},
            content=payload,
        )
        logger.debug(f"Add book returned HTTP {response.status_code}: {response.text}")

        if not response.is_success:
            url = str(response.request.url)
            message = (
                f"add book failed (HTTP {response.status_code}) to {redact_api_key(url)}: "
                f"{truncate_body(response.text)}"
            )
            if classify_error(response.text, response.status_code) is ErrorKind.CONFLICT:
                conflict = ConflictError(
                    message, status_code=response.status_code, body=response.text, url=url
                )
                return await self.recover_conflict(payload, response.content, conflict)
            raise CatalogError(message, status_code=response.status_code, body=response.text, url=url)

        return SubmissionResult(
            outcome=SubmissionOutcome.CREATED,
            sent_payload=payload,
            response_body=response.content,
            entity_id=created_entity_id(response.content),
            reason=REASON_CREATED,
        )

    async def recover_conflict(
        self,
        payload: bytes,
        response_body: bytes,
        conflict: ConflictError,
    ) -> SubmissionResult:
        """Find the existing book and monitor it; never raises."""
        logger.info(f"Duplicate detected, recovering existing book: {conflict}")
        try:
            book_id = await self.find_existing(payload)
            await self.monitor_books([book_id], True)
        except CatalogError as e:
            logger.warning(f"Could not enable monitoring for existing book: {e}")
            return SubmissionResult(
                outcome=SubmissionOutcome.CONFLICT_UNRESOLVED,
                sent_payload=payload,
                response_body=response_body,
                reason=REASON_DUPLICATE,
            )

        return SubmissionResult(
            outcome=SubmissionOutcome.CONFLICT_RESOLVED,
            sent_payload=payload,
            response_body=response_body,
            entity_id=book_id,
            reason=f"already in catalog; monitoring enabled for id {book_id}",
        )

    async def find_existing(self, payload: bytes) -> int:
        """
        Recover an existing book id by replaying the payload as a GET.

        An object with an id wins. For arrays, prefer the element whose
        foreignBookId or foreignEditionId matches the payload, then a lone
        element, then the first element.
        """
        response = await self.client.request(
            "GET",
            self.instance.add_endpoint,
            params={"includeAllAuthorBooks": "false"},
            content=payload,
        )
        raise_for_status(response, "lookup existing book")
        data = decode_json(response)

        book_id = entity_id_from(data)
        if book_id > 0:
            return book_id

        if isinstance(data, list):
            items = [item for item in data if isinstance(item, dict)]
            book_id = self._pick_matching(items, payload)
            if book_id > 0:
                return book_id

        url = str(response.request.url)
        raise InvalidResponseError(
            f"existing book id not found in response from {redact_api_key(url)}: "
            f"{truncate_body(response.text)}",
            status_code=response.status_code,
            body=response.text,
            url=url,
        )

    @staticmethod
    def _pick_matching(items: list[dict[str, Any]], payload: bytes) -> int:
        if not items:
            return 0
        try:
            original = json.loads(payload)
        except ValueError:
            original = {}
        if not isinstance(original, dict):
            original = {}
        foreign_book_id = as_str(original.get("foreignBookId"))
        foreign_edition_id = as_str(original.get("foreignEditionId"))

        for item in items:
            if foreign_book_id and as_str(item.get("foreignBookId")) == foreign_book_id:
                if entity_id_from(item) > 0:
                    return entity_id_from(item)
            if foreign_edition_id and as_str(item.get("foreignEditionId")) == foreign_edition_id:
                if entity_id_from(item) > 0:
                    return entity_id_from(item)

        if len(items) > 1:
            logger.debug("Several books returned and none matched the payload; picking the first")
        return entity_id_from(items[0])

    async def monitor_books(
        self,
        book_ids: list[int],
        monitored: bool = True,
        timeout: float | None = None,
    ) -> bytes:
        """PUT the monitored flag for a set of book ids."""
        if not book_ids:
            raise ValidationError("no book ids provided for monitor update")

        body = json.dumps({"bookIds": book_ids, "monitored": monitored}).encode()
        response = await self.client.request("PUT", MONITOR_PATH, content=body, timeout=timeout)
        raise_for_status(response, "monitor update")
        logger.debug(f"Monitor update for {book_ids} returned: {response.text}")
        return response.content
