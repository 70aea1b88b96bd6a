"""
Approval state machine for book requests.

Routes an approved request through lookup, payload building and submission
against the catalog service instance for its collection kind, and records the
outcome on the request. Also owns the one-click approval tokens handed out in
notification links.
"""

import json
import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import httpx

from .cache import CacheStore, MemoryCacheStore, utcnow
from .client import CatalogClient
from .coerce import as_str, first_non_empty, is_blank
from .config import BridgeConfig, CatalogInstanceConfig
from .errors import (
    CatalogError,
    RequestNotFoundError,
    TokenExpiredError,
    TokenNotFoundError,
    ValidationError,
)
from .lookup import CandidateLookupClient, find_best_match
from .models import BookRequest, CollectionKind, EventType, RequestDatabase, RequestStatus
from .monitor import MonitorScheduler
from .payload import AddOptions, PayloadBuilder, looks_like_full_payload
from .reference import ReferenceResolver
from .selector import select_record, selection_payload
from .submission import SubmissionHandler, SubmissionOutcome

logger = logging.getLogger(__name__)

APPROVABLE = (RequestStatus.PENDING, RequestStatus.ERROR)
DECLINABLE = (RequestStatus.PENDING, RequestStatus.APPROVED)

REASON_NOT_CONFIGURED = "approved (no catalog service configured)"
REASON_IN_PROGRESS = "approval in progress"
REASON_RETRY = "retry in progress"
REASON_INTERRUPTED = "approval interrupted"
REASON_MISSING_PAYLOAD = "request has no stored selection payload; please re-request from search"
REASON_INVALID_PAYLOAD = "invalid stored selection payload"

ACTION_APPROVE = "approve"
ACTION_DECLINE = "decline"


@dataclass
class ApprovalResult:
    """What an approval attempt ended in."""

    status: RequestStatus
    error: str | None = None
    reason: str = ""
    entity_id: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status.value}
        if self.reason:
            result["reason"] = self.reason
        if self.error:
            result["error"] = self.error
        if self.entity_id:
            result["entity_id"] = self.entity_id
        return result


class Notifier:
    """Outbound notification hooks. The base class drops everything."""

    def request_created(self, request: BookRequest, links: dict[str, str]) -> None:
        pass

    def request_approved(self, request: BookRequest) -> None:
        pass

    def request_declined(self, request: BookRequest) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes notifications to the log instead of sending them anywhere."""

    def request_created(self, request: BookRequest, links: dict[str, str]) -> None:
        logger.info(f"New request {request.id}: {request.title!r}; links: {links}")

    def request_approved(self, request: BookRequest) -> None:
        logger.info(f"Request {request.id} approved: {request.title!r}")

    def request_declined(self, request: BookRequest) -> None:
        logger.info(f"Request {request.id} declined: {request.title!r}")


# =============================================================================
# One-click approval tokens
# =============================================================================


@dataclass
class ApprovalToken:
    token: str
    request_id: str
    action: str
    expires_at: datetime


class ApprovalTokenRegistry:
    """
    In-memory, single-use approval tokens.

    Nothing is persisted, so a restart invalidates every outstanding link.
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl = ttl
        self._clock = clock
        self._tokens: dict[str, ApprovalToken] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def issue(self, request_id: str, action: str) -> str:
        if action not in (ACTION_APPROVE, ACTION_DECLINE):
            raise ValidationError(f"unsupported token action: {action}")
        self.sweep_expired()
        token = secrets.token_urlsafe(32)
        with self._lock:
            self._tokens[token] = ApprovalToken(
                token=token,
                request_id=request_id,
                action=action,
                expires_at=self._clock() + self.ttl,
            )
        return token

    def redeem(self, token: str) -> ApprovalToken:
        """
        Consume a token.

        Raises:
            TokenNotFoundError: unknown or already used
            TokenExpiredError: past its expiry (the token is dropped)
        """
        with self._lock:
            entry = self._tokens.pop(token, None)
        if entry is None:
            raise TokenNotFoundError("approval link is invalid or has already been used")
        if self._clock() >= entry.expires_at:
            raise TokenExpiredError("approval link has expired")
        return entry

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [t for t, entry in self._tokens.items() if now >= entry.expires_at]
            for token in expired:
                del self._tokens[token]
        return len(expired)


# =============================================================================
# Engine
# =============================================================================


@dataclass
class CatalogServices:
    """Collaborators for one catalog service instance, built per attempt."""

    instance: CatalogInstanceConfig
    client: CatalogClient
    lookup: CandidateLookupClient
    resolver: ReferenceResolver
    builder: PayloadBuilder
    submitter: SubmissionHandler

    @classmethod
    def for_instance(
        cls,
        instance: CatalogInstanceConfig,
        cache: CacheStore,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "CatalogServices":
        client = CatalogClient(instance, transport=transport)
        resolver = ReferenceResolver(client, cache)
        return cls(
            instance=instance,
            client=client,
            lookup=CandidateLookupClient(client, cache),
            resolver=resolver,
            builder=PayloadBuilder(resolver),
            submitter=SubmissionHandler(client),
        )


@dataclass
class ApprovalEngine:
    """Drives book requests through their lifecycle."""

    config: BridgeConfig
    db: RequestDatabase
    cache: CacheStore = field(default_factory=MemoryCacheStore)
    notifier: Notifier = field(default_factory=LoggingNotifier)
    scheduler: MonitorScheduler | None = None
    tokens: ApprovalTokenRegistry | None = None
    transport: httpx.AsyncBaseTransport | None = None

    def __post_init__(self):
        if self.scheduler is None:
            self.scheduler = MonitorScheduler(self.config.monitor)
        if self.tokens is None:
            self.tokens = ApprovalTokenRegistry(ttl=timedelta(seconds=self.config.token_ttl_seconds))

    def services(self, collection_kind: str | None) -> CatalogServices:
        instance = self.config.instance_for(collection_kind)
        return CatalogServices.for_instance(instance, self.cache, self.transport)

    def get_request(self, request_id: str) -> BookRequest:
        request = self.db.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"request {request_id} not found")
        return request

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_request(
        self,
        requester_id: str,
        title: str = "",
        authors: list[str] | None = None,
        isbn10: str | None = None,
        isbn13: str | None = None,
        asin: str | None = None,
        collection_kind: str | None = None,
        selection: dict[str, Any] | None = None,
    ) -> BookRequest:
        """
        Store a new pending request.

        When no selection is supplied and the catalog service is configured,
        one is captured now from a lookup so approval never re-derives it.
        """
        title = (title or "").strip()
        authors = [a.strip() for a in authors or [] if a and a.strip()]
        if not title and not first_non_empty(isbn13, isbn10, asin):
            raise ValidationError("a title or an identifier is required")

        kind = CollectionKind.parse(collection_kind)
        if selection is None:
            selection = await self._capture_selection(kind, title, authors, isbn10, isbn13, asin)

        request = self.db.create_request(
            requester_id=requester_id,
            title=title,
            authors=authors,
            isbn10=isbn10,
            isbn13=isbn13,
            asin=asin,
            collection_kind=kind,
            selection_payload=json.dumps(selection) if selection else None,
        )
        self.db.add_event(
            request.id,
            EventType.SUBMITTED,
            requester_id,
            {"title": title, "collection_kind": kind.value, "has_selection": bool(selection)},
        )
        logger.info(f"Created request {request.id} for {title or isbn13 or isbn10 or asin!r}")

        self.notifier.request_created(request, self.approval_links(request.id))
        return request

    async def _capture_selection(
        self,
        kind: CollectionKind,
        title: str,
        authors: list[str],
        isbn10: str | None,
        isbn13: str | None,
        asin: str | None,
    ) -> dict[str, Any] | None:
        services = self.services(kind.value)
        if not services.instance.is_configured():
            return None

        term = first_non_empty(asin, isbn13, isbn10)
        if not term:
            term = f"{title} {authors[0]}" if authors else title
        try:
            records = await services.lookup.lookup(term)
        except CatalogError as e:
            logger.warning(f"Lookup for {term!r} failed; storing request without selection: {e}")
            return None

        record = select_record(records, isbn13, isbn10, asin)
        if record is None:
            record = find_best_match(records, title, authors[0] if authors else "")
        return selection_payload(record) if record else None

    def approval_links(self, request_id: str) -> dict[str, str]:
        """One-click links for notification messages."""
        base = self.config.server_url.rstrip("/")
        return {
            action: f"{base}/-/book-requests/approve/{self.tokens.issue(request_id, action)}"
            for action in (ACTION_APPROVE, ACTION_DECLINE)
        }

    async def hydrate(self, request_id: str, actor: str = "system") -> str:
        """
        Attach a selection payload to a request created without one.

        Returns a short status message.
        """
        request = self.get_request(request_id)
        if request.has_selection_payload():
            return "already attached"

        services = self.services(request.collection_kind)
        if not services.instance.is_configured():
            raise ValidationError("catalog service not configured")

        term = first_non_empty(request.isbn13, request.isbn10)
        if not term:
            term = request.title.strip()
            if request.first_author:
                term = f"{term} {request.first_author}"
        if not term:
            raise ValidationError("no identifiers or title to search")

        records = await services.lookup.lookup(term)
        record = find_best_match(records, request.title, request.first_author)
        if record is None:
            raise ValidationError("no matches from catalog service")

        payload = selection_payload(record)
        self.db.set_selection_payload(request.id, json.dumps(payload))
        self.db.add_event(request.id, EventType.HYDRATED, actor, {"term": term, "title": record.title})
        return "attached"

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def approve(self, request_id: str, actor: str) -> ApprovalResult:
        return await self.process_approval(self.get_request(request_id), actor)

    async def process_approval(self, request: BookRequest, actor: str) -> ApprovalResult:
        """
        Approve a request.

        Without a configured catalog service the request is simply marked
        approved. Otherwise its stored selection is submitted and the request
        ends up queued (created or already present) or in error.

        Raises:
            ValidationError: missing or unreadable stored selection, or the
                request is not awaiting approval
        """
        if RequestStatus(request.status) not in APPROVABLE:
            raise ValidationError(f"cannot approve a request in status {request.status}")

        services = self.services(request.collection_kind)
        if not services.instance.is_configured():
            return self._approve_locally(request, actor)

        candidate = self._stored_candidate(request)
        if not self.db.transition_status(
            request.id, APPROVABLE, RequestStatus.PROCESSING, REASON_IN_PROGRESS, actor
        ):
            raise ValidationError(f"request {request.id} is already being processed")

        return await self._submit(request, candidate, actor, services)

    def _approve_locally(self, request: BookRequest, actor: str) -> ApprovalResult:
        self.db.approve_request(request.id, actor)
        self.db.update_request_status(
            request.id, RequestStatus.APPROVED, REASON_NOT_CONFIGURED, actor
        )
        self.db.add_event(
            request.id, EventType.STATUS_CHANGED, actor, {"status": RequestStatus.APPROVED.value}
        )
        self.notifier.request_approved(request)
        return ApprovalResult(RequestStatus.APPROVED, reason=REASON_NOT_CONFIGURED)

    async def retry(self, request_id: str, actor: str) -> ApprovalResult:
        """Resubmit an approved request that never reached the catalog service."""
        request = self.get_request(request_id)
        if request.status != RequestStatus.APPROVED.value:
            raise ValidationError(f"cannot retry a request in status {request.status}")
        if not request.has_selection_payload():
            raise ValidationError(REASON_MISSING_PAYLOAD)

        services = self.services(request.collection_kind)
        if not services.instance.is_configured():
            raise ValidationError("catalog service not configured")

        candidate = self._stored_candidate(request)
        if not self.db.transition_status(
            request.id, (RequestStatus.APPROVED,), RequestStatus.PROCESSING, REASON_RETRY, actor
        ):
            raise ValidationError(f"request {request.id} is already being processed")

        return await self._submit(request, candidate, actor, services)

    def decline(self, request_id: str, actor: str, reason: str = "declined") -> ApprovalResult:
        request = self.get_request(request_id)
        if not self.db.transition_status(
            request.id, DECLINABLE, RequestStatus.DECLINED, reason, actor
        ):
            raise ValidationError(f"cannot decline a request in status {request.status}")
        self.db.add_event(
            request.id, EventType.STATUS_CHANGED, actor, {"status": RequestStatus.DECLINED.value}
        )
        self.notifier.request_declined(request)
        return ApprovalResult(RequestStatus.DECLINED, reason=reason)

    def delete(self, request_id: str) -> None:
        self.get_request(request_id)
        self.db.delete_request(request_id)
        logger.info(f"Deleted request {request_id}")

    def list_requests(
        self,
        requester_id: str | None = None,
        status: str | None = None,
        limit: int = 200,
    ) -> list[BookRequest]:
        """Newest first, optionally filtered by requester and status."""
        try:
            status_filter = RequestStatus(status) if status else None
        except ValueError as e:
            raise ValidationError(f"unknown status: {status}") from e
        return self.db.list_requests(requester_id=requester_id, status=status_filter, limit=limit)

    async def redeem_token(self, token: str) -> ApprovalResult:
        """Carry out the action behind a one-click link as the system actor."""
        entry = self.tokens.redeem(token)
        self.get_request(entry.request_id)
        self.db.add_event(entry.request_id, EventType.TOKEN_REDEEMED, "system", {"action": entry.action})
        if entry.action == ACTION_APPROVE:
            return await self.approve(entry.request_id, "system")
        return self.decline(entry.request_id, "system", reason="declined via notification")

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    @staticmethod
    def _stored_candidate(request: BookRequest) -> dict[str, Any]:
        if not request.has_selection_payload():
            raise ValidationError(REASON_MISSING_PAYLOAD)
        try:
            candidate = json.loads(request.selection_payload)
        except ValueError as e:
            raise ValidationError(REASON_INVALID_PAYLOAD) from e
        if not isinstance(candidate, dict) or not candidate:
            raise ValidationError(REASON_INVALID_PAYLOAD)
        return candidate

    async def _resolve_author_id(
        self, candidate: dict[str, Any], resolver: ReferenceResolver
    ) -> None:
        """Fill a missing author id by name lookup. Never creates authors."""
        author = candidate.get("author")
        if not isinstance(author, dict) or not is_blank(author.get("id")):
            return

        name = as_str(author.get("name")) or as_str(candidate.get("title"))
        if not name:
            return
        try:
            author_id = await resolver.author_id_by_name(name)
        except CatalogError as e:
            logger.info(f"Could not resolve author {name!r}: {e}")
            return

        if author_id:
            author["id"] = author_id
            logger.debug(f"Resolved author {name!r} to id {author_id}")
        else:
            logger.debug(f"Author {name!r} not found; leaving it for the catalog service")

    def _add_options(self, instance: CatalogInstanceConfig) -> AddOptions:
        return AddOptions(
            quality_profile_id=instance.default_quality_profile_id,
            root_folder_path=instance.default_root_folder_path,
            search_for_missing=self.config.search_for_missing,
            tags=list(instance.default_tags) or None,
        )

    async def _submit(
        self,
        request: BookRequest,
        candidate: dict[str, Any],
        actor: str,
        services: CatalogServices,
    ) -> ApprovalResult:
        payload: bytes | None = None
        try:
            await self._resolve_author_id(candidate, services.resolver)
            if looks_like_full_payload(candidate):
                payload = await services.builder.build_from_raw(json.dumps(candidate))
            else:
                payload = await services.builder.build(
                    candidate, self._add_options(services.instance)
                )
            logger.debug(f"Submitting payload for request {request.id}: {payload.decode()}")
            result = await services.submitter.submit(payload)
        except CatalogError as e:
            return self._fail(request, e, payload)
        except Exception:
            logger.exception(f"Unexpected failure submitting request {request.id}")
            self.db.update_request_status(
                request.id, RequestStatus.ERROR, "internal error during submission",
                sent_payload=payload,
            )
            raise
        except BaseException:
            # Cancelled after the claim; never leave the request in processing
            logger.warning(f"Approval of request {request.id} interrupted")
            self.db.update_request_status(
                request.id, RequestStatus.ERROR, REASON_INTERRUPTED, sent_payload=payload
            )
            raise

        self.db.approve_request(request.id, actor)
        self.db.update_request_status(
            request.id,
            RequestStatus.QUEUED,
            result.reason,
            actor,
            sent_payload=result.sent_payload,
            service_response=result.response_body,
        )
        self.db.add_event(
            request.id,
            EventType.SUBMISSION_SENT,
            actor,
            {"outcome": result.outcome.value, "entity_id": result.entity_id},
        )
        logger.info(f"Request {request.id} queued: {result.reason}")

        if result.outcome is SubmissionOutcome.CREATED and result.entity_id > 0:
            self.scheduler.start(services.submitter, result.entity_id)

        self.notifier.request_approved(request)
        return ApprovalResult(RequestStatus.QUEUED, reason=result.reason, entity_id=result.entity_id)

    def _fail(self, request: BookRequest, error: CatalogError, payload: bytes | None) -> ApprovalResult:
        logger.warning(f"Submission for request {request.id} failed: {error}")
        self.db.update_request_status(
            request.id,
            RequestStatus.ERROR,
            str(error),
            sent_payload=payload,
            service_response=error.body,
        )
        self.db.add_event(
            request.id,
            EventType.SUBMISSION_FAILED,
            "system",
            {"error": str(error), "status_code": error.status_code},
        )
        return ApprovalResult(RequestStatus.ERROR, error=str(error), reason=str(error))
