"""
Data models and database operations for book requests.
"""

import json
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path


class RequestStatus(str, Enum):
    """Lifecycle status of a book request."""

    PENDING = "pending"
    APPROVED = "approved"
    QUEUED = "queued"
    DECLINED = "declined"
    ERROR = "error"
    PROCESSING = "processing"


class CollectionKind(str, Enum):
    """Which catalog service instance a request is routed to."""

    EBOOK = "ebook"
    AUDIOBOOK = "audiobook"

    @classmethod
    def parse(cls, value: str | None) -> "CollectionKind":
        """Anything that is not an audiobook is an ebook."""
        if (value or "").strip().lower() == cls.AUDIOBOOK.value:
            return cls.AUDIOBOOK
        return cls.EBOOK


class EventType(str, Enum):
    """Types of events in the audit trail."""

    SUBMITTED = "submitted"
    HYDRATED = "hydrated"
    STATUS_CHANGED = "status_changed"
    SUBMISSION_SENT = "submission_sent"
    SUBMISSION_FAILED = "submission_failed"
    TOKEN_REDEEMED = "token_redeemed"


@dataclass
class BookRequest:
    """A user's request for a book."""

    id: str
    created_at: str
    updated_at: str
    requester_id: str
    title: str = ""
    authors_json: str | None = None
    isbn10: str | None = None
    isbn13: str | None = None
    asin: str | None = None
    collection_kind: str = "ebook"
    status: str = "pending"
    status_reason: str | None = None
    approver_id: str | None = None
    approved_at: str | None = None

    # Candidate captured at creation (or hydration) time
    selection_payload: str | None = None

    # Snapshots of the last submission attempt
    sent_payload: str | None = None
    service_response: str | None = None

    @property
    def authors(self) -> list[str]:
        """Parse authors_json."""
        if self.authors_json:
            return json.loads(self.authors_json)
        return []

    @property
    def first_author(self) -> str:
        authors = self.authors
        return authors[0].strip() if authors else ""

    def has_selection_payload(self) -> bool:
        return bool((self.selection_payload or "").strip())


@dataclass
class RequestEvent:
    """An audit log entry for a book request."""

    event_id: str
    request_id: str
    ts: str
    actor_id: str
    event_type: str
    payload_json: str | None = None

    @property
    def payload(self) -> dict | None:
        """Parse payload_json."""
        if self.payload_json:
            return json.loads(self.payload_json)
        return None


def _text(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class RequestDatabase:
    """Database operations for book requests."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def create_request(
        self,
        requester_id: str,
        title: str,
        authors: list[str] | None = None,
        isbn10: str | None = None,
        isbn13: str | None = None,
        asin: str | None = None,
        collection_kind: CollectionKind = CollectionKind.EBOOK,
        selection_payload: bytes | str | None = None,
    ) -> BookRequest:
        """Insert a new pending request."""
        now = datetime.now(UTC).isoformat()
        request = BookRequest(
            id=secrets.token_hex(16),
            created_at=now,
            updated_at=now,
            requester_id=requester_id,
            title=title,
            authors_json=json.dumps(authors) if authors else None,
            isbn10=isbn10 or None,
            isbn13=isbn13 or None,
            asin=asin or None,
            collection_kind=collection_kind.value,
            status=RequestStatus.PENDING.value,
            selection_payload=_text(selection_payload),
        )

        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO book_requests
                    (id, created_at, updated_at, requester_id, title, authors_json,
                     isbn10, isbn13, asin, collection_kind, status, selection_payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.id,
                    request.created_at,
                    request.updated_at,
                    request.requester_id,
                    request.title,
                    request.authors_json,
                    request.isbn10,
                    request.isbn13,
                    request.asin,
                    request.collection_kind,
                    request.status,
                    request.selection_payload,
                ),
            )
            conn.commit()
        finally:
            conn.close()

        return request

    def get_request(self, request_id: str) -> BookRequest | None:
        """Get a single request by ID."""
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT * FROM book_requests WHERE id = ?", (request_id,))
            row = cursor.fetchone()
            return BookRequest(**dict(row)) if row else None
        finally:
            conn.close()

    def list_requests(
        self,
        requester_id: str | None = None,
        status: RequestStatus | None = None,
        limit: int = 200,
    ) -> list[BookRequest]:
        """List requests, newest first."""
        clauses = []
        params: list = []
        if requester_id:
            clauses.append("requester_id = ?")
            params.append(requester_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = self._connect()
        try:
            cursor = conn.execute(
                f"SELECT * FROM book_requests {where} ORDER BY created_at DESC LIMIT ?",
                [*params, limit],
            )
            return [BookRequest(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def update_request_status(
        self,
        request_id: str,
        status: RequestStatus,
        reason: str | None = None,
        actor: str | None = None,
        sent_payload: bytes | str | None = None,
        service_response: bytes | str | None = None,
    ) -> None:
        """
        Set status and reason.

        Actor, sent payload and service response only overwrite the stored
        values when given.
        """
        now = datetime.now(UTC).isoformat()
        conn = self._connect()
        try:
            conn.execute(
                """
                UPDATE book_requests SET
                    status = ?,
                    status_reason = ?,
                    approver_id = COALESCE(?, approver_id),
                    sent_payload = COALESCE(?, sent_payload),
                    service_response = COALESCE(?, service_response),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    reason,
                    actor,
                    _text(sent_payload),
                    _text(service_response),
                    now,
                    request_id,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def approve_request(self, request_id: str, actor: str) -> None:
        """Mark approved. The first approval's timestamp is kept."""
        now = datetime.now(UTC).isoformat()
        conn = self._connect()
        try:
            conn.execute(
                """
                UPDATE book_requests SET
                    status = ?,
                    approver_id = ?,
                    approved_at = COALESCE(approved_at, ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (RequestStatus.APPROVED.value, actor, now, now, request_id),
            )
            conn.commit()
        finally:
            conn.close()

    def transition_status(
        self,
        request_id: str,
        from_statuses: tuple[RequestStatus, ...],
        to_status: RequestStatus,
        reason: str | None = None,
        actor: str | None = None,
    ) -> bool:
        """
        Compare-and-swap the status.

        Returns False when the request is not in one of ``from_statuses``,
        which is how a second concurrent approval of the same request loses.
        """
        now = datetime.now(UTC).isoformat()
        placeholders = ", ".join("?" * len(from_statuses))
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"""
                UPDATE book_requests SET
                    status = ?,
                    status_reason = ?,
                    approver_id = COALESCE(?, approver_id),
                    updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (
                    to_status.value,
                    reason,
                    actor,
                    now,
                    request_id,
                    *(s.value for s in from_statuses),
                ),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def set_selection_payload(
        self,
        request_id: str,
        payload: bytes | str,
        reason: str | None = None,
    ) -> None:
        """Attach a candidate selection to an existing request."""
        now = datetime.now(UTC).isoformat()
        conn = self._connect()
        try:
            conn.execute(
                """
                UPDATE book_requests SET
                    selection_payload = ?,
                    status_reason = COALESCE(?, status_reason),
                    updated_at = ?
                WHERE id = ?
                """,
                (_text(payload), reason, now, request_id),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_request(self, request_id: str) -> bool:
        """Delete a request and its events."""
        conn = self._connect()
        try:
            conn.execute("DELETE FROM request_events WHERE request_id = ?", (request_id,))
            cursor = conn.execute("DELETE FROM book_requests WHERE id = ?", (request_id,))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def add_event(
        self,
        request_id: str,
        event_type: EventType,
        actor_id: str = "system",
        payload: dict | None = None,
    ) -> str:
        """Add an event to the audit trail."""
        event_id = secrets.token_hex(16)
        now = datetime.now(UTC).isoformat()

        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO request_events
                    (event_id, request_id, ts, actor_id, event_type, payload_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event_id,
                    request_id,
                    now,
                    actor_id,
                    event_type.value,
                    json.dumps(payload) if payload else None,
                ),
            )
            conn.commit()
        finally:
            conn.close()

        return event_id

    def get_events(self, request_id: str) -> list[RequestEvent]:
        """Get all events for a request."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "SELECT * FROM request_events WHERE request_id = ? ORDER BY ts ASC, rowid ASC",
                (request_id,),
            )
            return [RequestEvent(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()
