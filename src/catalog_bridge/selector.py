"""
Candidate selection by identifier priority.

Identifiers are tried strictly in the order ISBN-13, ISBN-10, ASIN. The first
record (in service order) carrying an exact match on the identifier being
tried wins.
"""

import re
from typing import Any

from .lookup import CandidateRecord

NON_ISBN_CHARS = re.compile(r"[^0-9Xx]")

IDENTIFIER_PRIORITY = ("ISBN13", "ISBN10", "ASIN")


def clean_isbn(value: str | None) -> str:
    return NON_ISBN_CHARS.sub("", value or "").upper()


def clean_asin(value: str | None) -> str:
    return (value or "").strip().upper()


def to_title_case(text: str) -> str:
    """ASCII title-casing: capitalize after spaces, hyphens and apostrophes."""
    text = text.strip().lower()
    out = []
    cap_next = True
    for ch in text:
        if cap_next and "a" <= ch <= "z":
            out.append(ch.upper())
            cap_next = False
            continue
        out.append(ch)
        cap_next = ch in " -'"
    return "".join(out)


def parse_author_name_from_title(author_title: str) -> str:
    """Turn "lastname, firstname Some Title" into "Firstname Lastname"."""
    parts = author_title.strip().split(" ")
    if len(parts) >= 2:
        last = parts[0].strip(",")
        first = parts[1]
        return to_title_case(f"{first} {last}")
    return to_title_case(author_title)


def derive_author(record: CandidateRecord) -> dict[str, Any] | None:
    """Best-effort author object for a record; None for identifier-only matches."""
    if record.author is not None:
        return record.author
    if record.authors:
        return record.authors[0]
    if record.author_id > 0:
        return {"id": record.author_id}
    if record.author_title:
        return {"name": parse_author_name_from_title(record.author_title)}
    return None


def select_record(
    records: list[CandidateRecord],
    isbn13: str | None = None,
    isbn10: str | None = None,
    asin: str | None = None,
) -> CandidateRecord | None:
    """Return the first record matching the highest-priority identifier given."""
    wanted = {
        "ISBN13": clean_isbn(isbn13),
        "ISBN10": clean_isbn(isbn10),
        "ASIN": clean_asin(asin),
    }
    for kind in IDENTIFIER_PRIORITY:
        value = wanted[kind]
        if not value:
            continue
        for record in records:
            if record.has_identifier(kind, value):
                return record
    return None


def select_candidate(
    records: list[CandidateRecord],
    isbn13: str | None = None,
    isbn10: str | None = None,
    asin: str | None = None,
) -> tuple[dict[str, Any] | None, bool]:
    """
    Pick the candidate to send for a request.

    Returns (candidate, found). Not found only when no identifier was given or
    none matched.
    """
    record = select_record(records, isbn13, isbn10, asin)
    if record is None:
        return None, False
    return {
        "title": record.title,
        "titleSlug": record.title_slug,
        "author": derive_author(record),
        "editions": record.editions,
        "foreignBookId": record.foreign_book_id,
        "foreignEditionId": record.foreign_edition_id,
    }, True


def selection_payload(record: CandidateRecord) -> dict[str, Any]:
    """
    Candidate stored on a request at creation time.

    Pins the selection to one monitored edition; the payload builder backfills
    everything else at approval time.
    """
    return {
        "title": record.title,
        "titleSlug": record.title_slug,
        "author": derive_author(record),
        "editions": [{"foreignEditionId": record.foreign_edition_id, "monitored": True}],
        "foreignBookId": record.foreign_book_id,
        "foreignEditionId": record.foreign_edition_id,
        "monitored": True,
        "metadataProfileId": 1,
    }
