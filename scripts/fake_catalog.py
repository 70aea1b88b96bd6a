#!/usr/bin/env python3
"""
Fake Readarr-compatible catalog service for local development.

Implements the endpoints catalog-bridge talks to:
- Book lookup (search by ISBN, ASIN or free text)
- Book creation, with duplicate detection on foreignEditionId
- Existing-book lookup by add payload (GET on the add endpoint)
- Monitor updates
- Quality profiles, root folders, author lookup/creation

Run with: python scripts/fake_catalog.py --port 8787
Then set the ebooks base_url to "http://127.0.0.1:8787" and api_key to "devkey".
"""

import argparse
import json
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

API_KEY = "devkey"

QUALITY_PROFILES = [
    {"id": 1, "name": "eBook"},
    {"id": 2, "name": "Spoken"},
]

ROOT_FOLDERS = [{"id": 1, "path": "/books"}]

FAKE_AUTHORS = [
    {"id": 7, "name": "Andy Weir", "authorName": "Andy Weir", "foreignAuthorId": "6540057"},
    {"id": 8, "name": "Kristin Hannah", "authorName": "Kristin Hannah", "foreignAuthorId": "54761"},
]

FAKE_CATALOG = [
    {
        "title": "Project Hail Mary",
        "titleSlug": "54493401",
        "authorTitle": "weir, andy Project Hail Mary",
        "author": {"name": "Andy Weir", "foreignAuthorId": "6540057"},
        "foreignBookId": "54493401",
        "foreignEditionId": "56597885",
        "identifiers": [
            {"identifierType": "ISBN13", "value": "9780593135204"},
            {"identifierType": "ISBN10", "value": "0593135202"},
            {"identifierType": "ASIN", "value": "B08FHBV4ZX"},
        ],
    },
    {
        "title": "The Women",
        "titleSlug": "195820807",
        "authorTitle": "hannah, kristin The Women",
        "foreignBookId": "195820807",
        "foreignEditionId": "195820807",
        "identifiers": [{"identifierType": "ISBN13", "value": "9781250178633"}],
    },
]

# Books created through the fake, keyed by foreignEditionId
ADDED_BOOKS: dict[str, dict] = {}
MONITORED: set[int] = set()


class FakeCatalogHandler(BaseHTTPRequestHandler):
    """HTTP handler for the fake catalog service."""

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        print(f"[FakeCatalog] {args[0]}")

    def send_json(self, data, status: int = 200) -> None:
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(data).encode())

    def send_validation_error(self, status: int, message: str) -> None:
        """Readarr-style error body."""
        self.send_json({"title": "Bad Request", "message": message}, status=status)

    def read_json(self):
        length = int(self.headers.get("Content-Length", 0))
        if not length:
            return None
        try:
            return json.loads(self.rfile.read(length))
        except json.JSONDecodeError:
            return None

    def authorized(self, query: dict) -> bool:
        key = self.headers.get("X-Api-Key") or (query.get("apikey") or [""])[0]
        if key != API_KEY:
            self.send_json({"message": "Unauthorized"}, status=401)
            return False
        return True

    def do_GET(self) -> None:
        parsed = urlparse(self.path)
        query = parse_qs(parsed.query)
        if not self.authorized(query):
            return

        path = parsed.path
        if path == "/api/v1/book/lookup":
            self.handle_lookup((query.get("term") or [""])[0])
        elif path == "/api/v1/book":
            self.handle_find_existing(self.read_json())
        elif path == "/api/v1/author/lookup":
            self.handle_author_lookup((query.get("term") or [""])[0])
        elif path.startswith("/api/v1/author/"):
            self.handle_author_get(path.rsplit("/", 1)[-1])
        elif path == "/api/v1/qualityprofile":
            self.send_json(QUALITY_PROFILES)
        elif path.startswith("/api/v1/qualityprofile/"):
            self.handle_quality_profile_get(path.rsplit("/", 1)[-1])
        elif path == "/api/v1/rootfolder":
            self.send_json(ROOT_FOLDERS)
        else:
            self.send_json({"message": f"Unknown endpoint: {path}"}, status=404)

    def do_POST(self) -> None:
        parsed = urlparse(self.path)
        if not self.authorized(parse_qs(parsed.query)):
            return

        if parsed.path == "/api/v1/book":
            self.handle_add_book(self.read_json())
        elif parsed.path == "/api/v1/author":
            self.handle_add_author(self.read_json())
        else:
            self.send_json({"message": f"Unknown endpoint: {parsed.path}"}, status=404)

    def do_PUT(self) -> None:
        parsed = urlparse(self.path)
        if not self.authorized(parse_qs(parsed.query)):
            return

        if parsed.path == "/api/v1/book/monitor":
            data = self.read_json() or {}
            ids = [i for i in data.get("bookIds") or [] if isinstance(i, int)]
            if data.get("monitored", True):
                MONITORED.update(ids)
            else:
                MONITORED.difference_update(ids)
            self.send_json([{"id": i, "monitored": i in MONITORED} for i in ids], status=202)
        else:
            self.send_json({"message": f"Unknown endpoint: {parsed.path}"}, status=404)

    def handle_lookup(self, term: str) -> None:
        """Match identifiers exactly, otherwise title/author words."""
        wanted = term.replace("-", "").strip().lower()
        matches = []
        for book in FAKE_CATALOG:
            identifiers = {i["value"].lower() for i in book.get("identifiers", [])}
            haystack = f"{book['title']} {book.get('authorTitle', '')}".lower()
            if wanted in identifiers or all(word in haystack for word in wanted.split()):
                matches.append(book)
        self.send_json(matches)

    def handle_find_existing(self, payload) -> None:
        if not isinstance(payload, dict):
            self.send_json(list(ADDED_BOOKS.values()))
            return
        book = ADDED_BOOKS.get(str(payload.get("foreignEditionId") or ""))
        if book is None:
            self.send_json([])
        else:
            self.send_json(book)

    def handle_add_book(self, payload) -> None:
        if not isinstance(payload, dict):
            self.send_validation_error(400, "Request body is not a book")
            return
        edition = str(payload.get("foreignEditionId") or "")
        if edition in ADDED_BOOKS:
            self.send_json(
                {
                    "message": "SQLite Error 19: 'UNIQUE constraint failed: "
                    "Editions.ForeignEditionId'. duplicate key value"
                },
                status=500,
            )
            return
        book = dict(payload)
        book["id"] = len(ADDED_BOOKS) + 100
        ADDED_BOOKS[edition] = book
        self.send_json(book, status=201)

    def handle_author_lookup(self, term: str) -> None:
        wanted = term.strip().lower()
        self.send_json([a for a in FAKE_AUTHORS if wanted in a["name"].lower()])

    def handle_author_get(self, raw_id: str) -> None:
        for author in FAKE_AUTHORS:
            if str(author["id"]) == raw_id:
                self.send_json(author)
                return
        self.send_json({"message": "NotFound"}, status=404)

    def handle_add_author(self, payload) -> None:
        if not isinstance(payload, dict) or not payload.get("foreignAuthorId"):
            self.send_validation_error(400, "'Foreign Author Id' must not be empty.")
            return
        author = {
            "id": max(a["id"] for a in FAKE_AUTHORS) + 1,
            "name": payload.get("authorName") or payload["foreignAuthorId"],
            "foreignAuthorId": payload["foreignAuthorId"],
        }
        FAKE_AUTHORS.append(author)
        self.send_json(author, status=201)

    def handle_quality_profile_get(self, raw_id: str) -> None:
        for profile in QUALITY_PROFILES:
            if str(profile["id"]) == raw_id:
                self.send_json(profile)
                return
        self.send_json({"message": "NotFound"}, status=404)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run fake catalog service")
    parser.add_argument(
        "--port",
        type=int,
        default=8787,
        help="Port to listen on (default: 8787)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    args = parser.parse_args()

    server = HTTPServer((args.host, args.port), FakeCatalogHandler)
    print(f"Fake catalog service running at http://{args.host}:{args.port}")
    print(f"API key: {API_KEY}")
    print("Books:")
    for book in FAKE_CATALOG:
        ids = ", ".join(i["value"] for i in book["identifiers"])
        print(f"  {book['title']} ({ids})")
    print()

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down...")
        server.shutdown()


if __name__ == "__main__":
    main()
