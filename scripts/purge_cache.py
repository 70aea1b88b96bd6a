#!/usr/bin/env python3
"""Drop expired catalog lookup cache rows, optionally forgetting cached author ids."""

import argparse
from pathlib import Path

from catalog_bridge.cache import SqliteCacheStore


def purge(db_path: Path, authors: bool = False) -> tuple[int, int]:
    """Returns (expired lookups removed, author ids removed)."""
    store = SqliteCacheStore(db_path)
    removed = store.purge_expired()
    forgotten = store.clear_authors() if authors else 0
    return removed, forgotten


def main() -> None:
    parser = argparse.ArgumentParser(description="Purge the catalog lookup cache")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("book_requests.db"),
        help="Path to the SQLite database file (default: book_requests.db)",
    )
    parser.add_argument(
        "--authors",
        action="store_true",
        help="Also forget every cached author id",
    )
    args = parser.parse_args()

    removed, forgotten = purge(args.db, args.authors)
    print(f"Removed {removed} expired cache entr{'y' if removed == 1 else 'ies'}")
    if args.authors:
        print(f"Forgot {forgotten} cached author id(s)")


if __name__ == "__main__":
    main()
