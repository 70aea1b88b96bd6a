#!/usr/bin/env python3
"""Create or upgrade the book requests database."""

import argparse
import sqlite3
from pathlib import Path

from datasette_book_requests.migrations import run_migrations


def init_db(db_path: Path) -> None:
    print(f"Initializing database: {db_path}")
    applied = run_migrations(db_path, verbose=True)
    if applied:
        print(f"Applied {len(applied)} migration(s).")

    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.execute("SELECT version, applied_ts FROM schema_migrations ORDER BY version")
        print("\nSchema versions:")
        for version, applied_ts in cursor:
            print(f"  v{version} applied at {applied_ts}")

        cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        tables = [row[0] for row in cursor if not row[0].startswith("sqlite_")]
        print(f"\nTables: {', '.join(tables)}")
    finally:
        conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Initialize book requests database")
    parser.add_argument(
        "--db",
        type=Path,
        default=Path("book_requests.db"),
        help="Path to the SQLite database file (default: book_requests.db)",
    )
    args = parser.parse_args()

    init_db(args.db)


if __name__ == "__main__":
    main()
