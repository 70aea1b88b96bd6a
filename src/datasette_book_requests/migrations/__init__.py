"""
Schema migrations for the book requests database.

Each migration is a numbered SQL file in this directory (``0001_initial.sql``,
``0002_something.sql``, ...). Applied versions are tracked in
``schema_migrations`` so running them again is a no-op.
"""

import re
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

MIGRATIONS_DIR = Path(__file__).parent

VERSION_PATTERN = re.compile(r"^(\d+)_.+\.sql$")


def get_migration_files() -> list[tuple[int, Path]]:
    """Numbered migration files, lowest version first."""
    found = []
    for path in MIGRATIONS_DIR.iterdir():
        match = VERSION_PATTERN.match(path.name)
        if match:
            found.append((int(match.group(1)), path))
    return sorted(found)


def get_applied_versions(conn: sqlite3.Connection) -> set[int]:
    try:
        return {row[0] for row in conn.execute("SELECT version FROM schema_migrations")}
    except sqlite3.OperationalError:
        # Fresh database
        return set()


def apply_migration(conn: sqlite3.Connection, version: int, path: Path) -> None:
    conn.executescript(path.read_text())
    conn.execute(
        "INSERT INTO schema_migrations (version, applied_ts) VALUES (?, ?)",
        (version, datetime.now(UTC).isoformat()),
    )
    conn.commit()


def run_migrations(db_path: Path, verbose: bool = True) -> list[int]:
    """
    Bring the database at ``db_path`` up to the latest schema.

    Creates the file if needed. Returns the versions applied by this call.
    """
    conn = sqlite3.connect(db_path)
    applied: list[int] = []
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                applied_ts TEXT NOT NULL
            )
            """
        )
        conn.commit()

        done = get_applied_versions(conn)
        for version, path in get_migration_files():
            if version in done:
                continue
            if verbose:
                print(f"  Applying migration {version}: {path.name}")
            apply_migration(conn, version, path)
            applied.append(version)

        if verbose and not applied:
            print("  Schema is up to date.")
    finally:
        conn.close()

    return applied


def get_current_version(db_path: Path) -> int:
    """Highest applied version, 0 for a missing or empty database."""
    if not Path(db_path).exists():
        return 0
    conn = sqlite3.connect(db_path)
    try:
        return max(get_applied_versions(conn), default=0)
    finally:
        conn.close()
