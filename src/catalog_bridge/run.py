"""
CLI runner for catalog-bridge.

Usage:
    python -m catalog_bridge.run [OPTIONS]

    # Verify connectivity and list reference data
    python -m catalog_bridge.run --check

    # Search the catalog service
    python -m catalog_bridge.run --lookup "9781111111111"

    # Approve a specific request
    python -m catalog_bridge.run --approve abc123
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .approval import ApprovalEngine
from .cache import SqliteCacheStore
from .config import BridgeConfig
from .errors import CatalogError
from .models import RequestDatabase

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("catalog-bridge")


def build_engine(config: BridgeConfig) -> ApprovalEngine:
    return ApprovalEngine(
        config=config,
        db=RequestDatabase(config.db_path),
        cache=SqliteCacheStore(config.db_path),
    )


async def check(engine: ApprovalEngine, kind: str) -> bool:
    """Ping the lookup endpoint and list quality profiles and root folders."""
    services = engine.services(kind)
    if not services.instance.is_configured():
        logger.error(f"No catalog service configured for {kind}")
        return False

    logger.info(f"Checking {services.instance.base_url} ({kind})")
    await services.lookup.ping()
    logger.info("Lookup endpoint OK")

    profiles = await services.resolver.quality_profiles()
    for profile_id, name in sorted(profiles.items()):
        logger.info(f"  Quality profile {profile_id}: {name}")

    for path in await services.resolver.root_folders():
        logger.info(f"  Root folder: {path}")
    return True


async def lookup(engine: ApprovalEngine, kind: str, term: str) -> bool:
    records = await engine.services(kind).lookup.lookup(term)
    logger.info(f"{len(records)} record(s) for {term!r}")
    for record in records:
        logger.info(
            f"  - {record.title} by {record.author_name() or record.author_title or '?'} "
            f"(book {record.foreign_book_id}, edition {record.foreign_edition_id})"
        )
    return bool(records)


async def sweep_profiles(engine: ApprovalEngine, kind: str) -> bool:
    """List quality profiles by probing ids one at a time."""
    profiles = await engine.services(kind).resolver.quality_profiles_by_id()
    for profile_id, name in sorted(profiles.items()):
        logger.info(f"  Quality profile {profile_id}: {name}")
    return bool(profiles)


async def create_author(engine: ApprovalEngine, kind: str, name: str) -> bool:
    """Create an author directly, bypassing any book submission."""
    author_id = await engine.services(kind).resolver.create_author(name)
    if author_id:
        logger.info(f"Created author {name!r} with id {author_id}")
    else:
        logger.info(f"Created author {name!r}; the service returned no id")
    return True


def list_requests(engine: ApprovalEngine, status: str | None = None) -> bool:
    rows = engine.list_requests(status=status)
    logger.info(f"{len(rows)} request(s)")
    for row in rows:
        logger.info(f"  {row.id} [{row.status}] {row.title} ({row.collection_kind})")
    return True


def delete(engine: ApprovalEngine, request_id: str) -> bool:
    engine.delete(request_id)
    return True


async def transition(engine: ApprovalEngine, action: str, request_id: str) -> bool:
    """Run one state transition as the CLI actor and wait for monitor tasks."""
    actor = "cli"
    if action == "approve":
        result = await engine.approve(request_id, actor)
    elif action == "retry":
        result = await engine.retry(request_id, actor)
    elif action == "decline":
        result = engine.decline(request_id, actor)
    else:
        message = await engine.hydrate(request_id, actor)
        logger.info(f"Hydrate {request_id}: {message}")
        return True

    logger.info(f"Request {request_id}: {result.status.value} ({result.reason})")
    if engine.scheduler.active:
        logger.info("Waiting for background monitor to finish...")
        await engine.scheduler.wait_idle()
    return result.error is None


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="catalog-bridge: Book request reconciliation against a catalog service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Check the ebook instance
    python -m catalog_bridge.run --check

    # Check the audiobook instance
    python -m catalog_bridge.run --check --kind audiobook

    # Attach a selection to an old request, then approve it
    python -m catalog_bridge.run --hydrate abc123def456
    python -m catalog_bridge.run --approve abc123def456

    # List requests that failed to submit
    python -m catalog_bridge.run --list --status error

    # Use a specific config file
    python -m catalog_bridge.run --config datasette.yaml --check
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to config file (default: datasette.yaml)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        help="Override database path from config",
    )
    parser.add_argument(
        "--kind",
        choices=["ebook", "audiobook"],
        default="ebook",
        help="Catalog service instance for --check, --lookup, --sweep-profiles, --create-author",
    )
    parser.add_argument("--check", action="store_true", help="Verify connectivity")
    parser.add_argument("--lookup", metavar="TERM", help="Search the catalog service")
    parser.add_argument(
        "--sweep-profiles",
        action="store_true",
        help="List quality profiles by probing ids",
    )
    parser.add_argument(
        "--create-author",
        metavar="NAME",
        help="Create an author in the catalog service",
    )
    parser.add_argument("--list", action="store_true", help="List stored requests")
    parser.add_argument(
        "--status",
        help="Only list requests in this status (with --list)",
    )
    for action in ("approve", "decline", "retry", "hydrate", "delete"):
        parser.add_argument(
            f"--{action}",
            metavar="REQUEST_ID",
            help=f"{action.capitalize()} a specific request by ID",
        )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Load config
    config = BridgeConfig.from_yaml(args.config)
    if args.db:
        config.db_path = args.db
    if args.verbose:
        config.debug = True

    logger.info(f"Config loaded from {args.config}")
    logger.info(f"Database: {config.db_path}")

    # Check database exists
    if not config.db_path.exists():
        logger.error(f"Database not found: {config.db_path}")
        logger.error("Run 'python scripts/init_db.py' first to create the database.")
        return 1

    engine = build_engine(config)

    try:
        if args.check:
            return 0 if asyncio.run(check(engine, args.kind)) else 1
        if args.lookup:
            return 0 if asyncio.run(lookup(engine, args.kind, args.lookup)) else 1
        if args.sweep_profiles:
            return 0 if asyncio.run(sweep_profiles(engine, args.kind)) else 1
        if args.create_author:
            return 0 if asyncio.run(create_author(engine, args.kind, args.create_author)) else 1
        if args.list:
            return 0 if list_requests(engine, args.status) else 1
        if args.delete:
            return 0 if delete(engine, args.delete) else 1
        for action in ("approve", "decline", "retry", "hydrate"):
            request_id = getattr(args, action)
            if request_id:
                return 0 if asyncio.run(transition(engine, action, request_id)) else 1
    except CatalogError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    # Default: show help
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
