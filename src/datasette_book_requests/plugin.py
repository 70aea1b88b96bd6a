"""
Datasette plugin for book requests routed into a Readarr-compatible catalog service.

The plugin owns the SQLite schema and exposes the request lifecycle over HTTP:
- Any signed-in actor can file a request
- Staff list, approve, decline, retry, hydrate or delete requests
- One-click approval links from notifications are redeemed without a session
"""

import json
from pathlib import Path
from typing import Any

from datasette import Response, hookimpl
from datasette.utils.asgi import Request

from catalog_bridge.approval import ApprovalEngine
from catalog_bridge.cache import SqliteCacheStore
from catalog_bridge.config import PLUGIN_NAME, BridgeConfig
from catalog_bridge.errors import CatalogError
from catalog_bridge.models import BookRequest, RequestDatabase

STAFF_ACTIONS = ("approve", "decline", "retry", "hydrate", "delete")

# -----------------------------------------------------------------------------
# Plugin Configuration
# -----------------------------------------------------------------------------


def get_plugin_config(datasette) -> BridgeConfig:
    """Get plugin configuration from datasette.yaml."""
    return BridgeConfig.from_dict(datasette.plugin_config(PLUGIN_NAME) or {})


def get_db_path(datasette) -> Path:
    return get_plugin_config(datasette).db_path


def ensure_db_exists(db_path: Path) -> None:
    """Create or upgrade the schema. Safe to call repeatedly."""
    from datasette_book_requests.migrations import run_migrations

    run_migrations(db_path, verbose=False)


def get_engine(datasette) -> ApprovalEngine:
    """The approval engine for this Datasette instance, built on first use."""
    engine = getattr(datasette, "_book_requests_engine", None)
    if engine is None:
        config = get_plugin_config(datasette)
        engine = ApprovalEngine(
            config=config,
            db=RequestDatabase(config.db_path),
            cache=SqliteCacheStore(config.db_path),
        )
        datasette._book_requests_engine = engine
    return engine


# -----------------------------------------------------------------------------
# Actor Helpers
# -----------------------------------------------------------------------------


def is_staff(request: Request) -> bool:
    """Check if the current user is staff."""
    actor = request.actor
    return actor is not None and actor.get("principal_type") == "staff"


def actor_id(request: Request) -> str:
    actor = request.actor or {}
    return str(actor.get("id") or "anonymous")


# -----------------------------------------------------------------------------
# Request/Response Helpers
# -----------------------------------------------------------------------------


async def read_body(request: Request) -> dict[str, Any]:
    """Accept either a JSON object or form fields."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        body = await request.post_body()
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    return dict(await request.post_vars())


def split_authors(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(a) for a in value if a]
    if isinstance(value, str):
        return [a.strip() for a in value.split(",") if a.strip()]
    return []


def request_summary(book_request: BookRequest) -> dict[str, Any]:
    return {
        "id": book_request.id,
        "status": book_request.status,
        "title": book_request.title,
        "authors": book_request.authors,
        "collection_kind": book_request.collection_kind,
        "has_selection": book_request.has_selection_payload(),
    }


def error_response(error: CatalogError) -> Response:
    return Response.json({"error": str(error)}, status=error.http_status)


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


async def book_requests(request: Request, datasette) -> Response:
    """GET lists requests, POST files a new one."""
    if request.method == "GET":
        return await list_book_requests(request, datasette)
    if request.method == "POST":
        return await create_book_request(request, datasette)
    return Response.text("Method not allowed", status=405)


async def list_book_requests(request: Request, datasette) -> Response:
    """Staff see every request; other actors only their own."""
    if not request.actor:
        return Response.json({"error": "sign in required"}, status=403)

    engine = get_engine(datasette)
    requester = None if is_staff(request) else actor_id(request)
    try:
        limit = int(request.args.get("limit") or 200)
    except ValueError:
        return Response.json({"error": "limit must be an integer"}, status=400)
    try:
        rows = engine.list_requests(
            requester_id=requester, status=request.args.get("status"), limit=limit
        )
    except CatalogError as e:
        return error_response(e)

    return Response.json({"requests": [request_summary(r) for r in rows]})


async def create_book_request(request: Request, datasette) -> Response:
    """File a new request as the signed-in actor."""
    if not request.actor:
        return Response.json({"error": "sign in required"}, status=403)

    data = await read_body(request)
    selection = data.get("selection")
    if isinstance(selection, str):
        try:
            selection = json.loads(selection) if selection.strip() else None
        except ValueError:
            return Response.json({"error": "selection is not valid JSON"}, status=400)

    engine = get_engine(datasette)
    try:
        book_request = await engine.create_request(
            requester_id=actor_id(request),
            title=data.get("title") or "",
            authors=split_authors(data.get("authors")),
            isbn10=data.get("isbn10") or None,
            isbn13=data.get("isbn13") or None,
            asin=data.get("asin") or None,
            collection_kind=data.get("collection_kind") or data.get("format"),
            selection=selection if isinstance(selection, dict) else None,
        )
    except CatalogError as e:
        return error_response(e)

    return Response.json(request_summary(book_request), status=201)


async def staff_request_action(request: Request, datasette) -> Response:
    """Approve, decline, retry, hydrate or delete a request."""
    if not is_staff(request):
        return Response.text("Unauthorized", status=403)
    if request.method != "POST":
        return Response.text("Method not allowed", status=405)

    request_id = request.url_vars["request_id"]
    action = request.url_vars["action"]
    actor = actor_id(request)
    engine = get_engine(datasette)

    try:
        if action == "approve":
            result = await engine.approve(request_id, actor)
        elif action == "retry":
            result = await engine.retry(request_id, actor)
        elif action == "decline":
            data = await read_body(request)
            result = engine.decline(request_id, actor, reason=data.get("reason") or "declined")
        elif action == "delete":
            engine.delete(request_id)
            return Response.json({"status": "deleted"})
        else:
            message = await engine.hydrate(request_id, actor)
            return Response.json({"status": "ok", "message": message})
    except CatalogError as e:
        return error_response(e)

    return Response.json(result.to_dict())


async def redeem_approval_link(request: Request, datasette) -> Response:
    """One-click approve/decline from a notification link."""
    engine = get_engine(datasette)
    try:
        result = await engine.redeem_token(request.url_vars["token"])
    except CatalogError as e:
        return error_response(e)
    return Response.json(result.to_dict())


# -----------------------------------------------------------------------------
# Datasette Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    actions = "|".join(STAFF_ACTIONS)
    return [
        (r"^/-/book-requests/requests$", book_requests),
        (
            rf"^/-/book-requests/request/(?P<request_id>[^/]+)/(?P<action>{actions})$",
            staff_request_action,
        ),
        (r"^/-/book-requests/approve/(?P<token>[^/]+)$", redeem_approval_link),
    ]


@hookimpl
def skip_csrf(datasette, scope):
    """
    Skip CSRF for the plugin's API routes.

    They are called from scripts and notification links, never from a
    Datasette form, and each checks the actor itself.
    """
    if scope.get("path", "").startswith("/-/book-requests/"):
        return True
    return None


@hookimpl
def startup(datasette):
    """Create or upgrade the book requests database."""
    ensure_db_exists(get_db_path(datasette))


@hookimpl
def permission_allowed(datasette, actor, action):
    """Handle permission checks for custom plugin actions."""
    if not actor:
        return None

    if action == "book_requests_submit":
        return True

    if action in ("book_requests_review", "book_requests_approve"):
        return actor.get("principal_type") == "staff"

    return None
