"""Shared pytest fixtures for book request tests."""

import json

import httpx
import pytest
from datasette.app import Datasette

from catalog_bridge.cache import MemoryCacheStore
from catalog_bridge.client import CatalogClient
from catalog_bridge.config import BridgeConfig, CatalogInstanceConfig, MonitorConfig
from datasette_book_requests.migrations import run_migrations

BASE_URL = "http://catalog.test"
API_KEY = "secret-key"


class FakeCatalogService:
    """
    In-process stand-in for a Readarr-compatible catalog service.

    Tests tweak the attributes to shape responses and inspect ``requests``
    afterwards. Served through ``httpx.MockTransport``.
    """

    def __init__(self):
        self.lookup_results: list = []
        self.author_lookup_results: list = []
        self.authors: dict[int, dict] = {}
        self.quality_profiles: list = [{"id": 1, "name": "eBook"}, {"id": 2, "name": "Spoken"}]
        self.root_folders: list = [{"id": 1, "path": "/books"}]
        self.add_status = 201
        self.add_body: object = {"id": 100}
        self.existing_status = 200
        self.existing_body: object = {"id": 42}
        self.monitor_status = 202
        self.author_create_responses: list[tuple[int, object]] = []
        self.requests: list[httpx.Request] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def json_bodies(self, method: str, path: str) -> list:
        return [json.loads(r.content) for r in self.calls(method, path)]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path

        if method == "GET" and path == "/api/v1/book/lookup":
            return httpx.Response(200, json=self.lookup_results)
        if method == "POST" and path == "/api/v1/book":
            return self._respond(self.add_status, self.add_body)
        if method == "GET" and path == "/api/v1/book":
            return self._respond(self.existing_status, self.existing_body)
        if method == "PUT" and path == "/api/v1/book/monitor":
            return httpx.Response(self.monitor_status, json=[])
        if method == "GET" and path == "/api/v1/author/lookup":
            return httpx.Response(200, json=self.author_lookup_results)
        if method == "POST" and path == "/api/v1/author":
            if self.author_create_responses:
                return self._respond(*self.author_create_responses.pop(0))
            return httpx.Response(201, json={"id": 99})
        if method == "GET" and path.startswith("/api/v1/author/"):
            author = self.authors.get(int(path.rsplit("/", 1)[-1]))
            if author is None:
                return httpx.Response(404, json={"message": "NotFound"})
            return httpx.Response(200, json=author)
        if method == "GET" and path == "/api/v1/qualityprofile":
            return httpx.Response(200, json=self.quality_profiles)
        if method == "GET" and path.startswith("/api/v1/qualityprofile/"):
            profile_id = int(path.rsplit("/", 1)[-1])
            for profile in self.quality_profiles:
                if profile["id"] == profile_id:
                    return httpx.Response(200, json=profile)
            return httpx.Response(404, json={"message": "NotFound"})
        if method == "GET" and path == "/api/v1/rootfolder":
            return httpx.Response(200, json=self.root_folders)

        return httpx.Response(404, json={"message": f"Unknown endpoint: {path}"})

    @staticmethod
    def _respond(status: int, body: object) -> httpx.Response:
        if isinstance(body, (str, bytes)):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with full schema via migrations.

    This is the canonical way to get a test database - uses the same
    migration system as production.
    """
    db_file = tmp_path / "test_book_requests.db"
    run_migrations(db_file, verbose=False)
    return db_file


@pytest.fixture
def fake_catalog():
    return FakeCatalogService()


@pytest.fixture
def instance():
    """A configured ebook instance pointing at the fake service."""
    return CatalogInstanceConfig(base_url=BASE_URL, api_key=API_KEY)


@pytest.fixture
def client(instance, fake_catalog):
    return CatalogClient(instance, transport=fake_catalog.transport)


@pytest.fixture
def cache():
    return MemoryCacheStore()


@pytest.fixture
def bridge_config(db_path, instance):
    """Bridge config with a fast monitor schedule."""
    return BridgeConfig(
        db_path=db_path,
        server_url="http://library.test",
        monitor=MonitorConfig(
            interval_seconds=0.01,
            budget_seconds=1.0,
            attempt_timeout_seconds=0.5,
            max_attempts=2,
        ),
        ebooks=instance,
    )


@pytest.fixture
def datasette(db_path):
    """Create a Datasette instance with the plugin configured.

    No catalog service is configured, so approvals complete locally.
    """
    return Datasette(
        [str(db_path)],
        config={
            "plugins": {
                "datasette-book-requests": {
                    "db_path": str(db_path),
                    "server_url": "http://library.test",
                }
            },
        },
    )


@pytest.fixture
def staff_cookie(datasette):
    """Create a signed actor cookie for staff."""
    actor = {
        "id": "staff:jsmith",
        "principal_type": "staff",
        "principal_id": "jsmith",
        "display": "Jane Smith",
    }
    return datasette.sign({"a": actor}, "actor")


@pytest.fixture
def member_cookie(datasette):
    """Create a signed actor cookie for a regular member."""
    actor = {"id": "member:42", "principal_type": "member"}
    return datasette.sign({"a": actor}, "actor")
