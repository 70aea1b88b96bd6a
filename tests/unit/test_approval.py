"""Tests for the approval state machine."""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from catalog_bridge.approval import (
    REASON_INTERRUPTED,
    REASON_INVALID_PAYLOAD,
    REASON_MISSING_PAYLOAD,
    REASON_NOT_CONFIGURED,
    ApprovalEngine,
    ApprovalTokenRegistry,
    Notifier,
)
from catalog_bridge.cache import MemoryCacheStore
from catalog_bridge.config import BridgeConfig
from catalog_bridge.errors import (
    RequestNotFoundError,
    TokenExpiredError,
    TokenNotFoundError,
    ValidationError,
)
from catalog_bridge.models import CollectionKind, RequestDatabase, RequestStatus

HAIL_MARY = {
    "title": "Project Hail Mary",
    "titleSlug": "54493401",
    "author": {"name": "Andy Weir"},
    "foreignBookId": "54493401",
    "foreignEditionId": "56597885",
    "identifiers": [{"identifierType": "ISBN13", "value": "9780593135204"}],
}


class RecordingNotifier(Notifier):
    def __init__(self):
        self.created = []
        self.approved = []
        self.declined = []

    def request_created(self, request, links):
        self.created.append((request.id, links))

    def request_approved(self, request):
        self.approved.append(request.id)

    def request_declined(self, request):
        self.declined.append(request.id)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def engine(bridge_config, fake_catalog, notifier):
    engine = ApprovalEngine(
        config=bridge_config,
        db=RequestDatabase(bridge_config.db_path),
        cache=MemoryCacheStore(),
        notifier=notifier,
        transport=fake_catalog.transport,
    )
    yield engine
    await engine.scheduler.shutdown()


@pytest.fixture
def local_engine(db_path, notifier):
    """An engine with no catalog service configured."""
    config = BridgeConfig(db_path=db_path, server_url="http://library.test")
    return ApprovalEngine(config=config, db=RequestDatabase(db_path), notifier=notifier)


async def create_selected(engine, fake_catalog):
    """A request whose selection was captured from an ISBN-13 lookup."""
    fake_catalog.lookup_results = [HAIL_MARY]
    return await engine.create_request(
        "member:42", "Project Hail Mary", ["Andy Weir"], isbn13="9780593135204"
    )


class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_captures_selection(self, engine, fake_catalog, notifier):
        request = await create_selected(engine, fake_catalog)

        selection = json.loads(engine.get_request(request.id).selection_payload)
        assert selection["foreignEditionId"] == "56597885"
        assert selection["editions"] == [{"foreignEditionId": "56597885", "monitored": True}]
        sent = fake_catalog.calls("GET", "/api/v1/book/lookup")[0]
        assert sent.url.params["term"] == "9780593135204"

        events = engine.db.get_events(request.id)
        assert events[0].event_type == "submitted"
        assert events[0].payload["has_selection"] is True

    @pytest.mark.asyncio
    async def test_title_search_falls_back_to_best_match(self, engine, fake_catalog):
        fake_catalog.lookup_results = [{"title": "Other"}, HAIL_MARY]

        request = await engine.create_request("member:42", "Project Hail Mary", ["Andy Weir"])

        sent = fake_catalog.calls("GET", "/api/v1/book/lookup")[0]
        assert sent.url.params["term"] == "Project Hail Mary Andy Weir"
        assert json.loads(request.selection_payload)["title"] == "Project Hail Mary"

    @pytest.mark.asyncio
    async def test_lookup_failure_stores_without_selection(self, engine, fake_catalog):
        fake_catalog.lookup_results = {"unexpected": "shape"}

        request = await engine.create_request("member:42", "Dune")

        assert request.selection_payload is None
        assert request.status == "pending"

    @pytest.mark.asyncio
    async def test_explicit_selection_skips_lookup(self, engine, fake_catalog):
        request = await engine.create_request("member:42", "Dune", selection={"title": "Dune"})

        assert json.loads(request.selection_payload) == {"title": "Dune"}
        assert fake_catalog.calls("GET", "/api/v1/book/lookup") == []

    @pytest.mark.asyncio
    async def test_requires_title_or_identifier(self, engine):
        with pytest.raises(ValidationError):
            await engine.create_request("member:42", "  ", ["Someone"])

    @pytest.mark.asyncio
    async def test_notifies_with_links(self, engine, fake_catalog, notifier):
        request = await create_selected(engine, fake_catalog)

        request_id, links = notifier.created[0]
        assert request_id == request.id
        assert set(links) == {"approve", "decline"}
        assert links["approve"].startswith("http://library.test/-/book-requests/approve/")
        assert len(engine.tokens) == 2


class TestApprove:
    @pytest.mark.asyncio
    async def test_unconfigured_approves_locally(self, local_engine, notifier):
        request = await local_engine.create_request("member:42", "Dune")

        result = await local_engine.approve(request.id, "staff:jsmith")

        assert result.status is RequestStatus.APPROVED
        stored = local_engine.get_request(request.id)
        assert stored.status == "approved"
        assert stored.status_reason == REASON_NOT_CONFIGURED
        assert stored.approver_id == "staff:jsmith"
        assert stored.approved_at is not None
        assert notifier.approved == [request.id]

    @pytest.mark.asyncio
    async def test_created_and_monitored(self, engine, fake_catalog, notifier):
        """A fresh creation is queued and the monitor loop re-asserts the flag."""
        fake_catalog.author_lookup_results = [{"id": 7, "name": "Andy Weir"}]
        request = await create_selected(engine, fake_catalog)

        result = await engine.approve(request.id, "staff:jsmith")
        await engine.scheduler.wait_idle()

        assert result.status is RequestStatus.QUEUED
        assert result.entity_id == 100
        stored = engine.get_request(request.id)
        assert stored.status == "queued"
        assert stored.status_reason == "sent to catalog service"
        assert stored.approved_at is not None

        sent = json.loads(stored.sent_payload)
        assert sent["author"]["id"] == 7
        assert sent["qualityProfileId"] == 1
        assert sent["rootFolderPath"] == "/books"
        assert json.loads(stored.service_response) == {"id": 100}

        monitor_puts = fake_catalog.json_bodies("PUT", "/api/v1/book/monitor")
        assert monitor_puts == [{"bookIds": [100], "monitored": True}] * 2
        assert notifier.approved == [request.id]

    @pytest.mark.asyncio
    async def test_duplicate_is_queued_without_monitor_loop(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        fake_catalog.add_status = 500
        fake_catalog.add_body = "duplicate key value violates unique constraint"

        result = await engine.approve(request.id, "staff:jsmith")

        assert result.status is RequestStatus.QUEUED
        assert "monitoring enabled for id 42" in result.reason
        assert engine.scheduler.active == 0
        assert len(fake_catalog.calls("PUT", "/api/v1/book/monitor")) == 1

    @pytest.mark.asyncio
    async def test_failure_marks_error_and_keeps_payload(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        fake_catalog.add_status = 400
        fake_catalog.add_body = {"message": "Title is invalid"}

        result = await engine.approve(request.id, "staff:jsmith")

        assert result.status is RequestStatus.ERROR
        assert "HTTP 400" in result.error
        stored = engine.get_request(request.id)
        assert stored.status == "error"
        assert json.loads(stored.sent_payload)["title"] == "Project Hail Mary"
        assert "Title is invalid" in stored.service_response
        assert engine.db.get_events(request.id)[-1].event_type == "submission_failed"

    @pytest.mark.asyncio
    async def test_error_can_be_approved_again(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        fake_catalog.add_status = 503
        fake_catalog.add_body = "maintenance"
        await engine.approve(request.id, "staff:jsmith")

        fake_catalog.add_status = 201
        fake_catalog.add_body = {"id": 100}
        result = await engine.approve(request.id, "staff:jsmith")

        assert result.status is RequestStatus.QUEUED

    @pytest.mark.asyncio
    async def test_missing_selection(self, engine):
        request = engine.db.create_request("member:42", "Dune")

        with pytest.raises(ValidationError, match="no stored selection payload"):
            await engine.approve(request.id, "staff:jsmith")
        assert engine.get_request(request.id).status == "pending"

    @pytest.mark.asyncio
    async def test_invalid_selection(self, engine):
        request = engine.db.create_request("member:42", "Dune", selection_payload="not json")

        with pytest.raises(ValidationError, match=REASON_INVALID_PAYLOAD):
            await engine.approve(request.id, "staff:jsmith")

    @pytest.mark.asyncio
    async def test_not_approvable(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        engine.decline(request.id, "staff:jsmith")

        with pytest.raises(ValidationError, match="status declined"):
            await engine.approve(request.id, "staff:jsmith")

    @pytest.mark.asyncio
    async def test_concurrent_approval_loses(self, engine, fake_catalog):
        """A stale snapshot cannot submit once another approval took the request."""
        request = await create_selected(engine, fake_catalog)
        stale = engine.get_request(request.id)
        engine.db.transition_status(
            request.id, (RequestStatus.PENDING,), RequestStatus.PROCESSING, "approval in progress"
        )

        with pytest.raises(ValidationError, match="already being processed"):
            await engine.process_approval(stale, "staff:other")
        assert fake_catalog.calls("POST", "/api/v1/book") == []

    @pytest.mark.asyncio
    async def test_cancelled_approval_can_be_approved_again(self, engine, fake_catalog):
        """Cancelling mid-submission must not leave the request stuck in processing."""
        request = await create_selected(engine, fake_catalog)
        submitted = asyncio.Event()
        release = asyncio.Event()

        async def stall_on_add(http_request):
            if http_request.method == "POST" and http_request.url.path == "/api/v1/book":
                submitted.set()
                await release.wait()
            return fake_catalog.handle(http_request)

        engine.transport = httpx.MockTransport(stall_on_add)
        task = asyncio.create_task(engine.approve(request.id, "staff:jsmith"))
        await submitted.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        stored = engine.get_request(request.id)
        assert stored.status == "error"
        assert stored.status_reason == REASON_INTERRUPTED

        engine.transport = fake_catalog.transport
        result = await engine.approve(request.id, "staff:jsmith")

        assert result.status is RequestStatus.QUEUED

    @pytest.mark.asyncio
    async def test_unknown_request(self, engine):
        with pytest.raises(RequestNotFoundError):
            await engine.approve("missing", "staff:jsmith")

    @pytest.mark.asyncio
    async def test_audiobook_routed_to_its_instance(self, engine, fake_catalog):
        """The audiobook instance is unconfigured here, so approval stays local."""
        request = engine.db.create_request(
            "member:42", "Dune", collection_kind=CollectionKind.AUDIOBOOK
        )

        result = await engine.approve(request.id, "staff:jsmith")

        assert result.status is RequestStatus.APPROVED
        assert fake_catalog.requests == []


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_requires_approved(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)

        with pytest.raises(ValidationError, match="status pending"):
            await engine.retry(request.id, "staff:jsmith")

    @pytest.mark.asyncio
    async def test_retry_requires_selection(self, engine):
        request = engine.db.create_request("member:42", "Dune")
        engine.db.approve_request(request.id, "staff:jsmith")

        with pytest.raises(ValidationError, match=REASON_MISSING_PAYLOAD):
            await engine.retry(request.id, "staff:jsmith")

    @pytest.mark.asyncio
    async def test_retry_submits(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        engine.db.approve_request(request.id, "staff:jsmith")

        result = await engine.retry(request.id, "staff:jsmith")

        assert result.status is RequestStatus.QUEUED
        assert len(fake_catalog.calls("POST", "/api/v1/book")) == 1


class TestDecline:
    @pytest.mark.asyncio
    async def test_decline_pending(self, engine, fake_catalog, notifier):
        request = await create_selected(engine, fake_catalog)

        result = engine.decline(request.id, "staff:jsmith", reason="out of scope")

        assert result.status is RequestStatus.DECLINED
        stored = engine.get_request(request.id)
        assert stored.status == "declined"
        assert stored.status_reason == "out of scope"
        assert notifier.declined == [request.id]

    @pytest.mark.asyncio
    async def test_decline_twice(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        engine.decline(request.id, "staff:jsmith")

        with pytest.raises(ValidationError):
            engine.decline(request.id, "staff:jsmith")

    @pytest.mark.asyncio
    async def test_queued_cannot_be_declined(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        await engine.approve(request.id, "staff:jsmith")

        with pytest.raises(ValidationError):
            engine.decline(request.id, "staff:jsmith")


class TestHydrate:
    @pytest.mark.asyncio
    async def test_attaches_selection(self, engine, fake_catalog):
        request = engine.db.create_request("member:42", "Project Hail Mary", ["Andy Weir"])
        fake_catalog.lookup_results = [HAIL_MARY]

        assert await engine.hydrate(request.id, "staff:jsmith") == "attached"
        assert await engine.hydrate(request.id, "staff:jsmith") == "already attached"

        stored = engine.get_request(request.id)
        assert json.loads(stored.selection_payload)["foreignBookId"] == "54493401"
        sent = fake_catalog.calls("GET", "/api/v1/book/lookup")[0]
        assert sent.url.params["term"] == "Project Hail Mary Andy Weir"
        assert engine.db.get_events(request.id)[-1].event_type == "hydrated"

    @pytest.mark.asyncio
    async def test_no_matches(self, engine):
        request = engine.db.create_request("member:42", "Nothing", isbn13="9780000000000")

        with pytest.raises(ValidationError, match="no matches"):
            await engine.hydrate(request.id)

    @pytest.mark.asyncio
    async def test_unconfigured(self, local_engine):
        request = local_engine.db.create_request("member:42", "Dune")

        with pytest.raises(ValidationError, match="not configured"):
            await local_engine.hydrate(request.id)


class TestTokens:
    class Clock:
        def __init__(self):
            self.now = datetime(2024, 1, 1, tzinfo=UTC)

        def __call__(self):
            return self.now

    def test_single_use(self):
        registry = ApprovalTokenRegistry()
        token = registry.issue("r1", "approve")

        entry = registry.redeem(token)

        assert (entry.request_id, entry.action) == ("r1", "approve")
        with pytest.raises(TokenNotFoundError):
            registry.redeem(token)

    def test_expired(self):
        clock = self.Clock()
        registry = ApprovalTokenRegistry(ttl=timedelta(minutes=5), clock=clock)
        token = registry.issue("r1", "decline")
        clock.now += timedelta(minutes=5)

        with pytest.raises(TokenExpiredError):
            registry.redeem(token)
        assert len(registry) == 0

    def test_sweep(self):
        clock = self.Clock()
        registry = ApprovalTokenRegistry(ttl=timedelta(minutes=5), clock=clock)
        registry.issue("r1", "approve")
        registry.issue("r1", "decline")
        clock.now += timedelta(minutes=10)

        assert registry.sweep_expired() == 2
        assert len(registry) == 0

    def test_issue_drops_expired_tokens(self):
        """Links that nobody redeems must not pile up."""
        clock = self.Clock()
        registry = ApprovalTokenRegistry(ttl=timedelta(hours=1), clock=clock)

        for i in range(50):
            registry.issue(f"r{i}", "approve")
            registry.issue(f"r{i}", "decline")
            clock.now += timedelta(hours=2)

        assert len(registry) == 2

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            ApprovalTokenRegistry().issue("r1", "delete")

    @pytest.mark.asyncio
    async def test_redeem_approve_link(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        token = engine.approval_links(request.id)["approve"].rsplit("/", 1)[-1]

        result = await engine.redeem_token(token)

        assert result.status is RequestStatus.QUEUED
        stored = engine.get_request(request.id)
        assert stored.approver_id == "system"
        event_types = [e.event_type for e in engine.db.get_events(request.id)]
        assert "token_redeemed" in event_types

    @pytest.mark.asyncio
    async def test_redeem_decline_link(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)
        token = engine.approval_links(request.id)["decline"].rsplit("/", 1)[-1]

        result = await engine.redeem_token(token)

        assert result.status is RequestStatus.DECLINED
        assert engine.get_request(request.id).status_reason == "declined via notification"


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete(self, engine, fake_catalog):
        request = await create_selected(engine, fake_catalog)

        engine.delete(request.id)

        with pytest.raises(RequestNotFoundError):
            engine.get_request(request.id)


class TestListRequests:
    @pytest.mark.asyncio
    async def test_filters(self, engine, fake_catalog):
        first = await create_selected(engine, fake_catalog)
        second = engine.db.create_request("member:7", "Dune")
        engine.decline(second.id, "staff:jsmith")

        assert {r.id for r in engine.list_requests()} == {first.id, second.id}
        assert [r.id for r in engine.list_requests(status="declined")] == [second.id]
        assert [r.id for r in engine.list_requests(requester_id="member:42")] == [first.id]

    def test_unknown_status(self, local_engine):
        with pytest.raises(ValidationError, match="unknown status"):
            local_engine.list_requests(status="lost")
