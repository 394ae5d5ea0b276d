"""Tests for the webhook processor's security pipeline."""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest

from finhook.errors import CacheStorageError
from finhook.events.bus import EventBus
from finhook.models import WebhookSource
from finhook.webhook.deduplication import InMemoryDeduplicationCache
from finhook.webhook.handlers import HandlerContext, PlaidWebhookHandler, WebhookHandler
from finhook.webhook.models import WebhookErrorCode, WebhookRequest, WebhookResponse, build_webhook_request
from finhook.webhook.processor import WebhookProcessor
from finhook.webhook.rate_limiter import SyncRateLimiter
from finhook.webhook.router import WebhookRouter
from finhook.webhook.security import WebhookSecurity
from finhook.webhook.sync import SyncDispatcher
from tests.conftest import PLAID_SECRET, FakeSyncProvider, make_provider, plaid_headers, plaid_payload


class ExplodingHandler(WebhookHandler):
    source = WebhookSource.TEST

    def supported_events(self) -> list[str]:
        return ["test"]

    async def dispatch(self, request: WebhookRequest) -> WebhookResponse:
        raise RuntimeError("boom")


@pytest.fixture
def provider() -> FakeSyncProvider:
    return FakeSyncProvider()


@pytest.fixture
def dispatcher(provider: FakeSyncProvider, events: EventBus) -> SyncDispatcher:
    return SyncDispatcher(provider, events)


@pytest.fixture
def processor(
    events: EventBus, dedup: InMemoryDeduplicationCache, dispatcher: SyncDispatcher,
) -> WebhookProcessor:
    router = WebhookRouter()
    context = HandlerContext(config=make_provider(), events=events, dispatcher=dispatcher)
    router.register(PlaidWebhookHandler(context))
    router.register(ExplodingHandler(context))
    return WebhookProcessor(
        router, WebhookSecurity(dedup), secrets={"plaid": PLAID_SECRET}, events=events,
    )


def _plaid(body: bytes | None = None, **header_overrides: str) -> WebhookRequest:
    body = body if body is not None else plaid_payload()
    headers = {**plaid_headers(body), **header_overrides}
    return build_webhook_request(WebhookSource.PLAID, body, headers)


class TestAccepted:
    @pytest.mark.asyncio
    async def test_valid_webhook_triggers_one_sync(
        self, processor: WebhookProcessor, dispatcher: SyncDispatcher, provider: FakeSyncProvider,
    ) -> None:
        response = await processor.process(_plaid())
        assert response.status == 200
        assert response.processed is True

        await dispatcher.drain()
        assert provider.calls == ["acct_plaid"]

    @pytest.mark.asyncio
    async def test_received_event_carries_mode(self, processor: WebhookProcessor, events: EventBus) -> None:
        await processor.process(_plaid(), mode="relay")
        received = [e for e in events.history if e.type == "webhook.received"]
        assert received[0].payload == {"source": "plaid", "mode": "relay"}

    @pytest.mark.asyncio
    async def test_no_secret_makes_signature_optional(self, events: EventBus, dedup: InMemoryDeduplicationCache) -> None:
        router = WebhookRouter()
        router.register(PlaidWebhookHandler(HandlerContext(config=make_provider(), events=events)))
        processor = WebhookProcessor(router, WebhookSecurity(dedup))
        request = build_webhook_request(WebhookSource.PLAID, plaid_payload(), {})
        assert (await processor.process(request)).status == 200

    @pytest.mark.asyncio
    async def test_without_security_duplicates_pass(self, events: EventBus) -> None:
        router = WebhookRouter()
        router.register(PlaidWebhookHandler(HandlerContext(config=make_provider(), events=events)))
        processor = WebhookProcessor(router)
        request = build_webhook_request(WebhookSource.PLAID, plaid_payload(), {})
        assert (await processor.process(request)).status == 200
        assert (await processor.process(request)).status == 200


class TestRejected:
    @pytest.mark.asyncio
    async def test_duplicate_acknowledged_without_processing(
        self, processor: WebhookProcessor, dispatcher: SyncDispatcher, provider: FakeSyncProvider,
    ) -> None:
        await processor.process(_plaid())
        response = await processor.process(_plaid())

        assert response.status == 200
        assert response.received is True
        assert response.processed is False
        assert response.error is not None
        assert response.error.code == WebhookErrorCode.NONCE_REUSE

        await dispatcher.drain()
        assert provider.calls == ["acct_plaid"]

    @pytest.mark.asyncio
    async def test_bad_signature_does_not_consume_nonce(
        self, processor: WebhookProcessor, dedup: InMemoryDeduplicationCache,
    ) -> None:
        forged = _plaid(**{"plaid-verification": "sha256=" + "0" * 64})
        response = await processor.process(forged)
        assert response.status == 401
        assert response.error is not None
        assert response.error.code == WebhookErrorCode.INVALID_SIGNATURE
        assert not dedup.is_processed("wh_1_SYNC_UPDATES_AVAILABLE")

        assert (await processor.process(_plaid())).status == 200

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, processor: WebhookProcessor) -> None:
        body = plaid_payload()
        request = build_webhook_request(WebhookSource.PLAID, body, {"plaid-timestamp": str(int(time.time()))})
        assert (await processor.process(request)).status == 401

    @pytest.mark.asyncio
    async def test_stale_timestamp(self, processor: WebhookProcessor) -> None:
        body = plaid_payload()
        request = build_webhook_request(
            WebhookSource.PLAID, body, plaid_headers(body, timestamp=time.time() - 3600),
        )
        response = await processor.process(request)
        assert response.status == 401
        assert response.error is not None
        assert response.error.code == WebhookErrorCode.INVALID_TIMESTAMP

    @pytest.mark.asyncio
    async def test_no_handler_leaves_nonce_unmarked(
        self, events: EventBus, dedup: InMemoryDeduplicationCache,
    ) -> None:
        processor = WebhookProcessor(WebhookRouter(), WebhookSecurity(dedup), events=events)
        request = build_webhook_request(WebhookSource.PLAID, plaid_payload(), {})
        response = await processor.process(request)
        assert response.status == 400
        assert response.error is not None
        assert response.error.code == WebhookErrorCode.NO_HANDLER
        assert not dedup.is_processed("wh_1_SYNC_UPDATES_AVAILABLE")
        assert events.history == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_handler_failure_still_marks_nonce(
        self, processor: WebhookProcessor, dedup: InMemoryDeduplicationCache,
    ) -> None:
        request = build_webhook_request(WebhookSource.TEST, b"{}", {"x-webhook-nonce": "n-1"})
        response = await processor.process(request)
        assert response.status == 500
        assert response.error is not None
        assert response.error.code == WebhookErrorCode.INTERNAL_ERROR
        assert response.error.retryable
        assert dedup.is_processed("n-1")

    @pytest.mark.asyncio
    async def test_storage_failure_propagates(self, events: EventBus) -> None:
        cache = MagicMock()
        cache.is_processed.return_value = False
        cache.mark_processed.side_effect = CacheStorageError("disk full", code="STORAGE_DISK_FULL")
        router = WebhookRouter()
        router.register(PlaidWebhookHandler(HandlerContext(config=make_provider(), events=events)))
        processor = WebhookProcessor(router, WebhookSecurity(cache))

        request = build_webhook_request(WebhookSource.PLAID, plaid_payload(), {})
        with pytest.raises(CacheStorageError):
            await processor.process(request)


class TestRateLimited:
    @pytest.mark.asyncio
    async def test_rate_limited_delivery_can_be_redelivered(
        self, events: EventBus, dedup: InMemoryDeduplicationCache,
        dispatcher: SyncDispatcher, provider: FakeSyncProvider,
    ) -> None:
        limiter = SyncRateLimiter()
        router = WebhookRouter()
        router.register(PlaidWebhookHandler(HandlerContext(
            config=make_provider(), events=events, rate_limiter=limiter, dispatcher=dispatcher,
        )))
        processor = WebhookProcessor(router, WebhookSecurity(dedup), secrets={"plaid": PLAID_SECRET})

        limiter.open_circuit()
        first = await processor.process(_plaid())
        assert first.status == 429
        assert first.error is not None and first.error.retryable
        assert not dedup.is_processed("wh_1_SYNC_UPDATES_AVAILABLE")

        limiter.close_circuit()
        retry = await processor.process(_plaid())
        assert retry.status == 200
        assert retry.processed is True
        assert dedup.is_processed("wh_1_SYNC_UPDATES_AVAILABLE")

        await dispatcher.drain()
        assert provider.calls == ["acct_plaid"]
