"""Tests for the webhook router."""

from __future__ import annotations

import pytest

from finhook.events.bus import EventBus
from finhook.models import WebhookSource
from finhook.webhook.handlers import HandlerContext, TestWebhookHandler
from finhook.webhook.models import WebhookErrorCode, WebhookRequest
from finhook.webhook.router import WebhookRouter
from tests.conftest import make_provider


@pytest.fixture
def handler(events: EventBus) -> TestWebhookHandler:
    return TestWebhookHandler(HandlerContext(config=make_provider(), events=events))


class TestWebhookRouter:
    def test_register_and_lookup(self, handler: TestWebhookHandler) -> None:
        router = WebhookRouter()
        router.register(handler)
        assert router.has_handler(WebhookSource.TEST)
        assert router.get_handler(WebhookSource.TEST) is handler
        assert router.sources() == [WebhookSource.TEST]
        assert len(router) == 1

    def test_register_replaces(self, handler: TestWebhookHandler, events: EventBus) -> None:
        router = WebhookRouter()
        router.register(handler)
        replacement = TestWebhookHandler(HandlerContext(config=make_provider(), events=events))
        router.register(replacement)
        assert router.get_handler(WebhookSource.TEST) is replacement
        assert len(router) == 1

    def test_unregister_and_clear(self, handler: TestWebhookHandler) -> None:
        router = WebhookRouter()
        router.register(handler)
        router.unregister(WebhookSource.TEST)
        router.unregister(WebhookSource.TEST)
        assert not router.has_handler(WebhookSource.TEST)

        router.register(handler)
        router.clear()
        assert len(router) == 0

    @pytest.mark.asyncio
    async def test_route_dispatches(self, handler: TestWebhookHandler, events: EventBus) -> None:
        router = WebhookRouter()
        router.register(handler)
        response = await router.route(WebhookRequest(source=WebhookSource.TEST, body={"x": 1}))
        assert response.status == 200
        assert events.history[-1].type == "webhook.test"

    @pytest.mark.asyncio
    async def test_route_without_handler(self) -> None:
        response = await WebhookRouter().route(WebhookRequest(source=WebhookSource.PLAID, body={}))
        assert response.status == 400
        assert response.error is not None
        assert response.error.code == WebhookErrorCode.NO_HANDLER
        assert "plaid" in response.error.message
