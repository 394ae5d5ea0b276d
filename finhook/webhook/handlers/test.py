"""Echo handler for connectivity checks."""

from __future__ import annotations

import logging

from finhook.models import WebhookSource
from finhook.webhook.handlers.base import WebhookHandler
from finhook.webhook.models import WebhookRequest, WebhookResponse

logger = logging.getLogger(__name__)


class TestWebhookHandler(WebhookHandler):
    __test__ = False  # not a pytest class

    source = WebhookSource.TEST

    def supported_events(self) -> list[str]:
        return ["test"]

    async def dispatch(self, request: WebhookRequest) -> WebhookResponse:
        logger.info("Received test webhook from %s", request.client_ip or "unknown")
        await self.context.events.emit("webhook.test", {
            "body": request.body if isinstance(request.body, dict) else {},
        })
        return WebhookResponse.ok(processed=True)
