"""GoCardless webhook handler: acknowledges events and re-emits them."""

from __future__ import annotations

import logging

from finhook.models import WebhookSource
from finhook.webhook.handlers.base import WebhookHandler
from finhook.webhook.models import WebhookRequest, WebhookResponse

logger = logging.getLogger(__name__)

_SUPPORTED = {
    ("mandates", "created"),
    ("mandates", "cancelled"),
    ("payments", "paid_out"),
}


class GoCardlessWebhookHandler(WebhookHandler):
    source = WebhookSource.GOCARDLESS

    def supported_events(self) -> list[str]:
        return sorted(f"{resource}.{action}" for resource, action in _SUPPORTED)

    async def dispatch(self, request: WebhookRequest) -> WebhookResponse:
        body = request.body if isinstance(request.body, dict) else {}
        # batched deliveries carry {"events": [...]}, single ones are the event itself
        events = body.get("events") if isinstance(body.get("events"), list) else [body]

        handled = 0
        for event in events:
            if not isinstance(event, dict):
                continue
            resource = event.get("resource_type", "")
            action = event.get("action", "")
            if (resource, action) not in _SUPPORTED:
                logger.debug("Unhandled GoCardless webhook %s.%s", resource, action)
                continue
            logger.info("GoCardless %s event: %s", resource, action)
            await self.context.events.emit(f"webhook.gocardless.{resource}.{action}", {
                "event_id": event.get("id"),
                "links": event.get("links") or {},
            })
            handled += 1

        return WebhookResponse.ok(processed=handled > 0)
