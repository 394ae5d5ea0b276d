"""Source handler contract."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from finhook.config import ConfigProvider
from finhook.events.bus import EventBus
from finhook.models import WebhookSource
from finhook.webhook.models import WebhookErrorCode, WebhookRequest, WebhookResponse
from finhook.webhook.rate_limiter import SyncRateLimiter
from finhook.webhook.sync import SyncDispatcher

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Collaborators shared by all source handlers."""

    config: ConfigProvider
    events: EventBus
    rate_limiter: SyncRateLimiter | None = None
    dispatcher: SyncDispatcher | None = None


class WebhookHandler(ABC):
    """Interprets provider events for one source.

    ``handle`` never raises: failures inside ``dispatch`` become a 500 response.
    """

    source: WebhookSource

    def __init__(self, context: HandlerContext) -> None:
        self.context = context

    @abstractmethod
    async def dispatch(self, request: WebhookRequest) -> WebhookResponse: ...

    @abstractmethod
    def supported_events(self) -> list[str]: ...

    async def handle(self, request: WebhookRequest) -> WebhookResponse:
        try:
            return await self.dispatch(request)
        except Exception as exc:
            logger.exception("Error handling %s webhook", self.source.value)
            return WebhookResponse.fail(
                500, WebhookErrorCode.INTERNAL_ERROR, str(exc) or "Internal server error",
                retryable=True,
            )

    async def gated_sync(self, account_id: str, reason: str) -> WebhookResponse:
        """Run the webhook-bucket gate, then trigger a background sync."""
        limiter = self.context.rate_limiter
        if limiter is not None:
            if not limiter.is_webhook_sync_allowed(account_id):
                return WebhookResponse.fail(
                    429, WebhookErrorCode.RATE_LIMITED, "Rate limit exceeded",
                    retryable=True,
                    retry_after=limiter.retry_after("webhook"),
                    received=True,
                    processed=False,
                )
            limiter.record_webhook_sync(account_id)

        if self.context.dispatcher is not None:
            self.context.dispatcher.trigger(account_id, source=self.source.value, reason=reason)
        return WebhookResponse.ok(processed=True)
