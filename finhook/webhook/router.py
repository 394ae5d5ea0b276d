"""Registry mapping a webhook source to its handler."""

from __future__ import annotations

import logging

from finhook.models import WebhookSource
from finhook.webhook.handlers.base import WebhookHandler
from finhook.webhook.models import WebhookErrorCode, WebhookRequest, WebhookResponse

logger = logging.getLogger(__name__)


class WebhookRouter:
    def __init__(self) -> None:
        self._handlers: dict[WebhookSource, WebhookHandler] = {}

    def __len__(self) -> int:
        return len(self._handlers)

    def register(self, handler: WebhookHandler) -> None:
        if handler.source in self._handlers:
            logger.warning("Handler already registered for %s, replacing", handler.source.value)
        self._handlers[handler.source] = handler
        logger.info("Registered webhook handler for %s", handler.source.value)

    def unregister(self, source: WebhookSource) -> None:
        if self._handlers.pop(source, None) is not None:
            logger.info("Unregistered webhook handler for %s", source.value)

    def get_handler(self, source: WebhookSource) -> WebhookHandler | None:
        return self._handlers.get(source)

    def has_handler(self, source: WebhookSource) -> bool:
        return source in self._handlers

    def sources(self) -> list[WebhookSource]:
        return list(self._handlers)

    def clear(self) -> None:
        self._handlers.clear()
        logger.info("Cleared all webhook handlers")

    async def route(self, request: WebhookRequest) -> WebhookResponse:
        handler = self._handlers.get(request.source)
        if handler is None:
            logger.warning("No handler registered for source %s", request.source.value)
            return WebhookResponse.fail(
                400, WebhookErrorCode.NO_HANDLER,
                f"No handler registered for source: {request.source.value}",
            )
        return await handler.handle(request)
