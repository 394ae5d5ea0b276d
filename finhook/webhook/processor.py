"""Webhook processor: security checks, then routing.

Order per request:

1. Replay protection (timestamp freshness, nonce uniqueness), cheapest first.
2. Signature verification when a secret is configured for the source; the
   signature is then mandatory.
3. Handler lookup.
4. Nonce marked processed, before the handler runs, so a provider retry
   after a handler failure is not processed twice.
5. Handler dispatch. A rate-limited dispatch releases the nonce again, since
   the 429 asks the provider to redeliver.

A duplicate nonce is acknowledged with 200 so providers stop redelivering.
Storage failures while marking the nonce propagate as ``CacheStorageError``.
"""

from __future__ import annotations

import logging

from finhook.errors import FinhookError
from finhook.events.bus import EventBus
from finhook.webhook.models import WebhookErrorCode, WebhookRequest, WebhookResponse
from finhook.webhook.router import WebhookRouter
from finhook.webhook.security import WebhookSecurity

logger = logging.getLogger(__name__)


class WebhookProcessor:
    def __init__(
        self,
        router: WebhookRouter,
        security: WebhookSecurity | None = None,
        secrets: dict[str, str] | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.router = router
        self.security = security
        self._secrets = dict(secrets or {})
        self._events = events

    def set_secret(self, source: str, secret: str | None) -> None:
        if secret:
            self._secrets[source] = secret
        else:
            self._secrets.pop(source, None)

    async def process(self, request: WebhookRequest, *, mode: str = "direct") -> WebhookResponse:
        source = request.source.value

        if self.security is not None:
            replay = self.security.check_replay(request.timestamp, request.nonce)
            if replay.duplicate:
                return WebhookResponse.fail(
                    200, WebhookErrorCode.NONCE_REUSE, replay.reason,
                    received=True, processed=False,
                )
            if not replay.accepted:
                return WebhookResponse.fail(401, replay.code or WebhookErrorCode.REPLAY_DETECTED, replay.reason)

        secret = self._secrets.get(source)
        if secret and not WebhookSecurity.verify_signature(request.raw_body, request.signature, secret):
            logger.warning("Invalid signature on %s webhook", source)
            return WebhookResponse.fail(401, WebhookErrorCode.INVALID_SIGNATURE, "Invalid signature")

        if not self.router.has_handler(request.source):
            return await self.router.route(request)

        nonce = request.nonce
        if self.security is not None and nonce:
            self.security.mark_processed(nonce)

        if self._events is not None:
            await self._events.emit("webhook.received", {"source": source, "mode": mode})

        try:
            response = await self.router.route(request)
        except FinhookError:
            raise
        except Exception as exc:
            logger.exception("Error processing webhook from %s", source)
            return WebhookResponse.fail(
                500, WebhookErrorCode.INTERNAL_ERROR, str(exc) or "Internal server error",
                retryable=True,
            )

        rate_limited = response.error is not None and response.error.code == WebhookErrorCode.RATE_LIMITED
        if self.security is not None and nonce and rate_limited:
            # the provider is told to retry; its redelivery must not be a duplicate
            self.security.release(nonce)
        return response
