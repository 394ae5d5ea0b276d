"""Gmail Pub/Sub push handler."""

from __future__ import annotations

import base64
import binascii
import json
import logging

from finhook.models import WebhookSource
from finhook.webhook.handlers.base import WebhookHandler
from finhook.webhook.models import WebhookRequest, WebhookResponse

logger = logging.getLogger(__name__)


def decode_pubsub_message(body: object) -> dict | None:
    """Decode ``message.data`` (base64 JSON) of a Pub/Sub push body."""
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    data = message.get("data") if isinstance(message, dict) else None
    if not isinstance(data, str) or not data:
        return None
    try:
        decoded = json.loads(base64.b64decode(data))
    except (binascii.Error, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


class GmailWebhookHandler(WebhookHandler):
    source = WebhookSource.GMAIL

    def supported_events(self) -> list[str]:
        return ["gmail.history"]

    async def dispatch(self, request: WebhookRequest) -> WebhookResponse:
        notification = decode_pubsub_message(request.body)
        if notification is None:
            logger.warning("Gmail push without a decodable message")
            return WebhookResponse.ok(processed=False)

        email = notification.get("emailAddress", "")
        logger.info("Received Gmail notification for %s (history %s)", email, notification.get("historyId"))
        config = await self.context.config.get_config()
        account = config.find_account("gmail", email_address=email)
        if account is None or not account.enabled:
            logger.debug("No enabled Gmail account for %s", email)
            return WebhookResponse.ok(processed=False)
        return await self.gated_sync(account.id, "gmail.history")
