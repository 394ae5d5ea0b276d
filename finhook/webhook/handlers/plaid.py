"""Plaid webhook handler."""

from __future__ import annotations

import json
import logging

from finhook.models import WebhookSource
from finhook.webhook.handlers.base import WebhookHandler
from finhook.webhook.models import WebhookRequest, WebhookResponse

logger = logging.getLogger(__name__)


class PlaidWebhookHandler(WebhookHandler):
    source = WebhookSource.PLAID

    def supported_events(self) -> list[str]:
        return [
            "TRANSACTIONS.SYNC_UPDATES_AVAILABLE",
            "ITEM.ERROR",
            "ITEM.LOGIN_REQUIRED",
        ]

    async def dispatch(self, request: WebhookRequest) -> WebhookResponse:
        body = request.body if isinstance(request.body, dict) else {}
        webhook_type = body.get("webhook_type", "")
        webhook_code = body.get("webhook_code", "")
        item_id = body.get("item_id", "")
        logger.info("Received Plaid webhook %s.%s for item %s", webhook_type, webhook_code, item_id)

        if webhook_type == "TRANSACTIONS" and webhook_code == "SYNC_UPDATES_AVAILABLE":
            return await self._sync_updates_available(item_id)
        if webhook_type == "ITEM" and webhook_code in ("ERROR", "LOGIN_REQUIRED"):
            return await self._item_error(body)

        logger.debug("Unhandled Plaid webhook %s.%s", webhook_type, webhook_code)
        return WebhookResponse(status=200, received=True)

    async def _sync_updates_available(self, item_id: str) -> WebhookResponse:
        config = await self.context.config.get_config()
        account = config.find_account("plaid", plaid_item_id=item_id)
        if account is None:
            logger.warning("No account found for Plaid item %s", item_id)
            return WebhookResponse.ok(processed=False)
        if not account.enabled:
            logger.debug("Account %s is disabled, skipping sync", account.id)
            return WebhookResponse.ok(processed=False)
        return await self.gated_sync(account.id, "SYNC_UPDATES_AVAILABLE")

    async def _item_error(self, body: dict) -> WebhookResponse:
        item_id = body.get("item_id", "")
        error = body.get("error")
        if not isinstance(error, dict):
            error = {
                "error_code": body.get("webhook_code"),
                "error_message": str(error) if error else "Item login required",
            }
        logger.warning(
            "Plaid item error for %s: %s - %s",
            item_id, error.get("error_code"), error.get("error_message"),
        )
        config = await self.context.config.get_config()
        account = config.find_account("plaid", plaid_item_id=item_id)
        await self.context.events.emit("account.error", {
            "account_id": account.id if account else item_id,
            "account_type": "plaid",
            "item_id": item_id,
            "error": json.dumps(error),
        })
        return WebhookResponse.ok(processed=True)
