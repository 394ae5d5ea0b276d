"""Source handlers, registered on the router at startup."""

from finhook.webhook.handlers.base import HandlerContext, WebhookHandler
from finhook.webhook.handlers.gmail import GmailWebhookHandler
from finhook.webhook.handlers.gocardless import GoCardlessWebhookHandler
from finhook.webhook.handlers.plaid import PlaidWebhookHandler
from finhook.webhook.handlers.test import TestWebhookHandler

DEFAULT_HANDLERS: tuple[type[WebhookHandler], ...] = (
    PlaidWebhookHandler,
    GoCardlessWebhookHandler,
    GmailWebhookHandler,
    TestWebhookHandler,
)

__all__ = [
    "DEFAULT_HANDLERS",
    "GmailWebhookHandler",
    "GoCardlessWebhookHandler",
    "HandlerContext",
    "PlaidWebhookHandler",
    "TestWebhookHandler",
    "WebhookHandler",
]
