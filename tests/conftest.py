"""Shared test fixtures for finhook."""

from __future__ import annotations

import inspect
import json
import time
from collections.abc import Callable
from typing import Any

import pytest

from finhook.config import AppConfig, MemoryConfigProvider, deep_merge
from finhook.events.bus import EventBus
from finhook.models import WebhookEvent
from finhook.webhook.deduplication import InMemoryDeduplicationCache
from finhook.webhook.relay import RelayState
from finhook.webhook.security import WebhookSecurity
from finhook.webhook.sync import SyncResult

PLAID_SECRET = "plaid-test-secret"


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def dedup() -> InMemoryDeduplicationCache:
    return InMemoryDeduplicationCache()


# --- Factory functions for test data ---


def make_config(**overrides: Any) -> AppConfig:
    """Factory for AppConfig; keyword args are deep-merged into the defaults.

    Health checks are disabled unless asked for, so managers started in tests
    do not spawn timers.
    """
    base: dict[str, Any] = {
        "connect": {"receiver": {"health_check": {"enabled": False}}},
        "accounts": [
            {"id": "acct_plaid", "type": "plaid", "name": "Checking", "plaid_item_id": "item_1"},
        ],
    }
    return AppConfig.model_validate(deep_merge(base, overrides))


def make_provider(**overrides: Any) -> MemoryConfigProvider:
    return MemoryConfigProvider(make_config(**overrides))


def plaid_payload(
    webhook_type: str = "TRANSACTIONS",
    webhook_code: str = "SYNC_UPDATES_AVAILABLE",
    item_id: str = "item_1",
    webhook_id: str = "wh_1",
    **extra: Any,
) -> bytes:
    body = {
        "webhook_type": webhook_type,
        "webhook_code": webhook_code,
        "item_id": item_id,
        "webhook_id": webhook_id,
        **extra,
    }
    return json.dumps(body).encode()


def plaid_headers(body: bytes, secret: str = PLAID_SECRET, timestamp: float | None = None) -> dict[str, str]:
    ts = int(timestamp if timestamp is not None else time.time())
    return {
        "content-type": "application/json",
        "plaid-verification": WebhookSecurity.generate_signature(body, secret),
        "plaid-timestamp": str(ts),
    }


class FakeSyncProvider:
    """Records calls; returns queued results, then ``default``."""

    def __init__(self, *results: SyncResult | Exception, default_success: bool = True) -> None:
        self.calls: list[str] = []
        self._results = list(results)
        self._default_success = default_success

    async def sync_account(self, account_id: str) -> SyncResult:
        self.calls.append(account_id)
        if self._results:
            result = self._results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return SyncResult(account_id=account_id, success=self._default_success, transactions_added=1)


class FakeRelay:
    """Stands in for ``RelayClient``; connects unless given an error."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.connected = False
        self.disconnected = False
        self._event_listeners: list[Callable[..., Any]] = []
        self._state_listeners: list[Callable[..., Any]] = []

    def on_event(self, listener: Callable[..., Any]) -> None:
        self._event_listeners.append(listener)

    def off_event(self, listener: Callable[..., Any]) -> None:
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def on_state_change(self, listener: Callable[..., Any]) -> None:
        self._state_listeners.append(listener)

    def off_state_change(self, listener: Callable[..., Any]) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        if self.error is not None:
            raise self.error
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnected = True
        await self.set_state(RelayState.CLOSED, None)

    async def emit(self, event: WebhookEvent) -> None:
        for listener in list(self._event_listeners):
            result = listener(event)
            if inspect.isawaitable(result):
                await result

    async def set_state(self, state: RelayState, reason: str | None) -> None:
        for listener in list(self._state_listeners):
            result = listener(state, reason)
            if inspect.isawaitable(result):
                await result
