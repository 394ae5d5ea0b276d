"""Relay transport: authenticated long-poll event stream.

The relay service buffers webhooks addressed to ``webhook_id`` while no public
endpoint exists. The client holds one outstanding
``GET {api}/webhooks/{id}/events?wait=true&timeout=N`` request, dispatches the
returned events to listeners, then acknowledges them with
``POST {api}/webhooks/{id}/events/ack``. An event whose listener hit a
``CacheStorageError`` is left unacknowledged so the relay delivers it again.
Transport failures move the client to ``reconnecting`` with exponential
backoff; after ``max_reconnect_attempts`` consecutive failures it reports
``failed`` and stops.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from finhook.config import RelayConfig
from finhook.credentials import RelayCredentials
from finhook.errors import CacheStorageError, RelayError, classify_exception, log_error, reauthenticate
from finhook.models import WebhookEvent

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class RelayStats:
    state: RelayState = RelayState.DISCONNECTED
    connected_at: float | None = None
    reconnect_attempts: int = 0
    events_received: int = 0
    events_acked: int = 0
    events_deferred: int = 0
    last_error: str | None = None


EventListener = Callable[[WebhookEvent], Awaitable[None] | None]
StateListener = Callable[[RelayState, str | None], Awaitable[None] | None]


async def _call(
    listener: Callable[..., Any], *args: Any, reraise: tuple[type[Exception], ...] = (),
) -> None:
    try:
        result = listener(*args)
        if inspect.isawaitable(result):
            await result
    except reraise:
        raise
    except Exception:
        logger.exception("Relay listener failed")


class RelayClient:
    def __init__(
        self,
        credentials: RelayCredentials,
        config: RelayConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._config = config or RelayConfig()
        self._api_url = (credentials.api_url or self._config.api_url).rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._event_listeners: list[EventListener] = []
        self._state_listeners: list[StateListener] = []
        self._task: asyncio.Task[None] | None = None
        self.stats = RelayStats()

    # --- Listeners ---

    def on_event(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def off_event(self, listener: EventListener) -> None:
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def off_state_change(self, listener: StateListener) -> None:
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    # --- State ---

    @property
    def state(self) -> RelayState:
        return self.stats.state

    @property
    def is_connected(self) -> bool:
        return self.stats.state == RelayState.CONNECTED

    async def _set_state(self, state: RelayState, reason: str | None = None) -> None:
        if self.stats.state == state:
            return
        self.stats.state = state
        logger.debug("Relay state: %s (%s)", state.value, reason)
        for listener in list(self._state_listeners):
            await _call(listener, state, reason)

    # --- HTTP ---

    @property
    def _events_url(self) -> str:
        return f"{self._api_url}/webhooks/{self._credentials.webhook_id}/events"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._credentials.api_key}"}

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.is_success:
            return
        if resp.status_code in (401, 403):
            raise RelayError(
                f"Relay rejected credentials ({resp.status_code})",
                code="RELAY_AUTH_FAILED",
                status_code=resp.status_code,
                recoverable=False,
                next_actions=[reauthenticate("Reconnect the relay webhook")],
            )
        raise RelayError(
            f"Relay returned {resp.status_code}",
            status_code=resp.status_code,
        )

    async def poll(self) -> list[WebhookEvent]:
        """One long-poll round trip; returns the events delivered."""
        wait = self._config.poll_timeout
        try:
            resp = await self._http().get(
                self._events_url,
                params={"wait": "true", "timeout": str(wait)},
                headers=self._headers(),
                timeout=wait + 5,
            )
        except httpx.HTTPError as exc:
            raise classify_exception(exc, webhook_id=self._credentials.webhook_id) from exc
        self._raise_for_status(resp)

        events: list[WebhookEvent] = []
        for item in resp.json().get("events", []):
            try:
                events.append(WebhookEvent.model_validate(item))
            except ValidationError as exc:
                logger.warning("Dropping malformed relay event: %s", exc)
        return events

    async def ack(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        try:
            resp = await self._http().post(
                f"{self._events_url}/ack",
                json={"event_ids": event_ids},
                headers=self._headers(),
                timeout=10.0,
            )
        except httpx.HTTPError as exc:
            raise classify_exception(exc, webhook_id=self._credentials.webhook_id) from exc
        self._raise_for_status(resp)
        self.stats.events_acked += len(event_ids)

    # --- Lifecycle ---

    async def connect(self) -> None:
        """Validate credentials with a first poll, then start the listen loop.

        Raises the classified error if the first poll fails.
        """
        if self._task is not None and not self._task.done():
            return
        await self._set_state(RelayState.CONNECTING)
        try:
            first = await self.poll()
        except Exception as exc:
            error = classify_exception(exc)
            self.stats.last_error = error.message
            await self._set_state(RelayState.FAILED, error.message)
            raise error from exc
        self.stats.connected_at = time.time()
        self.stats.reconnect_attempts = 0
        await self._set_state(RelayState.CONNECTED)
        await self._deliver(first)
        self._task = asyncio.create_task(self._listen(), name="relay-listen")

    async def _deliver(self, events: list[WebhookEvent]) -> None:
        acked: list[str] = []
        for event in events:
            self.stats.events_received += 1
            try:
                for listener in list(self._event_listeners):
                    await _call(listener, event, reraise=(CacheStorageError,))
            except CacheStorageError as exc:
                log_error(logger, exc, event_id=event.event_id)
                self.stats.events_deferred += 1
                continue
            if event.event_id:
                acked.append(event.event_id)
        await self.ack(acked)

    def _backoff(self) -> float:
        delay = self._config.reconnect_delay * (2 ** (self.stats.reconnect_attempts - 1))
        return min(delay, self._config.max_reconnect_delay)

    async def _listen(self) -> None:
        while True:
            try:
                events = await self.poll()
                await self._deliver(events)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify_exception(exc)
                self.stats.last_error = error.message
                if not error.recoverable:
                    log_error(logger, error)
                    await self._set_state(RelayState.FAILED, error.message)
                    return
                self.stats.reconnect_attempts += 1
                if self.stats.reconnect_attempts > self._config.max_reconnect_attempts:
                    log_error(logger, error, attempts=self.stats.reconnect_attempts)
                    await self._set_state(RelayState.FAILED, "Reconnect attempts exhausted")
                    return
                delay = self._backoff()
                await self._set_state(RelayState.RECONNECTING, f"Reconnecting in {delay:g}s")
                await asyncio.sleep(delay)
                continue

            if self.stats.state != RelayState.CONNECTED:
                self.stats.reconnect_attempts = 0
                self.stats.connected_at = time.time()
                await self._set_state(RelayState.CONNECTED)

    async def disconnect(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        await self._set_state(RelayState.CLOSED)
