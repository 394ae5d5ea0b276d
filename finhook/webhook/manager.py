"""Webhook manager.

Owns the reception transport and keeps it on the best mode available::

    STOPPED -> STARTING -> RUNNING(mode) -> STOPPED

A mode switch while running goes straight from ``RUNNING(a)`` to
``RUNNING(b)`` and is announced as a ``ModeChangeEvent`` to mode-change
listeners and as ``webhook.mode_changed`` on the event bus.

With ``mode: auto`` a provisioning failure falls back down the chain
(direct -> relay -> polling). With a fixed mode it is raised to the caller as
``WebhookStartError``.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from finhook.config import AppConfig, ConfigProvider, RelayConfig
from finhook.connection.selector import ConnectionModeSelector
from finhook.credentials import ConfigCredentialStore, CredentialStore, RelayCredentials
from finhook.errors import (
    FinhookError,
    WebhookStartError,
    classify_exception,
    log_error,
    manual_intervention,
    switch_mode,
)
from finhook.events.bus import EventBus
from finhook.models import (
    ConnectionMode,
    ConnectionPurpose,
    ConnectionStatus,
    ModeChangeEvent,
    WebhookEvent,
)
from finhook.tasks import PeriodicTask, TaskTracker
from finhook.webhook.models import build_webhook_request
from finhook.webhook.processor import WebhookProcessor
from finhook.webhook.rate_limiter import SyncRateLimiter
from finhook.webhook.relay import RelayClient, RelayState
from finhook.webhook.sync import SyncDispatcher

logger = logging.getLogger(__name__)

RelayFactory = Callable[[RelayCredentials, RelayConfig], RelayClient]
ModeChangeListener = Callable[[ModeChangeEvent], Awaitable[None] | None]
EventListener = Callable[[WebhookEvent], Awaitable[None] | None]

_RELAY_STATUS = {
    RelayState.DISCONNECTED: ConnectionStatus.DISCONNECTED,
    RelayState.CONNECTING: ConnectionStatus.CONNECTING,
    RelayState.CONNECTED: ConnectionStatus.CONNECTED,
    RelayState.RECONNECTING: ConnectionStatus.RECONNECTING,
    RelayState.FAILED: ConnectionStatus.FAILED,
    RelayState.CLOSED: ConnectionStatus.DISCONNECTED,
}


class ManagerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


@dataclass(frozen=True)
class ManagerSnapshot:
    state: ManagerState
    mode: ConnectionMode | None
    connection_status: ConnectionStatus
    last_health_check: float | None
    last_mode_change: float | None
    webhook_url: str | None
    consecutive_failures: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "mode": self.mode.value if self.mode else None,
            "connection_status": self.connection_status.value,
            "last_health_check": self.last_health_check,
            "last_mode_change": self.last_mode_change,
            "webhook_url": self.webhook_url,
            "consecutive_failures": self.consecutive_failures,
        }


async def _notify(listeners: list[Any], payload: Any) -> None:
    for listener in list(listeners):
        try:
            result = listener(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Webhook manager listener failed")


class WebhookManager:
    def __init__(
        self,
        config: ConfigProvider,
        selector: ConnectionModeSelector | None = None,
        *,
        events: EventBus | None = None,
        processor: WebhookProcessor | None = None,
        dispatcher: SyncDispatcher | None = None,
        rate_limiter: SyncRateLimiter | None = None,
        credentials: CredentialStore | None = None,
        relay_factory: RelayFactory | None = None,
    ) -> None:
        self._config = config
        self._selector = selector or ConnectionModeSelector(config)
        self._events = events
        self._processor = processor
        self._dispatcher = dispatcher
        self._rate_limiter = rate_limiter
        self._credentials = credentials or ConfigCredentialStore(config)
        self._relay_factory = relay_factory or (lambda creds, cfg: RelayClient(creds, cfg))

        self._state = ManagerState.STOPPED
        self._mode: ConnectionMode | None = None
        self._fixed_mode = False
        self._status = ConnectionStatus.DISCONNECTED
        self._webhook_url: str | None = None
        self._last_health_check: float | None = None
        self._last_mode_change: float | None = None
        self._failures = 0

        self._relay: RelayClient | None = None
        self._health_task: PeriodicTask | None = None
        self._poll_task: PeriodicTask | None = None
        self._background = TaskTracker("webhook-manager")
        self._switch_lock = asyncio.Lock()
        self._stopping = False

        self._event_listeners: list[EventListener] = []
        self._mode_listeners: list[ModeChangeListener] = []

    # --- Listeners ---

    def on_event(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def off_event(self, listener: EventListener) -> None:
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def on_mode_change(self, listener: ModeChangeListener) -> None:
        self._mode_listeners.append(listener)

    def off_mode_change(self, listener: ModeChangeListener) -> None:
        if listener in self._mode_listeners:
            self._mode_listeners.remove(listener)

    # --- Introspection ---

    @property
    def current_mode(self) -> ConnectionMode | None:
        return self._mode

    @property
    def running(self) -> bool:
        return self._state == ManagerState.RUNNING

    def state(self) -> ManagerSnapshot:
        return ManagerSnapshot(
            state=self._state,
            mode=self._mode,
            connection_status=self._status,
            last_health_check=self._last_health_check,
            last_mode_change=self._last_mode_change,
            webhook_url=self._webhook_url,
            consecutive_failures=self._failures,
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._state != ManagerState.STOPPED:
            logger.warning("Webhook manager already %s", self._state.value)
            return

        self._state = ManagerState.STARTING
        logger.info("Webhook manager starting")
        try:
            config = await self._config.get_config()
            receiver = config.connect.receiver
            self._fixed_mode = receiver.mode != ConnectionMode.AUTO
            selection = await self._selector.select(ConnectionPurpose.WEBHOOK)
            mode = selection.mode
            while True:
                try:
                    await self._provision(mode, config)
                    break
                except FinhookError as exc:
                    if self._fixed_mode:
                        log_error(logger, exc, mode=mode.value)
                        raise WebhookStartError(
                            f"Failed to start {mode.value} mode: {exc.message}",
                            recoverable=False,
                            next_actions=[
                                switch_mode(ConnectionMode.AUTO.value, "Use auto mode to allow fallback"),
                                *exc.next_actions,
                            ],
                            entities={"mode": mode.value},
                        ) from exc
                    fallback = self._selector.fallback_mode(mode)
                    logger.warning(
                        "Provisioning %s failed (%s), falling back to %s",
                        mode.value, exc.message, fallback.value,
                    )
                    mode = fallback
        except BaseException:
            self._state = ManagerState.STOPPED
            raise

        self._mode = mode
        self._last_mode_change = time.time()
        self._failures = 0
        self._stopping = False
        self._state = ManagerState.RUNNING

        health = receiver.health_check
        if health.enabled:
            self._health_task = PeriodicTask("webhook-health-check", health.interval, self.health_check)
            self._health_task.start()
        logger.info("Webhook manager started in %s mode (%s)", mode.value, selection.reason)

    async def stop(self) -> None:
        """Stop timers and release the transport; a no-op when already stopped."""
        if self._state == ManagerState.STOPPED:
            return
        self._stopping = True
        logger.info("Webhook manager stopping")
        if self._health_task is not None:
            await self._health_task.cancel()
            self._health_task = None
        await self._background.cancel_all()
        async with self._switch_lock:
            await self._release()
        self._state = ManagerState.STOPPED
        self._stopping = False
        logger.info("Webhook manager stopped")

    async def force_mode(self, mode: ConnectionMode, reason: str = "Manual mode switch") -> None:
        if mode == ConnectionMode.AUTO:
            selection = await self._selector.select(ConnectionPurpose.WEBHOOK)
            mode, reason = selection.mode, f"{reason}: {selection.reason}"
        await self._switch_mode(mode, reason, strict=True)

    # --- Transport provisioning ---

    async def _provision(self, mode: ConnectionMode, config: AppConfig) -> None:
        if mode == ConnectionMode.DIRECT:
            public_url = config.connect.public_url
            if not public_url:
                raise WebhookStartError(
                    "Direct mode requires connect.public_url",
                    code="DIRECT_NOT_CONFIGURED",
                    next_actions=[manual_intervention("Set connect.public_url")],
                )
            self._webhook_url = f"{public_url.rstrip('/')}/webhook"
            self._status = ConnectionStatus.CONNECTED
        elif mode == ConnectionMode.RELAY:
            await self._connect_relay(config.connect.receiver.relay)
        else:
            self._webhook_url = None
            if self._dispatcher is not None and config.connect.receiver.polling.enabled:
                self._poll_task = PeriodicTask(
                    "webhook-polling", config.connect.receiver.polling.interval, self.poll_accounts,
                )
                self._poll_task.start()
            self._status = ConnectionStatus.CONNECTED

    async def _connect_relay(self, relay_config: RelayConfig) -> None:
        credentials = await self._credentials.get_relay_credentials()
        if credentials is None:
            raise WebhookStartError(
                "Relay mode requires relay credentials",
                code="RELAY_NOT_CONFIGURED",
                next_actions=[manual_intervention("Connect a relay webhook to obtain credentials")],
            )
        client = self._relay_factory(credentials, relay_config)
        client.on_event(self._handle_relay_event)
        self._status = ConnectionStatus.CONNECTING
        try:
            await client.connect()
        except Exception as exc:
            client.off_event(self._handle_relay_event)
            await client.disconnect()
            self._status = ConnectionStatus.FAILED
            raise classify_exception(exc, webhook_id=credentials.webhook_id) from exc
        client.on_state_change(self._handle_relay_state)
        self._relay = client
        self._webhook_url = None
        self._status = ConnectionStatus.CONNECTED

    async def _release(self) -> None:
        if self._relay is not None:
            relay, self._relay = self._relay, None
            relay.off_event(self._handle_relay_event)
            relay.off_state_change(self._handle_relay_state)
            await relay.disconnect()
        if self._poll_task is not None:
            await self._poll_task.cancel()
            self._poll_task = None
        self._status = ConnectionStatus.DISCONNECTED

    async def _switch_mode(self, mode: ConnectionMode, reason: str, *, strict: bool = False) -> None:
        async with self._switch_lock:
            if self._stopping or self._state != ManagerState.RUNNING:
                logger.debug("Skipping mode switch while %s", self._state.value)
                return
            from_mode = self._mode
            if from_mode == mode:
                return

            logger.info("Switching mode: %s -> %s (%s)", from_mode and from_mode.value, mode.value, reason)
            await self._release()
            config = await self._config.get_config()
            target = mode
            while True:
                try:
                    await self._provision(target, config)
                    break
                except FinhookError as exc:
                    log_error(logger, exc, mode=target.value)
                    fallback = self._selector.fallback_mode(target)
                    if strict or fallback == target:
                        # keep reception alive on the previous transport
                        target = from_mode or ConnectionMode.POLLING
                        await self._provision(target, config)
                        if strict:
                            raise
                        break
                    reason = f"{reason}; {target.value} unavailable"
                    target = fallback

            self._mode = target
            self._last_mode_change = time.time()
            self._failures = 0

        if from_mode is None or target == from_mode:
            return
        event = ModeChangeEvent(from_mode=from_mode, to_mode=target, reason=reason)
        await _notify(self._mode_listeners, event)
        if self._events is not None:
            await self._events.emit("webhook.mode_changed", event.model_dump(mode="json"))

    # --- Health ---

    async def _current_mode_healthy(self) -> bool:
        if self._mode == ConnectionMode.DIRECT:
            return (await self._selector.is_direct_available()).available
        if self._mode == ConnectionMode.RELAY:
            return self._relay is not None and self._relay.is_connected
        return True

    async def health_check(self) -> None:
        """Upgrade when a better mode is back, fall back after sustained failure."""
        if self._stopping or self._state != ManagerState.RUNNING or self._mode is None:
            return
        self._last_health_check = time.time()
        config = await self._config.get_config()
        receiver = config.connect.receiver

        if receiver.auto_upgrade and not self._fixed_mode:
            if await self._selector.can_upgrade_mode(self._mode):
                best = await self._selector.best_available_mode()
                if best != self._mode:
                    await self._switch_mode(best, "Better mode available")
                    return

        if await self._current_mode_healthy():
            self._failures = 0
            return

        self._failures += 1
        logger.warning(
            "%s mode health check failed (%d/%d)",
            self._mode.value, self._failures, receiver.health_check.failure_threshold,
        )
        if receiver.auto_mode_switching and self._failures >= receiver.health_check.failure_threshold:
            fallback = self._selector.fallback_mode(self._mode)
            if fallback != self._mode:
                await self._switch_mode(fallback, "Health check failed")

    # --- Transport callbacks ---

    async def _handle_relay_event(self, event: WebhookEvent) -> None:
        await _notify(self._event_listeners, event)
        if self._processor is not None:
            if event.raw_body is not None:
                raw = event.raw_body.encode()
            else:
                raw = json.dumps(event.data or {}, separators=(",", ":")).encode()
            request = build_webhook_request(event.source, raw, event.headers)
            response = await self._processor.process(request, mode=ConnectionMode.RELAY.value)
            logger.debug("Relay event %s processed with status %d", event.event_id, response.status)
        elif self._events is not None:
            await self._events.emit("webhook.received", {
                "source": event.source.value,
                "mode": ConnectionMode.RELAY.value,
                "timestamp": event.timestamp,
            })

    async def _handle_relay_state(self, state: RelayState, reason: str | None) -> None:
        self._status = _RELAY_STATUS[state]
        if state not in (RelayState.FAILED, RelayState.CLOSED) or self._stopping:
            return
        config = await self._config.get_config()
        if not config.connect.receiver.auto_mode_switching:
            return
        fallback = self._selector.fallback_mode(ConnectionMode.RELAY)
        logger.warning("Relay connection %s, falling back to %s", state.value, fallback.value)
        # run outside the relay's own task, which the switch cancels
        self._background.spawn(self._switch_mode(fallback, reason or "Relay connection failed"))

    async def poll_accounts(self) -> int:
        """Polling transport tick: trigger a gated sync for every enabled account."""
        if self._dispatcher is None:
            return 0
        config = await self._config.get_config()
        triggered = 0
        for account in config.accounts:
            if not account.enabled:
                continue
            if self._rate_limiter is not None:
                if not self._rate_limiter.is_webhook_sync_allowed(account.id):
                    continue
                self._rate_limiter.record_webhook_sync(account.id)
            self._dispatcher.trigger(account.id, source=account.type, reason="polling")
            triggered += 1
        logger.debug("Polling tick triggered %d syncs", triggered)
        return triggered
