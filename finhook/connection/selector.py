"""Connection mode selection.

Auto selection walks ``MODE_PRIORITY``: direct when the public endpoint
answers its health probe, relay when credentials exist and the relay answers,
otherwise polling. OAuth can never use polling; when neither direct nor relay
is reachable for OAuth, selection raises ``ConnectionModeError``.
"""

from __future__ import annotations

import logging

from finhook.config import AppConfig, ConfigProvider
from finhook.connection.health import HealthChecker
from finhook.errors import ConnectionModeError, manual_intervention
from finhook.models import (
    MODE_PRIORITY,
    ConnectionMode,
    ConnectionModeSelectionResult,
    ConnectionPurpose,
    HealthCheckResult,
)

logger = logging.getLogger(__name__)


class ConnectionModeSelector:
    def __init__(
        self,
        config_provider: ConfigProvider,
        health: HealthChecker | None = None,
    ) -> None:
        self._config = config_provider
        self._health = health or HealthChecker()

    @staticmethod
    def _timeout(config: AppConfig) -> float:
        return config.connect.receiver.health_check.timeout

    async def is_direct_available(self) -> HealthCheckResult:
        config = await self._config.get_config()
        return await self._health.check_direct(config, self._timeout(config))

    async def is_relay_available(self) -> HealthCheckResult:
        config = await self._config.get_config()
        return await self._health.check_relay(config, self._timeout(config))

    async def is_mode_available(self, mode: ConnectionMode) -> HealthCheckResult:
        if mode == ConnectionMode.DIRECT:
            return await self.is_direct_available()
        if mode == ConnectionMode.RELAY:
            return await self.is_relay_available()
        return HealthCheckResult(available=True, latency_ms=0)

    async def select(
        self, purpose: ConnectionPurpose = ConnectionPurpose.WEBHOOK,
    ) -> ConnectionModeSelectionResult:
        """Pick a mode for ``purpose``.

        An explicit mode in configuration is returned without probing, except
        ``polling`` for OAuth which falls through to auto detection.
        """
        config = await self._config.get_config()
        configured = config.connect.receiver.mode

        if configured != ConnectionMode.AUTO:
            if not (configured == ConnectionMode.POLLING and purpose == ConnectionPurpose.OAUTH):
                return ConnectionModeSelectionResult(
                    mode=configured,
                    reason=f"User configured mode: {configured.value}",
                    purpose=purpose,
                )
            logger.warning("Polling mode cannot complete OAuth; detecting an OAuth-capable mode")

        logger.debug("Auto-detecting connection mode for %s", purpose.value)
        direct = await self.is_direct_available()
        if direct.available:
            logger.info("Direct mode selected for %s", purpose.value)
            return ConnectionModeSelectionResult(
                mode=ConnectionMode.DIRECT,
                reason=f"Direct mode available (latency: {direct.latency_ms}ms)",
                purpose=purpose,
            )

        relay = await self.is_relay_available()
        if relay.available:
            logger.info("Relay mode selected for %s", purpose.value)
            return ConnectionModeSelectionResult(
                mode=ConnectionMode.RELAY,
                reason=f"Relay mode available (latency: {relay.latency_ms}ms)",
                purpose=purpose,
            )

        if purpose == ConnectionPurpose.OAUTH:
            raise ConnectionModeError(
                f"No OAuth-capable connection mode available "
                f"(direct: {direct.error}, relay: {relay.error})",
                next_actions=[
                    manual_intervention("Configure connect.public_url or relay credentials"),
                ],
            )

        logger.info("Polling mode selected (fallback)")
        return ConnectionModeSelectionResult(
            mode=ConnectionMode.POLLING,
            reason=f"Polling mode (direct: {direct.error}, relay: {relay.error})",
            purpose=purpose,
        )

    @staticmethod
    def fallback_mode(
        current: ConnectionMode,
        purpose: ConnectionPurpose = ConnectionPurpose.WEBHOOK,
    ) -> ConnectionMode:
        """Next mode down the chain: direct -> relay -> polling.

        OAuth bottoms out at relay.
        """
        if current == ConnectionMode.DIRECT:
            return ConnectionMode.RELAY
        if purpose == ConnectionPurpose.OAUTH:
            return ConnectionMode.RELAY
        return ConnectionMode.POLLING

    async def can_upgrade_mode(self, current: ConnectionMode) -> bool:
        """True when any mode ranked above ``current`` is reachable now."""
        if current not in MODE_PRIORITY:
            return False
        for mode in MODE_PRIORITY[: MODE_PRIORITY.index(current)]:
            if (await self.is_mode_available(mode)).available:
                return True
        return False

    async def best_available_mode(
        self, purpose: ConnectionPurpose = ConnectionPurpose.WEBHOOK,
    ) -> ConnectionMode:
        for mode in MODE_PRIORITY:
            if mode == ConnectionMode.POLLING and purpose == ConnectionPurpose.OAUTH:
                break
            if (await self.is_mode_available(mode)).available:
                return mode
        raise ConnectionModeError("No OAuth-capable connection mode available")
