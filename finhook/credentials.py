"""Relay credential capability.

Credential storage is chosen once, when ``build_services`` wires the app.
Callers never null-check a backend at request time: either the store works,
or it is the explicit ``UnavailableCredentialStore`` which reports
``available = False`` and raises on use. The relay health check consults
``available`` so relay mode is never selected without a usable store.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from finhook.config import ConfigProvider
from finhook.errors import CredentialsUnavailableError, manual_intervention

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayCredentials:
    webhook_id: str
    api_key: str
    api_url: str | None = None


class CredentialStore(ABC):
    """Base class for relay credential backends."""

    available = True

    @abstractmethod
    async def get_relay_credentials(self) -> RelayCredentials | None: ...

    @abstractmethod
    async def save_relay_credentials(self, credentials: RelayCredentials) -> None: ...


class ConfigCredentialStore(CredentialStore):
    """Stores relay credentials inside the durable configuration."""

    def __init__(self, provider: ConfigProvider) -> None:
        self._provider = provider

    async def get_relay_credentials(self) -> RelayCredentials | None:
        relay = (await self._provider.get_config()).connect.receiver.relay
        if not relay.webhook_id or not relay.api_key:
            return None
        return RelayCredentials(relay.webhook_id, relay.api_key, relay.api_url)

    async def save_relay_credentials(self, credentials: RelayCredentials) -> None:
        await save_relay_credentials(
            self._provider,
            credentials.webhook_id,
            credentials.api_key,
            api_url=credentials.api_url,
        )


class UnavailableCredentialStore(CredentialStore):
    """Placeholder used when no credential backend can be constructed."""

    available = False

    def __init__(self, reason: str = "No credential backend configured") -> None:
        self.reason = reason

    def _error(self) -> CredentialsUnavailableError:
        return CredentialsUnavailableError(
            self.reason,
            next_actions=[manual_intervention("Configure a credential backend")],
        )

    async def get_relay_credentials(self) -> RelayCredentials | None:
        raise self._error()

    async def save_relay_credentials(self, credentials: RelayCredentials) -> None:
        raise self._error()


async def save_relay_credentials(
    provider: ConfigProvider,
    webhook_id: str,
    api_key: str,
    *,
    api_url: str | None = None,
    enable: bool = True,
) -> None:
    """Persist OAuth-obtained relay credentials and enable the relay transport."""
    relay: dict[str, object] = {"webhook_id": webhook_id, "api_key": api_key, "enabled": enable}
    if api_url:
        relay["api_url"] = api_url
    await provider.update_config({"connect": {"receiver": {"relay": relay}}})
    logger.info("Saved relay credentials for webhook %s", webhook_id)
