"""Configuration models and providers.

Configuration is the durable input for connection-mode decisions and relay
credentials. Two providers are available:

- ``MemoryConfigProvider`` keeps the config in process (embedding, tests).
- ``FileConfigProvider`` persists JSON and serializes updates with the same
  named-file lock the CLI and the background service share.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from finhook.errors import ConnectionModeError, classify_exception
from finhook.locking import file_lock
from finhook.models import ConnectionMode

logger = logging.getLogger(__name__)

DEFAULT_RELAY_API_URL = "https://relay.firela.io/api/webhook-relay"
DEFAULT_CONNECT_RELAY_URL = "https://relay.firela.io"
DEFAULT_CONNECT_UI_URL = "https://connect.firela.io"


# --- Connection ---


class RelayConfig(BaseModel):
    enabled: bool = False
    webhook_id: str | None = None
    api_key: str | None = None
    api_url: str = DEFAULT_RELAY_API_URL
    poll_timeout: int = Field(default=30, gt=0)
    reconnect_delay: float = Field(default=1.0, gt=0)
    max_reconnect_delay: float = Field(default=300.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)


class PollingConfig(BaseModel):
    enabled: bool = True
    interval: float = Field(default=300.0, gt=0)


class HealthCheckConfig(BaseModel):
    enabled: bool = True
    interval: float = Field(default=60.0, gt=0)
    timeout: float = Field(default=5.0, gt=0)
    failure_threshold: int = Field(default=2, ge=1)


class ReceiverConfig(BaseModel):
    mode: ConnectionMode = ConnectionMode.AUTO
    relay: RelayConfig = Field(default_factory=RelayConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    auto_mode_switching: bool = True
    auto_upgrade: bool = True


class ConnectConfig(BaseModel):
    host: str = "localhost"
    port: int = 4456
    public_url: str | None = None
    receiver: ReceiverConfig = Field(default_factory=ReceiverConfig)


# --- Security and limits ---


class SecurityConfig(BaseModel):
    replay_protection: bool = True
    nonce_ttl: float = Field(default=24 * 3600, gt=0)
    max_timestamp_age: float = Field(default=15 * 60, gt=0)
    future_tolerance: float = Field(default=5 * 60, ge=0)
    # source -> HMAC secret; a configured secret makes the signature mandatory
    webhook_secrets: dict[str, str] = Field(default_factory=dict)


class RateLimitBucket(BaseModel):
    requests: int = Field(gt=0)
    window: float = Field(default=60.0, gt=0)


class SyncRateLimitConfig(BaseModel):
    manual: RateLimitBucket = Field(default_factory=lambda: RateLimitBucket(requests=10))
    webhook: RateLimitBucket = Field(default_factory=lambda: RateLimitBucket(requests=3))
    circuit_threshold: float = Field(default=0.8, gt=0, le=1)


class IngressConfig(BaseModel):
    window: float = Field(default=60.0, gt=0)
    limits: dict[str, int] = Field(
        default_factory=lambda: {"plaid": 100, "gocardless": 50, "gmail": 30, "test": 30},
    )


# --- OAuth ---


class OAuthConfig(BaseModel):
    connect_relay_url: str = DEFAULT_CONNECT_RELAY_URL
    connect_ui_url: str = DEFAULT_CONNECT_UI_URL
    timeout: float = Field(default=600.0, gt=0)
    poll_interval: float = Field(default=3.0, gt=0)
    retrieval_wait: int = Field(default=30, gt=0)
    grace_period: float = Field(default=5.0, ge=0)
    pkce_for_direct: bool = True


class GmailConfig(BaseModel):
    client_id: str | None = None
    client_secret: str | None = None


class AccountConfig(BaseModel):
    id: str
    type: str  # "plaid" | "gocardless" | "gmail"
    name: str = ""
    enabled: bool = True
    plaid_item_id: str | None = None
    gocardless_requisition_id: str | None = None
    email_address: str | None = None


class AppConfig(BaseModel):
    data_dir: str = "~/.finhook"
    connect: ConnectConfig = Field(default_factory=ConnectConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    rate_limits: SyncRateLimitConfig = Field(default_factory=SyncRateLimitConfig)
    ingress: IngressConfig = Field(default_factory=IngressConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    accounts: list[AccountConfig] = Field(default_factory=list)

    @property
    def data_path(self) -> Path:
        return Path(os.path.expanduser(self.data_dir))

    def find_account(self, account_type: str, **match: str) -> AccountConfig | None:
        for account in self.accounts:
            if account.type != account_type:
                continue
            if all(getattr(account, key) == value for key, value in match.items()):
                return account
        return None


# --- Providers ---


class ConfigProvider(Protocol):
    async def get_config(self) -> AppConfig: ...

    async def update_config(self, updates: dict[str, Any]) -> AppConfig: ...


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``updates`` into a copy of ``base``; lists are replaced."""
    result = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_updates(config: AppConfig, updates: dict[str, Any]) -> AppConfig:
    merged = deep_merge(config.model_dump(mode="json"), updates)
    try:
        return AppConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConnectionModeError(
            f"Invalid configuration update: {exc}",
            code="CONFIG_INVALID",
        ) from exc


class MemoryConfigProvider:
    """In-process configuration provider."""

    def __init__(self, config: AppConfig | None = None) -> None:
        self._config = config or AppConfig()

    async def get_config(self) -> AppConfig:
        return self._config

    async def update_config(self, updates: dict[str, Any]) -> AppConfig:
        self._config = _apply_updates(self._config, updates)
        return self._config


class FileConfigProvider:
    """JSON-file configuration provider shared across processes.

    A missing file yields the default configuration. Updates are read-merge-write
    under an exclusive file lock so concurrent writers never lose each other's
    changes.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(os.path.expanduser(str(path)))

    def _read(self) -> AppConfig:
        if not self.path.exists():
            return AppConfig()
        try:
            return AppConfig.model_validate_json(self.path.read_text())
        except ValidationError as exc:
            raise ConnectionModeError(
                f"Failed to parse config file {self.path}: {exc}",
                code="CONFIG_PARSE_FAILED",
                entities={"file_path": str(self.path)},
            ) from exc

    def load(self) -> AppConfig:
        """Synchronous read, for process startup before an event loop exists."""
        with file_lock(self.path, shared=True):
            return self._read()

    async def get_config(self) -> AppConfig:
        return self.load()

    async def update_config(self, updates: dict[str, Any]) -> AppConfig:
        with file_lock(self.path):
            config = _apply_updates(self._read(), updates)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            try:
                tmp.write_text(json.dumps(config.model_dump(mode="json"), indent=2))
                os.replace(tmp, self.path)
            except OSError as exc:
                raise classify_exception(exc, file_path=str(self.path)) from exc
        logger.debug("Configuration updated at %s", self.path)
        return config
