"""Shared Pydantic data models for finhook."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class WebhookSource(str, Enum):
    PLAID = "plaid"
    GOCARDLESS = "gocardless"
    GMAIL = "gmail"
    TEST = "test"


class ConnectionMode(str, Enum):
    AUTO = "auto"
    DIRECT = "direct"
    RELAY = "relay"
    POLLING = "polling"


class ConnectionPurpose(str, Enum):
    WEBHOOK = "webhook"
    OAUTH = "oauth"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# Priority order used for auto selection, fallback and upgrade.
MODE_PRIORITY: tuple[ConnectionMode, ...] = (
    ConnectionMode.DIRECT,
    ConnectionMode.RELAY,
    ConnectionMode.POLLING,
)


# --- Connection Models ---


class HealthCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    available: bool
    latency_ms: int | None = None
    error: str | None = None


class ConnectionModeSelectionResult(BaseModel):
    """Short-lived mode decision; configuration stays the durable input."""

    model_config = ConfigDict(frozen=True)

    mode: ConnectionMode
    reason: str
    purpose: ConnectionPurpose


# --- Event Models ---


class ModeChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_mode: ConnectionMode
    to_mode: ConnectionMode
    reason: str
    timestamp: float = Field(default_factory=time.time)


class WebhookEvent(BaseModel):
    """Webhook notification delivered through the relay transport."""

    model_config = ConfigDict(frozen=True)

    event_id: str | None = None
    source: WebhookSource
    type: str = ""
    data: Any = None
    # original request body as delivered to the relay; signatures cover it
    raw_body: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)
