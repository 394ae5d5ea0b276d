"""Classified errors for finhook.

Every error carries a category, a severity, a ``recoverable`` flag and zero or
more machine-executable ``next_actions`` so an operator (or an agent driving
the CLI) can decide what to do without parsing messages.
"""

from __future__ import annotations

import errno
import json
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field


class ErrorCategory(str, Enum):
    WEBHOOK = "webhook"
    RELAY = "relay"
    OAUTH = "oauth"
    NETWORK = "network"
    CONFIG = "config"
    STORAGE = "storage"
    CREDENTIALS = "credentials"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ActionType(str, Enum):
    RETRY = "retry"
    SWITCH_MODE = "switch_mode"
    REAUTHENTICATE = "reauthenticate"
    MANUAL_INTERVENTION = "manual_intervention"


class ErrorAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ActionType
    delay_seconds: float | None = None
    params: dict[str, str] = Field(default_factory=dict)
    description: str = ""


def retry_after(seconds: float, description: str = "") -> ErrorAction:
    return ErrorAction(
        type=ActionType.RETRY,
        delay_seconds=seconds,
        description=description or f"Retry after {seconds:g} seconds",
    )


def switch_mode(mode: str, description: str = "") -> ErrorAction:
    return ErrorAction(
        type=ActionType.SWITCH_MODE,
        params={"mode": mode},
        description=description or f"Switch to {mode} mode",
    )


def reauthenticate(description: str = "Re-run the authorization flow") -> ErrorAction:
    return ErrorAction(type=ActionType.REAUTHENTICATE, description=description)


def manual_intervention(description: str) -> ErrorAction:
    return ErrorAction(type=ActionType.MANUAL_INTERVENTION, description=description)


class FinhookError(Exception):
    """Base class for classified errors."""

    category = ErrorCategory.UNKNOWN
    default_code = "UNKNOWN_ERROR"
    default_severity = ErrorSeverity.ERROR
    default_recoverable = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        severity: ErrorSeverity | None = None,
        recoverable: bool | None = None,
        next_actions: list[ErrorAction] | None = None,
        entities: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.severity = severity or self.default_severity
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        self.next_actions = list(next_actions or [])
        self.entities = dict(entities or {})
        self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "message": self.message,
            "next_actions": [a.model_dump(mode="json") for a in self.next_actions],
            "entities": self.entities,
            "timestamp": self.timestamp,
        }


class ConnectionModeError(FinhookError):
    """Raised when no connection mode can serve the requested purpose."""

    category = ErrorCategory.CONFIG
    default_code = "CONNECTION_MODE_UNAVAILABLE"
    default_recoverable = False


class WebhookStartError(FinhookError):
    """Raised when a fixed connection mode cannot be provisioned."""

    category = ErrorCategory.WEBHOOK
    default_code = "WEBHOOK_START_FAILED"


class RelayError(FinhookError):
    """Raised for relay service failures (webhook relay and Connect sessions)."""

    category = ErrorCategory.RELAY
    default_code = "RELAY_API_ERROR"

    TERMINAL_MARKERS = ("expired", "invalid code_verifier", "maximum retrieval")

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code

    @property
    def terminal(self) -> bool:
        """True when retrying the same request can never succeed."""
        lowered = self.message.lower()
        return any(marker in lowered for marker in self.TERMINAL_MARKERS)


class OAuthError(FinhookError):
    category = ErrorCategory.OAUTH
    default_code = "OAUTH_FAILED"


class NetworkError(FinhookError):
    category = ErrorCategory.NETWORK
    default_code = "NETWORK_GENERIC"


class CacheStorageError(FinhookError):
    """Raised when on-disk state cannot be written. Not locally recoverable."""

    category = ErrorCategory.STORAGE
    default_code = "STORAGE_WRITE_FAILED"
    default_severity = ErrorSeverity.FATAL
    default_recoverable = False


class CredentialsUnavailableError(FinhookError):
    category = ErrorCategory.CREDENTIALS
    default_code = "CREDENTIALS_UNAVAILABLE"
    default_recoverable = False


def classify_exception(exc: BaseException, **entities: str) -> FinhookError:
    """Map a raw exception onto the classified hierarchy."""
    if isinstance(exc, FinhookError):
        exc.entities.update(entities)
        return exc

    if isinstance(exc, httpx.TimeoutException):
        return NetworkError(
            f"Request timed out: {exc}",
            code="NETWORK_TIMEOUT",
            severity=ErrorSeverity.WARNING,
            next_actions=[retry_after(60)],
            entities=entities,
        )

    if isinstance(exc, httpx.ConnectError):
        message = str(exc).lower()
        if "name or service not known" in message or "nodename nor servname" in message:
            return NetworkError(
                f"DNS resolution failed: {exc}",
                code="NETWORK_DNS_FAILED",
                recoverable=False,
                next_actions=[manual_intervention("Check DNS and network configuration")],
                entities=entities,
            )
        return NetworkError(
            f"Connection refused: {exc}",
            code="NETWORK_CONNECTION_REFUSED",
            next_actions=[retry_after(30)],
            entities=entities,
        )

    if isinstance(exc, httpx.HTTPError):
        return NetworkError(
            str(exc) or "Network error",
            next_actions=[retry_after(60)],
            entities=entities,
        )

    if isinstance(exc, OSError):
        if exc.errno == errno.ENOSPC:
            return CacheStorageError(
                f"Disk full: {exc}",
                code="STORAGE_DISK_FULL",
                next_actions=[manual_intervention("Free disk space in the data directory")],
                entities=entities,
            )
        if exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
            return CacheStorageError(
                f"Permission denied: {exc}",
                code="FS_PERMISSION_DENIED",
                next_actions=[manual_intervention("Make the data directory writable")],
                entities=entities,
            )
        return CacheStorageError(str(exc), entities=entities)

    return FinhookError(str(exc) or type(exc).__name__, entities=entities)


def log_error(logger: logging.Logger, error: FinhookError, **context: Any) -> None:
    """Emit one structured record for a classified error."""
    data = error.to_dict()
    if context:
        data["context"] = {k: str(v) for k, v in context.items()}
    levels = {
        ErrorSeverity.FATAL: logging.CRITICAL,
        ErrorSeverity.ERROR: logging.ERROR,
        ErrorSeverity.WARNING: logging.WARNING,
        ErrorSeverity.INFO: logging.INFO,
    }
    logger.log(levels[error.severity], "finhook error: %s", json.dumps(data, sort_keys=True))
