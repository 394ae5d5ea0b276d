"""Data models for the webhook pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from finhook.models import WebhookSource


class WebhookErrorCode:
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    REPLAY_DETECTED = "REPLAY_DETECTED"
    INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
    NONCE_REUSE = "NONCE_REUSE"
    RATE_LIMITED = "RATE_LIMITED"
    NO_HANDLER = "NO_HANDLER"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class WebhookRequest:
    """Normalized inbound webhook call, consumed once by the processor."""

    source: WebhookSource
    body: Any
    raw_body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    timestamp: int | None = None  # milliseconds since epoch
    nonce: str | None = None
    signature: str | None = None
    client_ip: str | None = None


@dataclass(frozen=True)
class ErrorDetail:
    code: str
    message: str
    retryable: bool
    retry_after: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


@dataclass(frozen=True)
class WebhookResponse:
    status: int
    received: bool
    processed: bool | None = None
    error: ErrorDetail | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": self.received}
        if self.processed is not None:
            body["processed"] = self.processed
        if self.error is not None:
            body["error"] = self.error.to_dict()
        return body

    @classmethod
    def ok(cls, processed: bool = True) -> WebhookResponse:
        return cls(status=200, received=True, processed=processed)

    @classmethod
    def fail(
        cls,
        status: int,
        code: str,
        message: str,
        *,
        retryable: bool = False,
        retry_after: int | None = None,
        received: bool = False,
        processed: bool | None = None,
    ) -> WebhookResponse:
        return cls(
            status=status,
            received=received,
            processed=processed,
            error=ErrorDetail(code, message, retryable, retry_after),
        )


def _parse_body(raw_body: bytes) -> Any:
    if not raw_body:
        return {}
    try:
        return json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return raw_body.decode(errors="replace")


def _parse_timestamp(value: str | None) -> int | None:
    """Header timestamps arrive in seconds or milliseconds; normalize to ms."""
    if not value:
        return None
    try:
        ts = int(float(value))
    except (ValueError, OverflowError):
        return None
    return ts * 1000 if ts < 10_000_000_000 else ts


def build_webhook_request(
    source: WebhookSource,
    raw_body: bytes,
    headers: dict[str, str],
    query: dict[str, str] | None = None,
    client_ip: str | None = None,
) -> WebhookRequest:
    """Normalize an HTTP call into a ``WebhookRequest`` for ``source``."""
    headers = {k.lower(): v for k, v in headers.items()}
    body = _parse_body(raw_body)
    timestamp: int | None = None
    nonce: str | None = None
    signature: str | None = None

    if source == WebhookSource.PLAID:
        timestamp = _parse_timestamp(headers.get("plaid-timestamp"))
        signature = headers.get("plaid-verification")
        if isinstance(body, dict) and body.get("webhook_id"):
            nonce = f"{body['webhook_id']}_{body.get('webhook_code', '')}"
    elif source == WebhookSource.GOCARDLESS:
        signature = headers.get("webhook-signature")
        if isinstance(body, dict):
            events = body.get("events")
            if isinstance(events, list) and events and isinstance(events[0], dict) and events[0].get("id"):
                nonce = str(events[0]["id"])
    elif source == WebhookSource.GMAIL:
        if isinstance(body, dict):
            message = body.get("message")
            message_id = message.get("messageId") if isinstance(message, dict) else None
            if message_id:
                nonce = f"gmail_{message_id}"
    else:
        timestamp = _parse_timestamp(headers.get("x-webhook-timestamp"))
        nonce = headers.get("x-webhook-nonce")
        signature = headers.get("x-webhook-signature")

    return WebhookRequest(
        source=source,
        body=body,
        raw_body=raw_body,
        headers=headers,
        query=dict(query or {}),
        timestamp=timestamp,
        nonce=nonce,
        signature=signature,
        client_ip=client_ip,
    )
