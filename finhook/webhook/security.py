"""Webhook replay protection and HMAC signature verification.

Replay protection rejects timestamps outside the freshness window and nonces
already present in the deduplication cache. It does not mark the nonce; the
processor calls ``mark_processed`` only after the signature also verified.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass

from finhook.webhook.deduplication import DEFAULT_TTL_SECONDS, DeduplicationCache
from finhook.webhook.models import WebhookErrorCode

logger = logging.getLogger(__name__)

DEFAULT_MAX_TIMESTAMP_AGE = 15 * 60
DEFAULT_FUTURE_TOLERANCE = 5 * 60


@dataclass(frozen=True)
class ReplayCheckResult:
    accepted: bool
    code: str | None = None
    reason: str = ""

    @property
    def duplicate(self) -> bool:
        return self.code == WebhookErrorCode.NONCE_REUSE


_ACCEPTED = ReplayCheckResult(accepted=True)


class WebhookSecurity:
    """Replay and signature checks backed by a ``DeduplicationCache``."""

    def __init__(
        self,
        deduplication: DeduplicationCache,
        max_timestamp_age: float = DEFAULT_MAX_TIMESTAMP_AGE,
        future_tolerance: float = DEFAULT_FUTURE_TOLERANCE,
        nonce_ttl: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.deduplication = deduplication
        self._max_age_ms = max_timestamp_age * 1000
        self._future_ms = future_tolerance * 1000
        self._nonce_ttl = nonce_ttl

    def check_replay(self, timestamp: int | None, nonce: str | None) -> ReplayCheckResult:
        """Validate freshness of ``timestamp`` (ms) and uniqueness of ``nonce``.

        Either value may be absent; only what is present is checked.
        """
        if timestamp is not None:
            now_ms = time.time() * 1000
            if now_ms - timestamp > self._max_age_ms:
                logger.warning("Webhook rejected: timestamp %dms old", now_ms - timestamp)
                return ReplayCheckResult(
                    False, WebhookErrorCode.INVALID_TIMESTAMP, "Timestamp too old",
                )
            if timestamp - now_ms > self._future_ms:
                logger.warning("Webhook rejected: timestamp %dms in future", timestamp - now_ms)
                return ReplayCheckResult(
                    False, WebhookErrorCode.INVALID_TIMESTAMP, "Timestamp too far in future",
                )

        if nonce is not None and self.deduplication.is_processed(nonce):
            logger.warning("Webhook rejected: nonce already used (%s)", nonce)
            return ReplayCheckResult(False, WebhookErrorCode.NONCE_REUSE, "Nonce already processed")

        return _ACCEPTED

    def mark_processed(self, nonce: str) -> None:
        self.deduplication.mark_processed(nonce, self._nonce_ttl)

    def release(self, nonce: str) -> None:
        """Forget ``nonce`` so a later delivery of the same event is processed."""
        self.deduplication.remove(nonce)

    @staticmethod
    def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
        """Constant-time HMAC-SHA256 check; a ``sha256=`` prefix is optional."""
        if not signature:
            return False
        provided = signature.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[7:]
        if not provided.isascii():
            return False
        expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(provided.lower(), expected)

    @staticmethod
    def generate_signature(payload: bytes, secret: str) -> str:
        return "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

    @staticmethod
    def generate_nonce() -> str:
        return f"nonce_{int(time.time() * 1000)}_{secrets.token_hex(6)}"
