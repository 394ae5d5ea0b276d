"""In-memory sliding window rate limiter for sync operations, with circuit breaker.

Two buckets share one request log: ``manual`` (agent or user triggered) and
``webhook``. Webhook syncs are additionally gated by a circuit breaker that
opens for one webhook window once combined usage of both buckets reaches
``circuit_threshold`` of their combined limit. Manual syncs never trip it.

State is process-local.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Literal

from finhook.config import RateLimitBucket, SyncRateLimitConfig

logger = logging.getLogger(__name__)

SyncType = Literal["manual", "webhook"]

_MAX_ENTRIES = 1000


@dataclass(frozen=True)
class RateLimitEntry:
    timestamp: float
    type: SyncType
    account_id: str


@dataclass(frozen=True)
class RateLimiterStats:
    manual_count: int
    webhook_count: int
    circuit_open: bool
    circuit_open_until: float
    usage_ratio: float


class SyncRateLimiter:
    """Default: manual 10/60s, webhook 3/60s, circuit threshold 0.8."""

    def __init__(self, config: SyncRateLimitConfig | None = None) -> None:
        config = config or SyncRateLimitConfig()
        self._manual = config.manual
        self._webhook = config.webhook
        self._threshold = config.circuit_threshold
        self._entries: list[RateLimitEntry] = []
        self._circuit_open = False
        self._circuit_open_until = 0.0

    # --- Counting ---

    def _count(self, bucket: RateLimitBucket, sync_type: SyncType | None) -> int:
        cutoff = time.time() - bucket.window
        return sum(
            1 for e in self._entries
            if e.timestamp > cutoff and (sync_type is None or e.type == sync_type)
        )

    def _usage_ratio(self) -> float:
        total_limit = self._manual.requests + self._webhook.requests
        used = self._count(self._manual, "manual") + self._count(self._webhook, "webhook")
        return used / total_limit

    def _record(self, sync_type: SyncType, account_id: str) -> None:
        self._entries.append(RateLimitEntry(time.time(), sync_type, account_id))
        if len(self._entries) > _MAX_ENTRIES:
            self.cleanup()

    def record_manual_sync(self, account_id: str) -> None:
        self._record("manual", account_id)

    def record_webhook_sync(self, account_id: str) -> None:
        self._record("webhook", account_id)

    # --- Gates ---

    def is_webhook_sync_allowed(self, account_id: str) -> bool:
        """Return True if a webhook-triggered sync may run now.

        Does not record; call ``record_webhook_sync`` when the sync starts.
        """
        if self.is_circuit_open():
            logger.warning("Webhook sync blocked for %s: circuit breaker open", account_id)
            return False

        webhook_count = self._count(self._webhook, "webhook")
        if webhook_count >= self._webhook.requests:
            logger.warning(
                "Webhook sync blocked for %s: rate limit exceeded (%d/%d)",
                account_id, webhook_count, self._webhook.requests,
            )
            return False

        usage = self._usage_ratio()
        if usage >= self._threshold:
            self.open_circuit()
            logger.warning("Circuit breaker opened: usage at %d%%", round(usage * 100))
            return False

        return True

    def is_manual_sync_allowed(self, account_id: str) -> bool:
        manual_count = self._count(self._manual, "manual")
        if manual_count >= self._manual.requests:
            logger.warning(
                "Manual sync blocked for %s: rate limit exceeded (%d/%d)",
                account_id, manual_count, self._manual.requests,
            )
            return False
        return True

    def retry_after(self, sync_type: SyncType = "webhook") -> int:
        """Seconds until the next slot of ``sync_type`` (or the circuit) frees up."""
        now = time.time()
        if sync_type == "webhook" and self.is_circuit_open():
            return max(1, math.ceil(self._circuit_open_until - now))
        bucket = self._webhook if sync_type == "webhook" else self._manual
        cutoff = now - bucket.window
        live = [e.timestamp for e in self._entries if e.type == sync_type and e.timestamp > cutoff]
        if not live:
            return 0
        return max(1, math.ceil(min(live) + bucket.window - now))

    # --- Circuit breaker ---

    def is_circuit_open(self) -> bool:
        if not self._circuit_open:
            return False
        if time.time() >= self._circuit_open_until:
            self.close_circuit()
            return False
        return True

    def open_circuit(self) -> None:
        self._circuit_open = True
        self._circuit_open_until = time.time() + self._webhook.window

    def close_circuit(self) -> None:
        if self._circuit_open:
            logger.info("Circuit breaker closed")
        self._circuit_open = False
        self._circuit_open_until = 0.0

    # --- Maintenance ---

    def stats(self) -> RateLimiterStats:
        circuit_open = self.is_circuit_open()
        return RateLimiterStats(
            manual_count=self._count(self._manual, "manual"),
            webhook_count=self._count(self._webhook, "webhook"),
            circuit_open=circuit_open,
            circuit_open_until=self._circuit_open_until,
            usage_ratio=self._usage_ratio(),
        )

    def reset(self) -> None:
        self._entries.clear()
        self.close_circuit()

    def cleanup(self) -> int:
        cutoff = time.time() - max(self._manual.window, self._webhook.window)
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.timestamp > cutoff]
        removed = before - len(self._entries)
        if removed:
            logger.debug("Cleaned up %d old rate limit entries", removed)
        return removed
