"""In-memory sliding window rate limiter for webhook endpoints."""

from __future__ import annotations

import math
import time

from finhook.config import IngressConfig

_DEFAULT_LIMIT = 30


class IngressRateLimiter:
    """Sliding window rate limiter per (source, client IP).

    Limits come from ``IngressConfig.limits``; unknown sources get 30 per window.
    """

    def __init__(self, config: IngressConfig | None = None) -> None:
        config = config or IngressConfig()
        self._limits = dict(config.limits)
        self._window_seconds = config.window
        self._counters: dict[tuple[str, str], list[float]] = {}

    def limit_for(self, source: str) -> int:
        return self._limits.get(source, _DEFAULT_LIMIT)

    def check(self, source: str, client_ip: str) -> bool:
        """Return True if the request is within the limit and count it."""
        key = (source, client_ip)
        now = time.time()
        cutoff = now - self._window_seconds
        timestamps = [t for t in self._counters.get(key, []) if t > cutoff]

        if len(timestamps) >= self.limit_for(source):
            self._counters[key] = timestamps
            return False

        timestamps.append(now)
        self._counters[key] = timestamps
        return True

    def retry_after(self, source: str, client_ip: str) -> int:
        timestamps = self._counters.get((source, client_ip))
        if not timestamps:
            return 0
        return max(1, math.ceil(timestamps[0] + self._window_seconds - time.time()))

    def prune(self) -> None:
        """Drop keys whose windows are empty."""
        cutoff = time.time() - self._window_seconds
        for key in list(self._counters):
            kept = [t for t in self._counters[key] if t > cutoff]
            if kept:
                self._counters[key] = kept
            else:
                del self._counters[key]


def client_ip_from_headers(headers: dict[str, str], peer: str | None = None) -> str:
    """First ``x-forwarded-for`` hop, then ``x-real-ip``, then the socket peer."""
    lowered = {k.lower(): v for k, v in headers.items()}
    forwarded = lowered.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = lowered.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer or "unknown"
