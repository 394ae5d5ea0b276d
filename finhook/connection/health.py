"""Reachability probes for the direct endpoint and the relay service."""

from __future__ import annotations

import logging
import time

import httpx

from finhook.config import AppConfig
from finhook.credentials import CredentialStore
from finhook.models import HealthCheckResult

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_CHECK_TIMEOUT = 5.0


class HealthChecker:
    """Issues bounded ``GET {base}/health`` probes.

    An ``httpx.AsyncClient`` may be injected (tests use ``httpx.MockTransport``);
    otherwise a short-lived client is opened per probe. With a ``credentials``
    store that is unavailable, the relay is never reported reachable.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT,
        credentials: CredentialStore | None = None,
    ) -> None:
        self._client = client
        self.timeout = timeout
        self._credentials = credentials

    async def probe(self, base_url: str, timeout: float | None = None) -> HealthCheckResult:
        url = f"{base_url.rstrip('/')}/health"
        timeout = timeout or self.timeout
        start = time.monotonic()
        try:
            if self._client is not None:
                resp = await self._client.get(url, timeout=timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(url, timeout=timeout)
        except httpx.HTTPError as exc:
            logger.debug("Health probe %s failed: %s", url, exc)
            return HealthCheckResult(available=False, error=str(exc) or type(exc).__name__)

        latency_ms = int((time.monotonic() - start) * 1000)
        if resp.is_success:
            return HealthCheckResult(available=True, latency_ms=latency_ms)
        return HealthCheckResult(
            available=False,
            latency_ms=latency_ms,
            error=f"Health check returned {resp.status_code}",
        )

    async def check_direct(self, config: AppConfig, timeout: float | None = None) -> HealthCheckResult:
        public_url = config.connect.public_url
        if not public_url:
            return HealthCheckResult(available=False, error="No public_url configured")
        return await self.probe(public_url, timeout)

    async def check_relay(self, config: AppConfig, timeout: float | None = None) -> HealthCheckResult:
        if self._credentials is not None and not self._credentials.available:
            return HealthCheckResult(available=False, error="Relay credential store unavailable")
        relay = config.connect.receiver.relay
        if not relay.webhook_id or not relay.api_key:
            return HealthCheckResult(available=False, error="No relay credentials configured")
        if not relay.enabled:
            return HealthCheckResult(available=False, error="Relay mode is disabled")
        return await self.probe(relay.api_url, timeout)
