"""Sync dispatch with retry.

Webhook handlers hand an account to ``SyncDispatcher.trigger`` and return
immediately; the sync runs as a tracked background task. Each attempt that
raises or reports failure is retried with ``2 ** attempt`` seconds backoff.
When the last attempt fails a single ``sync.failed`` event is emitted.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from finhook.errors import classify_exception
from finhook.events.bus import EventBus
from finhook.tasks import TaskTracker

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 3
_BACKOFF_CAP_SECONDS = 30


class SyncResult(BaseModel):
    account_id: str
    success: bool
    transactions_added: int = 0
    transactions_updated: int = 0
    errors: list[str] = Field(default_factory=list)


class SyncProvider(Protocol):
    async def sync_account(self, account_id: str) -> SyncResult: ...


class HttpSyncProvider:
    """Delegates syncs to the bank-API service over HTTP.

    ``POST {base_url}/accounts/{account_id}/sync`` must answer with a
    ``SyncResult`` body.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = client
        self._timeout = timeout

    async def sync_account(self, account_id: str) -> SyncResult:
        url = f"{self._base_url}/accounts/{account_id}/sync"
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            if self._client is not None:
                resp = await self._client.post(url, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(url, headers=headers, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise classify_exception(exc, account_id=account_id) from exc

        if not resp.is_success:
            return SyncResult(
                account_id=account_id,
                success=False,
                errors=[f"Sync service returned {resp.status_code}"],
            )
        try:
            return SyncResult.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            return SyncResult(account_id=account_id, success=False, errors=[f"Malformed sync result: {exc}"])


def new_sync_id() -> str:
    return f"sync_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


class SyncDispatcher:
    def __init__(
        self,
        provider: SyncProvider,
        events: EventBus,
        *,
        max_attempts: int = _MAX_ATTEMPTS,
    ) -> None:
        self._provider = provider
        self._events = events
        self._max_attempts = max_attempts
        self._tasks = TaskTracker("sync")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def trigger(self, account_id: str, *, source: str, reason: str = "webhook") -> str:
        """Start a background sync for ``account_id`` and return its sync id."""
        sync_id = new_sync_id()
        self._tasks.spawn(self.run(account_id, sync_id=sync_id, source=source, reason=reason))
        return sync_id

    async def run(
        self,
        account_id: str,
        *,
        sync_id: str | None = None,
        source: str = "manual",
        reason: str = "manual",
    ) -> SyncResult | None:
        """Sync with retry; returns the successful result or None."""
        sync_id = sync_id or new_sync_id()
        await self._events.emit("sync.started", {
            "account_id": account_id,
            "sync_id": sync_id,
            "source": source,
            "reason": reason,
        })

        last_error = ""
        for attempt in range(self._max_attempts):
            try:
                result = await self._provider.sync_account(account_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "Sync attempt %d/%d for %s raised: %s",
                    attempt + 1, self._max_attempts, account_id, last_error,
                )
            else:
                if result.success:
                    await self._events.emit("sync.completed", {
                        "account_id": account_id,
                        "sync_id": sync_id,
                        "transactions_added": result.transactions_added,
                        "transactions_updated": result.transactions_updated,
                        "attempts": attempt + 1,
                    })
                    return result
                last_error = "; ".join(result.errors) or "sync reported failure"
                logger.warning(
                    "Sync attempt %d/%d for %s failed: %s",
                    attempt + 1, self._max_attempts, account_id, last_error,
                )

            if attempt < self._max_attempts - 1:
                await asyncio.sleep(min(2 ** attempt, _BACKOFF_CAP_SECONDS))

        logger.error("Sync for %s failed after %d attempts", account_id, self._max_attempts)
        await self._events.emit("sync.failed", {
            "account_id": account_id,
            "sync_id": sync_id,
            "source": source,
            "error": last_error,
            "attempts": self._max_attempts,
        })
        return None

    async def drain(self, timeout: float = 30.0) -> None:
        await self._tasks.drain(timeout)
