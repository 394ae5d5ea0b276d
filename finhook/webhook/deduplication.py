"""Webhook nonce deduplication.

``FileDeduplicationCache`` is shared between the CLI and the background
service, so every operation re-reads the cache file under the named-file lock
instead of trusting an in-process copy. Layout::

    {"nonces": {"<nonce>": {"expires_at": 1700000000.0}}, "last_cleanup": 1700000000.0}

A missing or corrupt file reads as an empty cache. Write failures (disk full,
unwritable directory) raise ``CacheStorageError``.
"""

from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from finhook.errors import classify_exception
from finhook.locking import file_lock

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600
CLEANUP_INTERVAL_SECONDS = 5 * 60
CACHE_FILE = "webhook-nonces.json"


@dataclass(frozen=True)
class DeduplicationStats:
    total_nonces: int
    last_cleanup: float


class DeduplicationCache(ABC):
    """Nonce store: an entry whose ``expires_at <= now`` is treated as absent."""

    @abstractmethod
    def is_processed(self, nonce: str) -> bool:
        """Return True if ``nonce`` was marked and has not expired.

        An expired entry found here is evicted.
        """

    @abstractmethod
    def mark_processed(self, nonce: str, ttl: float = DEFAULT_TTL_SECONDS) -> None:
        """Record ``nonce`` as processed for ``ttl`` seconds."""

    @abstractmethod
    def remove(self, nonce: str) -> None:
        """Invalidate ``nonce``."""

    @abstractmethod
    def cleanup(self) -> int:
        """Drop every expired entry; return the number removed."""

    @abstractmethod
    def stats(self) -> DeduplicationStats: ...

    def maybe_cleanup(self) -> int:
        if time.time() - self.stats().last_cleanup >= CLEANUP_INTERVAL_SECONDS:
            return self.cleanup()
        return 0


class InMemoryDeduplicationCache(DeduplicationCache):
    """Process-local variant for embedding and tests."""

    def __init__(self) -> None:
        self._nonces: dict[str, float] = {}
        self._last_cleanup = time.time()

    def is_processed(self, nonce: str) -> bool:
        expires_at = self._nonces.get(nonce)
        if expires_at is None:
            return False
        if expires_at <= time.time():
            del self._nonces[nonce]
            return False
        return True

    def mark_processed(self, nonce: str, ttl: float = DEFAULT_TTL_SECONDS) -> None:
        self._nonces[nonce] = time.time() + ttl

    def remove(self, nonce: str) -> None:
        self._nonces.pop(nonce, None)

    def cleanup(self) -> int:
        now = time.time()
        expired = [n for n, exp in self._nonces.items() if exp <= now]
        for nonce in expired:
            del self._nonces[nonce]
        self._last_cleanup = now
        return len(expired)

    def stats(self) -> DeduplicationStats:
        return DeduplicationStats(len(self._nonces), self._last_cleanup)


class FileDeduplicationCache(DeduplicationCache):
    def __init__(self, cache_path: str | Path) -> None:
        self.cache_path = Path(cache_path)

    @classmethod
    def in_data_dir(cls, data_dir: str | Path) -> FileDeduplicationCache:
        return cls(Path(data_dir) / "cache" / CACHE_FILE)

    def _load(self) -> dict[str, Any]:
        try:
            data = json.loads(self.cache_path.read_text())
        except FileNotFoundError:
            return {"nonces": {}, "last_cleanup": time.time()}
        except (OSError, ValueError) as exc:
            logger.error("Unreadable nonce cache %s, starting empty: %s", self.cache_path, exc)
            return {"nonces": {}, "last_cleanup": time.time()}
        if not isinstance(data, dict) or not isinstance(data.get("nonces"), dict):
            logger.error("Malformed nonce cache %s, starting empty", self.cache_path)
            return {"nonces": {}, "last_cleanup": time.time()}
        data.setdefault("last_cleanup", 0.0)
        return data

    def _save(self, data: dict[str, Any]) -> None:
        tmp = self.cache_path.with_name(self.cache_path.name + ".tmp")
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2))
            os.replace(tmp, self.cache_path)
        except OSError as exc:
            raise classify_exception(exc, file_path=str(self.cache_path)) from exc

    @staticmethod
    def _expires_at(entry: Any) -> float:
        if isinstance(entry, dict):
            return float(entry.get("expires_at", 0))
        return 0.0

    def is_processed(self, nonce: str) -> bool:
        with file_lock(self.cache_path, shared=True):
            entry = self._load()["nonces"].get(nonce)
        if entry is None:
            return False
        if self._expires_at(entry) <= time.time():
            self._evict(nonce)
            return False
        return True

    def _evict(self, nonce: str) -> None:
        # re-checked under the exclusive lock; another process may have re-marked it
        with file_lock(self.cache_path):
            data = self._load()
            entry = data["nonces"].get(nonce)
            if entry is not None and self._expires_at(entry) <= time.time():
                del data["nonces"][nonce]
                self._save(data)

    def mark_processed(self, nonce: str, ttl: float = DEFAULT_TTL_SECONDS) -> None:
        with file_lock(self.cache_path):
            data = self._load()
            data["nonces"][nonce] = {"expires_at": time.time() + ttl}
            self._save(data)

    def remove(self, nonce: str) -> None:
        with file_lock(self.cache_path):
            data = self._load()
            if data["nonces"].pop(nonce, None) is not None:
                self._save(data)

    def cleanup(self) -> int:
        with file_lock(self.cache_path):
            data = self._load()
            now = time.time()
            expired = [n for n, e in data["nonces"].items() if self._expires_at(e) <= now]
            for nonce in expired:
                del data["nonces"][nonce]
            data["last_cleanup"] = now
            self._save(data)
        if expired:
            logger.debug("Cleaned up %d expired nonces", len(expired))
        return len(expired)

    def stats(self) -> DeduplicationStats:
        with file_lock(self.cache_path, shared=True):
            data = self._load()
        return DeduplicationStats(len(data["nonces"]), float(data["last_cleanup"]))
