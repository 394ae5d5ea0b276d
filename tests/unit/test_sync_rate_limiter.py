"""Tests for the sync rate limiter and its circuit breaker."""

from __future__ import annotations

from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import pytest

from finhook.config import RateLimitBucket, SyncRateLimitConfig
from finhook.webhook.rate_limiter import SyncRateLimiter

T0 = 1_700_000_000.0


@pytest.fixture
def clock() -> Iterator[MagicMock]:
    with patch("finhook.webhook.rate_limiter.time") as mock_time:
        mock_time.time.return_value = T0
        yield mock_time


@pytest.fixture
def limiter(clock: MagicMock) -> SyncRateLimiter:
    return SyncRateLimiter()


def _webhook_sync(limiter: SyncRateLimiter, account_id: str = "acct") -> bool:
    if not limiter.is_webhook_sync_allowed(account_id):
        return False
    limiter.record_webhook_sync(account_id)
    return True


class TestWebhookBucket:
    def test_fourth_sync_in_window_rejected(self, limiter: SyncRateLimiter) -> None:
        assert [_webhook_sync(limiter) for _ in range(3)] == [True, True, True]
        assert not limiter.is_webhook_sync_allowed("acct")

    def test_allowed_again_after_window(self, limiter: SyncRateLimiter, clock: MagicMock) -> None:
        for _ in range(3):
            _webhook_sync(limiter)
        clock.time.return_value = T0 + 61
        assert limiter.is_webhook_sync_allowed("acct")

    def test_check_does_not_record(self, limiter: SyncRateLimiter) -> None:
        for _ in range(10):
            assert limiter.is_webhook_sync_allowed("acct")
        assert limiter.stats().webhook_count == 0

    def test_bucket_is_global_across_accounts(self, limiter: SyncRateLimiter) -> None:
        for account in ("a", "b", "c"):
            assert _webhook_sync(limiter, account)
        assert not limiter.is_webhook_sync_allowed("d")

    def test_retry_after(self, limiter: SyncRateLimiter, clock: MagicMock) -> None:
        for _ in range(3):
            _webhook_sync(limiter)
        clock.time.return_value = T0 + 20
        assert limiter.retry_after("webhook") == 40


class TestManualBucket:
    def test_manual_limit(self, limiter: SyncRateLimiter) -> None:
        for _ in range(10):
            assert limiter.is_manual_sync_allowed("acct")
            limiter.record_manual_sync("acct")
        assert not limiter.is_manual_sync_allowed("acct")

    def test_manual_never_trips_breaker(self, limiter: SyncRateLimiter) -> None:
        for _ in range(10):
            limiter.is_manual_sync_allowed("acct")
            limiter.record_manual_sync("acct")
        assert not limiter.is_circuit_open()

    def test_webhook_flood_does_not_starve_manual(self, limiter: SyncRateLimiter) -> None:
        for _ in range(3):
            _webhook_sync(limiter)
        assert limiter.is_manual_sync_allowed("acct")


class TestCircuitBreaker:
    def test_combined_pressure_opens_circuit(self, limiter: SyncRateLimiter, clock: MagicMock) -> None:
        for _ in range(10):
            limiter.record_manual_sync("busy")
        # 10/13 is still below 0.8
        assert _webhook_sync(limiter, "busy")

        # 11/13 is above it
        assert not limiter.is_webhook_sync_allowed("fresh-account")
        assert limiter.is_circuit_open()
        assert limiter.stats().circuit_open_until == T0 + 60

    def test_circuit_blocks_every_account_until_open_until(
        self, limiter: SyncRateLimiter, clock: MagicMock,
    ) -> None:
        limiter.open_circuit()
        clock.time.return_value = T0 + 59
        assert not limiter.is_webhook_sync_allowed("never-synced")
        assert limiter.retry_after("webhook") == 1

        clock.time.return_value = T0 + 60
        assert not limiter.is_circuit_open()
        assert limiter.is_webhook_sync_allowed("never-synced")

    def test_threshold_exactly_reached(self, clock: MagicMock) -> None:
        config = SyncRateLimitConfig(
            manual=RateLimitBucket(requests=4),
            webhook=RateLimitBucket(requests=1),
            circuit_threshold=0.8,
        )
        limiter = SyncRateLimiter(config)
        for _ in range(4):
            limiter.record_manual_sync("a")
        # usage 4/5 == 0.8
        assert not limiter.is_webhook_sync_allowed("a")
        assert limiter.is_circuit_open()

    def test_close_and_reset(self, limiter: SyncRateLimiter) -> None:
        limiter.open_circuit()
        limiter.close_circuit()
        assert not limiter.is_circuit_open()

        for _ in range(3):
            _webhook_sync(limiter)
        limiter.open_circuit()
        limiter.reset()
        stats = limiter.stats()
        assert stats.webhook_count == 0
        assert not stats.circuit_open


class TestMaintenance:
    def test_stats(self, limiter: SyncRateLimiter) -> None:
        limiter.record_manual_sync("a")
        _webhook_sync(limiter, "a")
        stats = limiter.stats()
        assert stats.manual_count == 1
        assert stats.webhook_count == 1
        assert stats.usage_ratio == pytest.approx(2 / 13)

    def test_cleanup_drops_old_entries(self, limiter: SyncRateLimiter, clock: MagicMock) -> None:
        limiter.record_manual_sync("a")
        limiter.record_webhook_sync("a")
        clock.time.return_value = T0 + 120
        limiter.record_manual_sync("a")
        assert limiter.cleanup() == 2
        assert limiter.stats().manual_count == 1
