"""Tests for configuration models and providers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from finhook.config import (
    AppConfig,
    FileConfigProvider,
    MemoryConfigProvider,
    deep_merge,
)
from finhook.errors import ConnectionModeError
from finhook.locking import lock_path_for
from finhook.models import ConnectionMode


class TestDefaults:
    def test_receiver_defaults(self) -> None:
        config = AppConfig()
        receiver = config.connect.receiver
        assert receiver.mode == ConnectionMode.AUTO
        assert receiver.health_check.interval == 60
        assert receiver.polling.interval == 300
        assert receiver.auto_mode_switching and receiver.auto_upgrade

    def test_rate_limit_defaults(self) -> None:
        limits = AppConfig().rate_limits
        assert limits.manual.requests == 10
        assert limits.webhook.requests == 3
        assert limits.webhook.window == 60
        assert limits.circuit_threshold == 0.8

    def test_oauth_defaults(self) -> None:
        oauth = AppConfig().oauth
        assert oauth.timeout == 600
        assert oauth.retrieval_wait == 30
        assert oauth.pkce_for_direct is True

    def test_find_account(self) -> None:
        config = AppConfig.model_validate({"accounts": [
            {"id": "a", "type": "plaid", "plaid_item_id": "item_a"},
            {"id": "b", "type": "gmail", "email_address": "me@example.com"},
        ]})
        assert config.find_account("plaid", plaid_item_id="item_a").id == "a"
        assert config.find_account("gmail", email_address="me@example.com").id == "b"
        assert config.find_account("plaid", plaid_item_id="missing") is None


def test_deep_merge_replaces_lists_and_merges_dicts() -> None:
    base = {"a": {"b": 1, "c": 2}, "items": [1, 2]}
    merged = deep_merge(base, {"a": {"c": 3}, "items": [9]})
    assert merged == {"a": {"b": 1, "c": 3}, "items": [9]}
    assert base["a"]["c"] == 2


class TestMemoryConfigProvider:
    @pytest.mark.asyncio
    async def test_update_merges(self) -> None:
        provider = MemoryConfigProvider()
        config = await provider.update_config({"connect": {"public_url": "https://example.com"}})
        assert config.connect.public_url == "https://example.com"
        assert config.connect.port == 4456

    @pytest.mark.asyncio
    async def test_invalid_update_rejected(self) -> None:
        provider = MemoryConfigProvider()
        with pytest.raises(ConnectionModeError) as exc_info:
            await provider.update_config({"connect": {"receiver": {"mode": "carrier-pigeon"}}})
        assert exc_info.value.code == "CONFIG_INVALID"
        assert (await provider.get_config()).connect.receiver.mode == ConnectionMode.AUTO


class TestFileConfigProvider:
    @pytest.mark.asyncio
    async def test_missing_file_yields_defaults(self, tmp_path: Path) -> None:
        provider = FileConfigProvider(tmp_path / "config.json")
        config = await provider.get_config()
        assert config == AppConfig()

    @pytest.mark.asyncio
    async def test_update_persists(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        provider = FileConfigProvider(path)
        await provider.update_config({"connect": {"receiver": {"mode": "relay"}}})

        on_disk = json.loads(path.read_text())
        assert on_disk["connect"]["receiver"]["mode"] == "relay"
        reread = await FileConfigProvider(path).get_config()
        assert reread.connect.receiver.mode == ConnectionMode.RELAY
        assert lock_path_for(path).exists()
        assert not path.with_suffix(".json.tmp").exists()

    @pytest.mark.asyncio
    async def test_updates_accumulate(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        await FileConfigProvider(path).update_config({"connect": {"port": 9000}})
        await FileConfigProvider(path).update_config({"connect": {"host": "0.0.0.0"}})
        config = FileConfigProvider(path).load()
        assert config.connect.port == 9000
        assert config.connect.host == "0.0.0.0"

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_parse_error(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConnectionModeError) as exc_info:
            await FileConfigProvider(path).get_config()
        assert exc_info.value.code == "CONFIG_PARSE_FAILED"
