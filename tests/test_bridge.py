"""RelayBridge tests: adapter startup isolation, health polling and identity edits."""

from __future__ import annotations

import asyncio

import pytest
import yaml

from agent_relay.adapters.base import MemoryAdapter
from agent_relay.bridge import RelayBridge
from agent_relay.config import save_config
from agent_relay.models import PeerKey
from agent_relay.runtime import MockRuntime
from agent_relay.schema import (
    RelayConfig,
    SlackAppConfig,
    SlackSettings,
    TelegramBotConfig,
    TelegramSettings,
)


class _HangingAdapter(MemoryAdapter):
    """Adapter whose start never completes."""

    async def start(self) -> None:
        self.start_calls += 1
        await asyncio.Event().wait()


class _BrokenRuntime(MockRuntime):
    async def health(self):
        raise ConnectionError("connection refused")


def _config(workspace, **overrides) -> RelayConfig:
    values = {
        "workspace_root": str(workspace),
        "slack": SlackSettings(
            apps=[SlackAppConfig(id="default", bot_token="xoxb-1", app_token="xapp-1")]
        ),
        "telegram": TelegramSettings(bots=[TelegramBotConfig(id="ops", token="1:a")]),
    }
    values.update(overrides)
    return RelayConfig(**values)


def _bridge(workspace, data_dir, adapters, runtime=None, **config) -> RelayBridge:
    def factory(handler):
        for adapter in adapters:
            adapter.on_message = handler
        return adapters

    return RelayBridge(
        _config(workspace, **config),
        runtime=runtime or MockRuntime(),
        adapter_factory=factory,
        data_path=data_dir,
        start_timeout=0.05,
    )


class TestLifecycle:
    async def test_start_registers_adapters(self, workspace, data_dir):
        slack = MemoryAdapter(channel="slack", identity_id="default")
        telegram = MemoryAdapter(channel="telegram", identity_id="ops")
        bridge = _bridge(workspace, data_dir, [slack, telegram])

        await bridge.start()
        try:
            assert bridge.running
            assert slack.running and telegram.running
            assert bridge.dispatcher.get_adapter("telegram", "ops") is telegram
        finally:
            await bridge.stop()

        assert not bridge.running
        assert not slack.running
        assert bridge.dispatcher.adapters == []

    async def test_start_and_stop_are_idempotent(self, workspace, data_dir):
        slack = MemoryAdapter(channel="slack", identity_id="default")
        bridge = _bridge(workspace, data_dir, [slack])

        await bridge.start()
        await bridge.start()
        await bridge.stop()
        await bridge.stop()

        assert slack.start_calls == 1

    async def test_failing_adapter_is_skipped(self, workspace, data_dir):
        good = MemoryAdapter(channel="slack", identity_id="default")
        bad = MemoryAdapter(channel="telegram", identity_id="ops", fail_start=True)
        bridge = _bridge(workspace, data_dir, [bad, good])

        await bridge.start()
        try:
            assert bridge.running
            assert bridge.dispatcher.adapters == [good]
        finally:
            await bridge.stop()

    async def test_hanging_adapter_times_out(self, workspace, data_dir):
        good = MemoryAdapter(channel="slack", identity_id="default")
        hanging = _HangingAdapter(channel="telegram", identity_id="ops")
        bridge = _bridge(workspace, data_dir, [hanging, good])

        await bridge.start()
        try:
            assert hanging.start_calls == 1
            assert bridge.dispatcher.get_adapter("telegram", "ops") is None
            assert bridge.dispatcher.get_adapter("slack", "default") is good
        finally:
            await bridge.stop()

    async def test_no_adapters_still_runs(self, workspace, data_dir):
        bridge = _bridge(workspace, data_dir, [])
        await bridge.start()
        try:
            assert bridge.running
        finally:
            await bridge.stop()

    async def test_inbound_flows_through_factory_handler(self, workspace, data_dir):
        slack = MemoryAdapter(channel="slack", identity_id="default")
        bridge = _bridge(workspace, data_dir, [slack])
        await bridge.start()
        try:
            await slack.deliver("D1", "ping")
        finally:
            await bridge.stop()

        assert slack.texts_for("D1")[-1] == "[mock] ping"
        assert (data_dir / "bindings.json").exists()
        assert (data_dir / "sessions.json").exists()


class TestConfiguredIdentities:
    def test_only_enabled_with_credentials(self, workspace, data_dir):
        config = {
            "slack": SlackSettings(
                apps=[
                    SlackAppConfig(id="a", bot_token="xoxb", app_token="xapp"),
                    SlackAppConfig(id="b", bot_token="xoxb"),
                    SlackAppConfig(
                        id="c", bot_token="xoxb", app_token="xapp", enabled=False
                    ),
                ]
            ),
        }
        bridge = _bridge(workspace, data_dir, [], **config)
        assert bridge.configured_identities("slack") == ["a"]
        assert bridge.configured_identities("telegram") == ["ops"]

    def test_invalid_identity_directory_ignored(self, workspace, data_dir):
        telegram = TelegramSettings(
            bots=[
                TelegramBotConfig(id="ops", token="1:a", directory="ws-a"),
                TelegramBotConfig(id="bad", token="2:b", directory="/etc"),
            ]
        )
        bridge = _bridge(workspace, data_dir, [], telegram=telegram)
        assert bridge._identity_directories() == {
            ("telegram", "ops"): str(workspace / "ws-a")
        }

    def test_default_adapters_built_from_config(self, workspace, data_dir):
        bridge = RelayBridge(
            _config(workspace), runtime=MockRuntime(), data_path=data_dir
        )
        kinds = sorted((a.channel, a.identity_id) for a in bridge._adapters)
        assert kinds == [("slack", "default"), ("telegram", "ops")]


def _memory_builder(built):
    def builder(channel, identity, handler):
        adapter = MemoryAdapter(
            channel=channel, identity_id=identity.id, on_message=handler
        )
        built.append(adapter)
        return adapter

    return builder


class TestIdentityChanges:
    @pytest.fixture
    def home(self, tmp_path, workspace):
        home = tmp_path / "home"
        save_config(RelayConfig(workspace_root=str(workspace)), home)
        return home

    def _stored(self, home):
        return yaml.safe_load((home / "relay.yaml").read_text())

    async def test_upsert_and_remove_persisted(self, workspace, data_dir, home):
        built: list[MemoryAdapter] = []
        bridge = RelayBridge(
            _config(workspace),
            runtime=MockRuntime(),
            adapter_factory=lambda handler: [],
            adapter_builder=_memory_builder(built),
            data_path=data_dir,
            config_home=home,
        )

        stored, running = await bridge.upsert_identity(
            "telegram", TelegramBotConfig(id="night", token="3:c")
        )
        assert (stored.id, running) == ("night", False)
        assert self._stored(home)["telegram"]["bots"] == [
            {"id": "night", "token": "3:c", "enabled": True, "directory": ""}
        ]
        assert [b.id for b in bridge.config.telegram.bots] == ["ops", "night"]

        assert await bridge.remove_identity("telegram", "night") is True
        assert self._stored(home)["telegram"]["bots"] == []
        assert [b.id for b in bridge.config.telegram.bots] == ["ops"]

    async def test_groups_toggle_persisted(self, workspace, data_dir, home):
        bridge = _bridge(workspace, data_dir, [])
        bridge._config_home = home

        await bridge.set_groups_enabled(True)

        assert bridge.config.groups_enabled is True
        assert self._stored(home)["groups_enabled"] is True

    async def test_failed_build_changes_nothing(self, workspace, data_dir, tmp_path):
        def builder(channel, identity, handler):
            raise ValueError("bad credentials")

        home = tmp_path / "untouched"
        bridge = RelayBridge(
            _config(workspace),
            runtime=MockRuntime(),
            adapter_factory=lambda handler: [],
            adapter_builder=builder,
            data_path=data_dir,
            config_home=home,
        )

        with pytest.raises(ValueError, match="bad credentials"):
            await bridge.upsert_identity("telegram", TelegramBotConfig(id="ops"))

        assert bridge.config.telegram.bots[0].token == "1:a"
        assert not home.exists()

    async def test_default_builder_requires_token(self, workspace, data_dir):
        bridge = RelayBridge(
            _config(workspace), runtime=MockRuntime(), data_path=data_dir
        )
        with pytest.raises(ValueError, match="token is required"):
            await bridge.upsert_identity("telegram", TelegramBotConfig(id="x"))
        assert [b.id for b in bridge.config.telegram.bots] == ["ops"]

    async def test_groups_toggle_reaches_telegram_adapters(self, workspace, data_dir):
        bridge = RelayBridge(
            _config(workspace), runtime=MockRuntime(), data_path=data_dir
        )
        [telegram] = [a for a in bridge._adapters if a.channel == "telegram"]
        assert telegram.groups_enabled is False

        await bridge.set_groups_enabled(True)

        assert telegram.groups_enabled is True

    async def test_identity_directory_cleared_on_remove(self, workspace, data_dir):
        built: list[MemoryAdapter] = []
        bridge = RelayBridge(
            _config(workspace),
            runtime=MockRuntime(),
            adapter_factory=lambda handler: [],
            adapter_builder=_memory_builder(built),
            data_path=data_dir,
        )
        await bridge.start()
        try:
            await bridge.upsert_identity(
                "telegram", TelegramBotConfig(id="night", token="3:c", directory="ws-a")
            )
            await built[0].deliver("42", "hi")
            assert bridge.runtime.created[-1]["directory"] == str(workspace / "ws-a")

            await bridge.remove_identity("telegram", "night")
            assert not built[0].running
            assert bridge.dispatcher._default_directory(
                PeerKey("telegram", "night", "7")
            ) == str(workspace)
        finally:
            await bridge.stop()


class TestHealth:
    async def test_refresh_health_healthy(self, workspace, data_dir):
        bridge = _bridge(workspace, data_dir, [])
        health = await bridge.refresh_health()
        assert health["healthy"] is True
        assert health["version"] == "mock"
        assert "checked_at" in bridge.runtime_health

    async def test_refresh_health_failure_recorded(self, workspace, data_dir):
        bridge = _bridge(workspace, data_dir, [], runtime=_BrokenRuntime())
        health = await bridge.refresh_health()
        assert health["healthy"] is False
        assert "connection refused" in health["error"]

    async def test_health_loop_runs_after_start(self, workspace, data_dir):
        bridge = _bridge(workspace, data_dir, [])
        await bridge.start()
        try:
            for _ in range(10):
                if "checked_at" in bridge.runtime_health:
                    break
                await asyncio.sleep(0.01)
            assert bridge.runtime_health["healthy"] is True
        finally:
            await bridge.stop()

