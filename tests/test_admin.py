"""Admin service and HTTP API tests."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from agent_relay.adapters.base import MemoryAdapter
from agent_relay.admin import AdminService
from agent_relay.bridge import RelayBridge
from agent_relay.models import PeerKey
from agent_relay.runtime import MockRuntime
from agent_relay.schema import (
    RelayConfig,
    SlackAppConfig,
    SlackSettings,
    TelegramBotConfig,
    TelegramSettings,
)
from agent_relay.server.app import create_app
from agent_relay.workspace import DirectoryRejected

API_KEY = "test-key"


@pytest.fixture
def slack_adapter() -> MemoryAdapter:
    return MemoryAdapter(channel="slack", identity_id="default")


@pytest.fixture
def telegram_adapter() -> MemoryAdapter:
    return MemoryAdapter(channel="telegram", identity_id="ops")


@pytest.fixture
def built() -> list[MemoryAdapter]:
    """Adapters created for identities added at runtime."""
    return []


@pytest.fixture
def bridge(
    workspace, data_dir, slack_adapter, telegram_adapter, built
) -> RelayBridge:
    config = RelayConfig(
        workspace_root=str(workspace),
        slack=SlackSettings(
            apps=[SlackAppConfig(id="default", bot_token="xoxb", app_token="xapp")]
        ),
        telegram=TelegramSettings(
            bots=[
                TelegramBotConfig(id="ops", token="1:a"),
                TelegramBotConfig(id="spare", token="2:b"),
            ]
        ),
    )

    def factory(handler):
        slack_adapter.on_message = handler
        telegram_adapter.on_message = handler
        return [slack_adapter, telegram_adapter]

    def builder(channel, identity, handler):
        adapter = MemoryAdapter(
            channel=channel, identity_id=identity.id, on_message=handler
        )
        built.append(adapter)
        return adapter

    return RelayBridge(
        config,
        runtime=MockRuntime(),
        adapter_factory=factory,
        adapter_builder=builder,
        data_path=data_dir,
    )


@pytest.fixture
async def running(bridge):
    await bridge.start()
    yield bridge
    await bridge.stop()


@pytest.fixture
def admin(bridge) -> AdminService:
    return AdminService(bridge)


def _slack(peer_id: str) -> PeerKey:
    return PeerKey("slack", "default", peer_id)


class TestStatus:
    async def test_running_bridge(self, running, admin, workspace):
        await running.refresh_health()
        status = admin.status()

        assert status["ok"] is True
        assert status["running"] is True
        assert status["workspace_root"] == str(workspace)
        assert status["channels"]["slack"] == {
            "configured": 1,
            "running": 1,
            "identities": [{"id": "default", "running": True}],
        }
        telegram = status["channels"]["telegram"]
        assert telegram["configured"] == 2
        assert telegram["running"] == 1
        assert {"id": "spare", "running": False} in telegram["identities"]
        assert status["runtime"]["healthy"] is True

    def test_stopped_bridge_not_ok(self, admin):
        status = admin.status()
        assert status["ok"] is False
        assert status["running"] is False
        assert status["bindings"] == 0

    async def test_counts_activity(self, running, admin, slack_adapter):
        await slack_adapter.deliver("D1", "hello")
        status = admin.status()
        assert status["activity"]["inbound_today"] == 1
        assert status["bindings"] == 1
        assert status["sessions"] == 1

    def test_missing_root_reported_not_raised(self, data_dir, tmp_path):
        root = tmp_path / "gone"
        bridge = RelayBridge(
            RelayConfig(workspace_root=str(root)),
            runtime=MockRuntime(),
            adapter_factory=lambda handler: [],
            data_path=data_dir,
        )
        status = AdminService(bridge).status()

        assert status["ok"] is False
        assert status["workspace_root"] == str(root)
        assert status["error"]
        assert status["channels"]["slack"]["configured"] == 0

    def test_health_endpoint_with_missing_root(self, data_dir, tmp_path):
        bridge = RelayBridge(
            RelayConfig(workspace_root=str(tmp_path / "gone")),
            runtime=MockRuntime(),
            adapter_factory=lambda handler: [],
            data_path=data_dir,
        )
        client = TestClient(create_app(bridge, manage_bridge=False))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["ok"] is False
        assert "error" in response.json()


class TestBroadcast:
    async def test_exact_directory_only(
        self, running, admin, bridge, slack_adapter, workspace
    ):
        await bridge.bindings.set(_slack("D1"), str(workspace / "ws-a"))
        await bridge.bindings.set(_slack("C1|1.0"), str(workspace / "ws-a"))
        await bridge.bindings.set(_slack("D2"), str(workspace / "ws-a" / "project-b"))

        result = await admin.broadcast("slack", "ws-a", "deploy done")

        assert result["directory"] == str(workspace / "ws-a")
        assert result["attempted"] == 2
        assert result["notified"] == 2
        assert result["failures"] == []
        assert slack_adapter.texts_for("D1") == ["deploy done"]
        assert slack_adapter.texts_for("C1|1.0") == ["deploy done"]
        assert slack_adapter.texts_for("D2") == []

    async def test_failures_collected(
        self, running, admin, bridge, slack_adapter, workspace
    ):
        slack_adapter.failing_peers.add("D2")
        await bridge.bindings.set(_slack("D1"), str(workspace / "ws-a"))
        await bridge.bindings.set(_slack("D2"), str(workspace / "ws-a"))

        result = await admin.broadcast("slack", str(workspace / "ws-a"), "hi")

        assert result["attempted"] == 2
        assert result["notified"] == 1
        assert result["failures"] == [
            {
                "identity_id": "default",
                "peer_id": "D2",
                "error": "delivery to D2 failed",
            }
        ]

    async def test_no_bound_peers(self, running, admin):
        result = await admin.broadcast("slack", "ws-a", "hi")
        assert result["attempted"] == 0
        assert result["reason"].startswith("No bound peers")

    async def test_directory_outside_root_rejected(self, admin):
        with pytest.raises(DirectoryRejected):
            await admin.broadcast("slack", "/etc", "hi")

    async def test_deleted_directory_still_notified(
        self, running, admin, bridge, slack_adapter, workspace
    ):
        target = workspace / "ws-a" / "project-b"
        await bridge.bindings.set(_slack("D1"), str(target))
        target.rmdir()

        result = await admin.broadcast("slack", "ws-a/project-b", "project archived")

        assert result["directory"] == str(target)
        assert result["notified"] == 1
        assert slack_adapter.texts_for("D1") == ["project archived"]

    async def test_deleted_directory_outside_root_rejected(self, admin):
        with pytest.raises(DirectoryRejected):
            await admin.broadcast("slack", "../gone", "hi")

    async def test_blank_text_rejected(self, admin):
        with pytest.raises(ValueError, match="text is required"):
            await admin.broadcast("slack", "ws-a", "  ")


class TestSend:
    async def test_send_to_peer(self, running, admin, telegram_adapter):
        result = await admin.send("telegram", "hi", peer_id="-100", identity_id="ops")
        assert result == {"attempted": 1, "notified": 1, "failures": []}
        assert telegram_adapter.texts_for("-100") == ["hi"]

    async def test_send_to_stopped_identity_reports_failure(self, running, admin):
        result = await admin.send("telegram", "hi", peer_id="42", identity_id="spare")
        assert result["notified"] == 0
        assert "Adapter not running" in result["failures"][0]["error"]

    async def test_send_with_directory_broadcasts(
        self, running, admin, bridge, slack_adapter, workspace
    ):
        await bridge.bindings.set(_slack("D1"), str(workspace))
        result = await admin.send("slack", "hi", directory=str(workspace))
        assert result["notified"] == 1

    @pytest.mark.parametrize(
        "channel, peer_id, message",
        [
            ("discord", "1", "Unknown channel"),
            ("telegram", "D123", "Invalid Telegram peerId"),
            ("slack", "C1|", "Invalid Slack peerId"),
            ("slack", None, "directory or peerId is required"),
        ],
    )
    async def test_invalid_requests(self, admin, channel, peer_id, message):
        with pytest.raises(ValueError, match=message):
            await admin.send(channel, "hi", peer_id=peer_id)


class TestBindings:
    async def test_set_list_clear(self, admin, workspace):
        bound = await admin.set_binding("Slack", "D1", "ws-a/project-b")
        assert bound == {
            "channel": "slack",
            "identity_id": "default",
            "peer_id": "D1",
            "directory": str(workspace / "ws-a" / "project-b"),
        }

        items = admin.list_bindings(channel="slack")
        assert [(i["peer_id"], i["directory"]) for i in items] == [
            ("D1", str(workspace / "ws-a" / "project-b"))
        ]
        assert admin.list_bindings(channel="telegram") == []

        assert await admin.clear_binding("slack", "D1") is True
        assert await admin.clear_binding("slack", "D1") is False
        assert admin.list_bindings() == []

    async def test_set_binding_rejects_escape(self, admin):
        with pytest.raises(DirectoryRejected):
            await admin.set_binding("slack", "D1", "../..")
        assert admin.list_bindings() == []

    async def test_identity_id_normalized(self, admin):
        await admin.set_binding("telegram", "42", "ws-a", identity_id=" ops bot ")
        assert admin.list_bindings(identity_id="ops-bot")[0]["peer_id"] == "42"


class TestIdentities:
    async def test_list_reports_running(self, running, admin):
        assert admin.list_identities("telegram") == [
            {"id": "ops", "enabled": True, "directory": "", "running": True},
            {"id": "spare", "enabled": True, "directory": "", "running": False},
        ]

    async def test_add_starts_adapter(self, running, admin, bridge, built, workspace):
        result = await admin.add_identity(
            "telegram", identity_id="night shift", token="3:c", directory="ws-a"
        )

        assert result == {
            "channel": "telegram",
            "id": "night-shift",
            "enabled": True,
            "directory": str(workspace / "ws-a"),
            "running": True,
        }
        [adapter] = built
        assert adapter.running
        assert bridge.dispatcher.get_adapter("telegram", "night-shift") is adapter
        assert bridge.config.telegram.bots[-1].token == "3:c"

    async def test_new_identity_uses_its_directory(
        self, running, admin, built, workspace
    ):
        await admin.add_identity(
            "telegram", identity_id="night", token="3:c", directory="ws-a"
        )
        await built[0].deliver("42", "hello")
        assert running.runtime.created[0]["directory"] == str(workspace / "ws-a")

    async def test_replace_restarts_adapter(
        self, running, admin, bridge, built, telegram_adapter
    ):
        result = await admin.add_identity("telegram", identity_id="ops", token="9:z")

        assert result["running"] is True
        assert not telegram_adapter.running
        assert bridge.dispatcher.get_adapter("telegram", "ops") is built[0]
        assert [b.id for b in bridge.config.telegram.bots] == ["ops", "spare"]

    async def test_disabled_identity_not_started(self, running, admin, built):
        result = await admin.add_identity(
            "slack", identity_id="quiet", bot_token="b", app_token="a", enabled=False
        )
        assert result["running"] is False
        assert built == []

    async def test_add_on_stopped_bridge_waits_for_start(self, admin, bridge, built):
        result = await admin.add_identity("telegram", identity_id="new", token="3:c")
        assert result["running"] is False

        await bridge.start()
        try:
            assert built[0].running
        finally:
            await bridge.stop()

    @pytest.mark.parametrize(
        ("channel", "kwargs", "message"),
        [
            ("telegram", {"identity_id": "x"}, "token is required"),
            ("slack", {"identity_id": "x", "bot_token": "b"}, "app_token"),
            ("telegram", {"identity_id": "env", "token": "1:a"}, "reserved"),
            ("irc", {"token": "1:a"}, "Unknown channel"),
        ],
    )
    async def test_invalid_identity(self, admin, bridge, channel, kwargs, message):
        with pytest.raises(ValueError, match=message):
            await admin.add_identity(channel, **kwargs)
        assert [b.id for b in bridge.config.telegram.bots] == ["ops", "spare"]

    async def test_directory_outside_root_rejected(self, admin, built):
        with pytest.raises(DirectoryRejected):
            await admin.add_identity(
                "telegram", identity_id="x", token="1:a", directory="/etc"
            )
        assert built == []

    async def test_remove_stops_adapter(self, running, admin, bridge, telegram_adapter):
        assert await admin.remove_identity("telegram", "ops") is True

        assert not telegram_adapter.running
        assert bridge.dispatcher.get_adapter("telegram", "ops") is None
        assert [b.id for b in bridge.config.telegram.bots] == ["spare"]
        assert await admin.remove_identity("telegram", "ops") is False

    async def test_env_identity_cannot_be_removed(self, admin):
        with pytest.raises(ValueError, match="cannot be deleted"):
            await admin.remove_identity("telegram", "env")


class TestGroups:
    async def test_toggle(self, admin, bridge):
        assert admin.groups_enabled() is False
        assert await admin.set_groups_enabled(True) == {"groups_enabled": True}
        assert bridge.config.groups_enabled is True
        assert admin.status()["groups_enabled"] is True


class TestHttpApi:
    @pytest.fixture
    def client(self, bridge, slack_adapter) -> TestClient:
        bridge.dispatcher.register_adapter(slack_adapter)
        app = create_app(bridge, api_key=API_KEY, manage_bridge=False)
        return TestClient(app)

    @pytest.fixture
    def auth(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {API_KEY}"}

    def test_health_is_open(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["running"] is False
        assert body["channels"]["slack"]["configured"] == 1

    def test_api_requires_key(self, client):
        assert client.get("/api/bindings").status_code == 401
        response = client.get(
            "/api/bindings", headers={"Authorization": "Bearer wrong"}
        )
        assert response.status_code == 401

    def test_binding_roundtrip(self, client, auth, workspace):
        response = client.post(
            "/api/bindings",
            json={"channel": "slack", "peer_id": "D1", "directory": "ws-a"},
            headers=auth,
        )
        assert response.status_code == 200
        assert response.json()["directory"] == str(workspace / "ws-a")

        items = client.get("/api/bindings", headers=auth).json()["items"]
        assert [i["peer_id"] for i in items] == ["D1"]

        response = client.delete(
            "/api/bindings", params={"channel": "slack", "peer_id": "D1"}, headers=auth
        )
        assert response.json() == {"removed": True}

    def test_rejected_directory_is_400(self, client, auth):
        response = client.post(
            "/api/bindings",
            json={"channel": "slack", "peer_id": "D1", "directory": "/etc"},
            headers=auth,
        )
        assert response.status_code == 400
        assert "workspace root" in response.json()["error"]

    def test_send_to_peer(self, client, auth, slack_adapter):
        response = client.post(
            "/api/send",
            json={"channel": "slack", "peer_id": "D9", "text": "hello"},
            headers=auth,
        )
        assert response.status_code == 200
        assert response.json()["notified"] == 1
        assert slack_adapter.texts_for("D9") == ["hello"]

    def test_send_unknown_channel_is_400(self, client, auth):
        response = client.post(
            "/api/send",
            json={"channel": "irc", "peer_id": "x", "text": "hello"},
            headers=auth,
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Unknown channel: 'irc'"}

    def test_no_key_configured_is_open(self, bridge):
        client = TestClient(create_app(bridge, manage_bridge=False))
        assert client.get("/api/bindings").json() == {"items": []}

    def test_identity_routes(self, client, auth):
        response = client.post(
            "/api/identities/telegram",
            json={"id": "night", "token": "3:c"},
            headers=auth,
        )
        assert response.status_code == 200
        assert response.json()["id"] == "night"

        items = client.get("/api/identities/telegram", headers=auth).json()["items"]
        assert [i["id"] for i in items] == ["ops", "spare", "night"]

        response = client.delete("/api/identities/telegram/night", headers=auth)
        assert response.json() == {"removed": True}

    def test_identity_without_token_is_400(self, client, auth):
        response = client.post(
            "/api/identities/telegram", json={"id": "night"}, headers=auth
        )
        assert response.status_code == 400
        assert response.json() == {"error": "token is required"}

    def test_identity_routes_require_key(self, client):
        assert client.get("/api/identities/slack").status_code == 401

    def test_groups_routes(self, client, auth):
        assert client.get("/api/config/groups", headers=auth).json() == {
            "groups_enabled": False
        }
        response = client.post(
            "/api/config/groups", json={"enabled": True}, headers=auth
        )
        assert response.json() == {"groups_enabled": True}
        assert client.get("/health").json()["groups_enabled"] is True
