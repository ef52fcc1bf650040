"""Admin/health operations, independent of any transport.

The FastAPI app in ``server.app`` is a thin layer over AdminService; the
CLI and tests call it directly.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from .config import normalize_identity_id
from .models import ChannelName, PeerKey
from .peers import is_telegram_peer_id, parse_slack_peer_id
from .schema import SlackAppConfig, TelegramBotConfig
from .workspace import DirectoryRejected

if TYPE_CHECKING:
    from .bridge import RelayBridge

logger = logging.getLogger(__name__)


def _channel(value: str) -> ChannelName:
    try:
        return ChannelName(value.strip().lower())
    except ValueError:
        raise ValueError(f"Unknown channel: {value!r}") from None


def _check_peer_id(channel: ChannelName, peer_id: str) -> str:
    peer_id = peer_id.strip()
    if not peer_id:
        raise ValueError("peerId is required")
    if channel == ChannelName.TELEGRAM and not is_telegram_peer_id(peer_id):
        raise ValueError(f"Invalid Telegram peerId: {peer_id!r}")
    if channel == ChannelName.SLACK:
        parse_slack_peer_id(peer_id)
    return peer_id


class AdminService:
    """Status, broadcast and binding management for a running bridge."""

    def __init__(self, bridge: RelayBridge) -> None:
        self._bridge = bridge

    def status(self) -> dict[str, Any]:
        """Per-identity configured/running counts plus runtime health."""
        bridge = self._bridge
        channels: dict[str, Any] = {}
        for channel in ChannelName:
            configured = bridge.configured_identities(channel)
            running = [
                a.identity_id
                for a in bridge.dispatcher.adapters
                if a.channel == channel and a.running
            ]
            channels[channel.value] = {
                "configured": len(configured),
                "running": len(running),
                "identities": [
                    {"id": identity_id, "running": identity_id in running}
                    for identity_id in configured
                ],
            }
        try:
            workspace_root = str(bridge.resolver.root)
            root_error = ""
        except DirectoryRejected as exc:
            workspace_root = str(bridge.resolver.configured_root)
            root_error = str(exc)
        status: dict[str, Any] = {
            "ok": (
                bridge.running
                and not root_error
                and bool(bridge.runtime_health.get("healthy", False))
            ),
            "running": bridge.running,
            "workspace_root": workspace_root,
            "groups_enabled": bridge.config.groups_enabled,
            "runtime": dict(bridge.runtime_health),
            "channels": channels,
            "activity": bridge.dispatcher.activity.snapshot(),
            "in_flight": bridge.dispatcher.in_flight,
            "bindings": len(bridge.bindings),
            "sessions": len(bridge.sessions),
        }
        if root_error:
            status["error"] = root_error
        return status

    async def broadcast(
        self,
        channel: str,
        directory: str,
        text: str,
        identity_id: str | None = None,
    ) -> dict[str, Any]:
        """Send *text* to every peer bound to *directory* on *channel*.

        The directory goes through the workspace resolver first so the
        same spelling rules as ``/dir`` apply; matching is then exact. A
        directory removed after peers were bound to it is matched by its
        normalized spelling so those peers can still be told.
        """
        if not text.strip():
            raise ValueError("text is required")
        resolver = self._bridge.resolver
        try:
            resolved = resolver.resolve(directory)
        except DirectoryRejected:
            resolved = resolver.normalize(directory)
        result = await self._bridge.dispatcher.broadcast(
            _channel(channel),
            resolved,
            text,
            identity_id=normalize_identity_id(identity_id) if identity_id else None,
        )
        return {"directory": resolved, **asdict(result)}

    async def send(
        self,
        channel: str,
        text: str,
        *,
        directory: str | None = None,
        peer_id: str | None = None,
        identity_id: str | None = None,
    ) -> dict[str, Any]:
        """Send to all peers bound to *directory*, or to one *peer_id*."""
        if directory:
            return await self.broadcast(channel, directory, text, identity_id)
        if not peer_id:
            raise ValueError("directory or peerId is required")
        if not text.strip():
            raise ValueError("text is required")
        name = _channel(channel)
        peer_id = _check_peer_id(name, peer_id)
        identity = normalize_identity_id(identity_id)
        result: dict[str, Any] = {"attempted": 1, "notified": 0, "failures": []}
        try:
            await self._bridge.dispatcher.send_to_peer(name, identity, peer_id, text)
            result["notified"] = 1
        except Exception as exc:
            logger.warning(
                "Direct send to %s/%s/%s failed: %s", name, identity, peer_id, exc
            )
            result["failures"].append(
                {"identity_id": identity, "peer_id": peer_id, "error": str(exc)}
            )
        return result

    def list_bindings(
        self, channel: str | None = None, identity_id: str | None = None
    ) -> list[dict[str, str]]:
        records = self._bridge.bindings.list(
            channel=_channel(channel) if channel else None,
            identity_id=normalize_identity_id(identity_id) if identity_id else None,
        )
        return [
            {
                "channel": r.key.channel,
                "identity_id": r.key.identity_id,
                "peer_id": r.key.peer_id,
                "directory": r.directory,
                "updated_at": r.updated_at,
            }
            for r in records
        ]

    async def set_binding(
        self,
        channel: str,
        peer_id: str,
        directory: str,
        identity_id: str | None = None,
    ) -> dict[str, str]:
        """Bind a peer, validated exactly like ``/dir``."""
        name = _channel(channel)
        peer_id = _check_peer_id(name, peer_id)
        key = PeerKey(name, normalize_identity_id(identity_id), peer_id)
        resolved = self._bridge.resolver.resolve(directory)
        await self._bridge.bindings.set(key, resolved)
        logger.info("Admin bound %s to %s", key, resolved)
        return {
            "channel": name.value,
            "identity_id": key.identity_id,
            "peer_id": key.peer_id,
            "directory": resolved,
        }

    async def clear_binding(
        self, channel: str, peer_id: str, identity_id: str | None = None
    ) -> bool:
        name = _channel(channel)
        peer_id = _check_peer_id(name, peer_id)
        key = PeerKey(name, normalize_identity_id(identity_id), peer_id)
        removed = await self._bridge.bindings.delete(key)
        if removed:
            logger.info("Admin cleared binding for %s", key)
        return removed

    # --- Identities and settings ---

    def list_identities(self, channel: str) -> list[dict[str, Any]]:
        name = _channel(channel)
        running = {
            a.identity_id
            for a in self._bridge.dispatcher.adapters
            if a.channel == name and a.running
        }
        return [
            {
                "id": identity.id,
                "enabled": identity.enabled,
                "directory": identity.directory,
                "running": identity.id in running,
            }
            for identity in self._bridge.identities(name)
        ]

    async def add_identity(
        self,
        channel: str,
        *,
        identity_id: str | None = None,
        token: str = "",
        bot_token: str = "",
        app_token: str = "",
        enabled: bool = True,
        directory: str = "",
    ) -> dict[str, Any]:
        """Add or replace a Slack app or Telegram bot and (re)start its adapter.

        Credentials are required: ``token`` for Telegram, ``bot_token`` and
        ``app_token`` for Slack. A directory is validated like ``/dir``.
        """
        name = _channel(channel)
        if directory:
            directory = self._bridge.resolver.resolve(directory)
        identity: SlackAppConfig | TelegramBotConfig
        if name == ChannelName.TELEGRAM:
            if not token.strip():
                raise ValueError("token is required")
            identity = TelegramBotConfig(
                id=normalize_identity_id(identity_id),
                token=token.strip(),
                enabled=enabled,
                directory=directory,
            )
        else:
            if not bot_token.strip() or not app_token.strip():
                raise ValueError("bot_token and app_token are required")
            identity = SlackAppConfig(
                id=normalize_identity_id(identity_id),
                bot_token=bot_token.strip(),
                app_token=app_token.strip(),
                enabled=enabled,
                directory=directory,
            )
        stored, running = await self._bridge.upsert_identity(name, identity)
        logger.info("Admin saved %s identity %s", name, stored.id)
        return {
            "channel": name.value,
            "id": stored.id,
            "enabled": stored.enabled,
            "directory": stored.directory,
            "running": running,
        }

    async def remove_identity(self, channel: str, identity_id: str) -> bool:
        name = _channel(channel)
        removed = await self._bridge.remove_identity(name, identity_id)
        if removed:
            logger.info("Admin removed %s identity %s", name, identity_id)
        return removed

    def groups_enabled(self) -> bool:
        return self._bridge.config.groups_enabled

    async def set_groups_enabled(self, enabled: bool) -> dict[str, bool]:
        await self._bridge.set_groups_enabled(enabled)
        logger.info("Admin set groups_enabled=%s", enabled)
        return {"groups_enabled": enabled}
