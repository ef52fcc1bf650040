"""RelayBridge: wires configuration, stores, runtime, adapters and dispatcher.

Lifecycle:
- ``start()`` starts every adapter with a bounded timeout; an adapter that
  fails or hangs is logged and left out, the rest keep running.
- A background task polls the agent runtime's health endpoint, quickly
  until it reports healthy, then at a relaxed interval.
- ``stop()`` tears everything down and is safe to call twice.
- Identities can be added, replaced or removed while running, and group
  handling toggled; with a ``config_home`` the change is written back to
  relay.yaml.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from . import config as relay_config
from .adapters.base import ChannelAdapter, MessageHandler
from .adapters.slack import SlackAdapter
from .adapters.telegram import TelegramAdapter
from .agentfile import AgentFileLoader
from .config import IdentityConfig
from .conventions import (
    ADAPTER_START_TIMEOUT_SECONDS,
    BINDINGS_FILENAME,
    SESSIONS_FILENAME,
)
from .dispatcher import BridgeDispatcher
from .models import ChannelName
from .runtime import AgentRuntime, OpenCodeRuntime
from .schema import RelayConfig, SlackAppConfig
from .store import BindingStore, SessionStore
from .workspace import DirectoryRejected, WorkspaceResolver

logger = logging.getLogger(__name__)

_HEALTH_FAST_INTERVAL = 1.0
_HEALTH_SLOW_INTERVAL = 30.0

AdapterFactory = Callable[[MessageHandler], list[ChannelAdapter]]
AdapterBuilder = Callable[[str, IdentityConfig, MessageHandler], ChannelAdapter]


class RelayBridge:
    """A configured relay: one dispatcher, its stores and its adapters."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        runtime: AgentRuntime | None = None,
        adapter_factory: AdapterFactory | None = None,
        adapter_builder: AdapterBuilder | None = None,
        data_path: Path | None = None,
        config_home: Path | None = None,
        start_timeout: float = ADAPTER_START_TIMEOUT_SECONDS,
    ) -> None:
        self.config = config
        self.resolver = WorkspaceResolver(config.workspace_root)
        data = data_path or relay_config.data_dir(config)
        self.bindings = BindingStore(data / BINDINGS_FILENAME)
        self.sessions = SessionStore(data / SESSIONS_FILENAME)
        agent = config.agent
        self.runtime = runtime or OpenCodeRuntime(
            agent.url,
            username=agent.username,
            password=agent.password,
            model=agent.model,
            permission_mode=agent.permission_mode,
        )
        self.dispatcher = BridgeDispatcher(
            bindings=self.bindings,
            sessions=self.sessions,
            resolver=self.resolver,
            runtime=self.runtime,
            prompt_timeout=agent.prompt_timeout_seconds,
            identity_directories=self._identity_directories(),
            default_model=agent.model,
            agent_file=AgentFileLoader(self.resolver.configured_root),
            tool_updates=agent.tool_updates_enabled,
            tool_output_limit=agent.tool_output_limit,
            permission_mode=agent.permission_mode,
        )
        self._adapter_builder = adapter_builder or self._build_adapter
        self._config_home = config_home
        factory = adapter_factory or self._build_adapters
        self._adapters = factory(self.dispatcher.handle_inbound)
        self._start_timeout = start_timeout
        self._running = False
        self._health_task: asyncio.Task[None] | None = None
        self.runtime_health: dict[str, Any] = {"healthy": False}

    @property
    def running(self) -> bool:
        return self._running

    def configured_identities(self, channel: ChannelName) -> list[str]:
        """Enabled identity ids for *channel* with credentials present."""
        if channel == ChannelName.SLACK:
            return [
                app.id
                for app in self.config.slack.apps
                if app.enabled and app.bot_token and app.app_token
            ]
        return [
            bot.id for bot in self.config.telegram.bots if bot.enabled and bot.token
        ]

    def identities(self, channel: str) -> list[IdentityConfig]:
        """Every configured identity for *channel*, enabled or not."""
        return list(relay_config.identity_list(self.config, channel))

    def _identity_directories(self) -> dict[tuple[str, str], str]:
        """Validated per-identity default directories. Invalid ones are ignored."""
        result: dict[tuple[str, str], str] = {}
        for channel in ChannelName:
            for identity in relay_config.identity_list(self.config, channel):
                directory = self._identity_directory(channel, identity)
                if directory:
                    result[(channel, identity.id)] = directory
        return result

    def _identity_directory(self, channel: str, identity: IdentityConfig) -> str:
        if not identity.directory:
            return ""
        try:
            return self.resolver.resolve(identity.directory)
        except DirectoryRejected as e:
            logger.warning("Ignoring directory for %s/%s: %s", channel, identity.id, e)
            return ""

    def _build_adapter(
        self, channel: str, identity: IdentityConfig, handler: MessageHandler
    ) -> ChannelAdapter:
        """Adapter for one identity. Raises ValueError on missing credentials."""
        if isinstance(identity, SlackAppConfig):
            return SlackAdapter(
                identity, handler, max_text_length=self.config.slack.max_text_length
            )
        return TelegramAdapter(
            identity,
            handler,
            groups_enabled=self.config.groups_enabled,
            max_text_length=self.config.telegram.max_text_length,
        )

    def _build_adapters(self, handler: MessageHandler) -> list[ChannelAdapter]:
        adapters: list[ChannelAdapter] = []
        for channel in ChannelName:
            for identity in relay_config.identity_list(self.config, channel):
                if not identity.enabled:
                    continue
                try:
                    adapters.append(self._adapter_builder(channel, identity, handler))
                except ValueError as e:
                    logger.warning(
                        "%s identity %s not configured: %s", channel, identity.id, e
                    )
        return adapters

    async def start(self) -> None:
        if self._running:
            return
        for adapter in self._adapters:
            await self._start_adapter(adapter)

        if not self.dispatcher.adapters:
            logger.warning("No chat adapters running; only the admin interface is up")

        self._running = True
        self._health_task = asyncio.create_task(self._health_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._health_task and not self._health_task.done():
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
        self._health_task = None

        for adapter in self.dispatcher.adapters:
            self.dispatcher.unregister_adapter(adapter.channel, adapter.identity_id)
            await self._stop_adapter(adapter)

        aclose = getattr(self.runtime, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("Relay stopped")

    async def _start_adapter(self, adapter: ChannelAdapter) -> bool:
        """Start within the start timeout and register. False if it failed."""
        name = f"{adapter.channel}/{adapter.identity_id}"
        try:
            await asyncio.wait_for(adapter.start(), timeout=self._start_timeout)
        except Exception:
            logger.exception("Adapter %s failed to start, skipping it", name)
            await self._stop_adapter(adapter)
            return False
        self.dispatcher.register_adapter(adapter)
        logger.info("Adapter %s started", name)
        return True

    async def _stop_adapter(self, adapter: ChannelAdapter) -> None:
        try:
            await adapter.stop()
        except Exception:
            logger.exception(
                "Error stopping adapter %s/%s", adapter.channel, adapter.identity_id
            )

    async def refresh_health(self) -> dict[str, Any]:
        """Poll the agent runtime once and record the result."""
        try:
            health = dict(await self.runtime.health())
        except Exception as e:
            logger.warning("Agent runtime health check failed: %s", e)
            health = {"healthy": False, "error": str(e)}
        health["checked_at"] = datetime.now(UTC).isoformat()
        self.runtime_health = health
        return health

    async def _health_loop(self) -> None:
        while self._running:
            health = await self.refresh_health()
            if health.get("healthy"):
                await asyncio.sleep(_HEALTH_SLOW_INTERVAL)
            else:
                await asyncio.sleep(_HEALTH_FAST_INTERVAL)

    # --- Runtime identity and settings changes ---

    async def upsert_identity(
        self, channel: str, identity: IdentityConfig
    ) -> tuple[IdentityConfig, bool]:
        """Add or replace an identity, persist it and restart its adapter.

        Returns the stored identity and whether its adapter is now running.
        Raises ValueError for reserved ids or an adapter that cannot be built;
        nothing is changed in that case.
        """
        candidate = relay_config.upsert_identity(
            self.config.model_copy(deep=True), channel, identity
        )
        adapter = None
        if candidate.enabled:
            adapter = self._adapter_builder(
                channel, candidate, self.dispatcher.handle_inbound
            )

        stored = relay_config.upsert_identity(self.config, channel, identity)
        await self._persist(lambda c: relay_config.upsert_identity(c, channel, stored))
        self.dispatcher.set_identity_directory(
            channel, stored.id, self._identity_directory(channel, stored)
        )
        await self._drop_adapter(channel, stored.id)
        if adapter is None:
            return stored, False
        self._adapters.append(adapter)
        if not self._running:
            return stored, False
        return stored, await self._start_adapter(adapter)

    async def remove_identity(self, channel: str, identity_id: str) -> bool:
        """Stop and forget an identity. Returns whether it was configured."""
        identity_id = relay_config.normalize_identity_id(identity_id)
        removed = relay_config.remove_identity(self.config, channel, identity_id)
        if removed:
            await self._persist(
                lambda c: relay_config.remove_identity(c, channel, identity_id)
            )
        self.dispatcher.set_identity_directory(channel, identity_id, "")
        await self._drop_adapter(channel, identity_id)
        return removed

    async def set_groups_enabled(self, enabled: bool) -> None:
        """Toggle group chat handling for running and future adapters."""
        self.config.groups_enabled = enabled
        await self._persist(lambda c: setattr(c, "groups_enabled", enabled))
        for adapter in self._adapters:
            if hasattr(adapter, "groups_enabled"):
                adapter.groups_enabled = enabled

    async def _persist(self, mutate: Callable[[RelayConfig], Any]) -> None:
        if self._config_home is None:
            return
        await asyncio.to_thread(
            relay_config.update_config_file, mutate, self._config_home
        )

    async def _drop_adapter(self, channel: str, identity_id: str) -> None:
        for adapter in [
            a
            for a in self._adapters
            if a.channel == channel and a.identity_id == identity_id
        ]:
            self._adapters.remove(adapter)
            self.dispatcher.unregister_adapter(channel, identity_id)
            await self._stop_adapter(adapter)
