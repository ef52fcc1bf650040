"""Chat commands handled by the relay itself instead of the agent.

A message is a command when its first token is ``/<name>`` and ``name``
(after aliases) is one of COMMANDS. Anything else starting with ``/`` is
forwarded to the agent as an ordinary prompt.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import ClassVar

from .agentfile import AgentFileLoader
from .conventions import MODEL_PRESETS
from .models import PeerKey, SessionRecord
from .store import BindingStore
from .workspace import DirectoryRejected, WorkspaceResolver

logger = logging.getLogger(__name__)

SessionResetter = Callable[[PeerKey, str], Awaitable[SessionRecord]]


@dataclass
class CommandContext:
    """Peer state visible to a command."""

    key: PeerKey
    directory: str  # binding, or the default when unbound
    session: SessionRecord | None = None


@dataclass
class CommandResult:
    text: str


class CommandHandler:
    """Parses and executes relay commands for one peer at a time.

    Also owns the per-peer model overrides set by ``/opus`` and friends;
    they live in memory only and ``/reset`` clears them.
    """

    COMMANDS: ClassVar[dict[str, str]] = {
        "dir": "`/dir <path>` bind this chat to a workspace directory, `/dir` show it",
        "pwd": "show the current directory",
        "reset": "start a fresh agent session and clear the model choice",
        "status": "show directory, session and model",
        "model": "show the model used for this chat",
        "opus": "switch this chat to Claude Opus 4.5",
        "codex": "switch this chat to GPT 5.2 Codex",
        "agent": "show the workspace agent file and selected agent",
        "help": "this message",
    }

    ALIASES: ClassVar[dict[str, str]] = {
        "cd": "dir",
        "new": "reset",
        "?": "help",
        "start": "help",
    }

    def __init__(
        self,
        bindings: BindingStore,
        resolver: WorkspaceResolver,
        reset_session: SessionResetter,
        *,
        default_model: str = "",
        agent_file: AgentFileLoader | None = None,
    ) -> None:
        self._bindings = bindings
        self._resolver = resolver
        self._reset_session = reset_session
        self._default_model = default_model
        self._agent_file = agent_file or AgentFileLoader(resolver.configured_root)
        self._models: dict[PeerKey, str] = {}

    @property
    def agent_file(self) -> AgentFileLoader:
        return self._agent_file

    def model_for(self, key: PeerKey) -> str:
        """The peer's chosen model, else the configured default ("" if none)."""
        return self._models.get(key, self._default_model)

    def parse_command(self, text: str) -> tuple[str, str] | None:
        """Split ``/name args`` into ``(name, args)``, or None if not a command.

        Examples:
            "/dir ws-a/project-b" -> ("dir", "ws-a/project-b")
            "/cd@relay_bot ws-a"  -> ("dir", "ws-a")
            "/unknown thing"      -> None
        """
        cleaned = text.strip()
        if not cleaned.startswith("/"):
            return None
        head, _, rest = cleaned.partition(" ")
        # Telegram appends the bot name in groups: /dir@relay_bot
        name = head[1:].split("@", 1)[0].lower()
        name = self.ALIASES.get(name, name)
        if name not in self.COMMANDS:
            return None
        return name, rest.strip()

    async def handle(
        self, command: str, args: str, ctx: CommandContext
    ) -> CommandResult:
        if command in MODEL_PRESETS:
            return self._switch_model(ctx.key, MODEL_PRESETS[command])
        handler = getattr(self, f"cmd_{command}")
        return await handler(args, ctx)

    async def cmd_dir(self, args: str, ctx: CommandContext) -> CommandResult:
        """Show or change the bound directory. Rejections leave the binding alone."""
        if not args:
            return await self.cmd_pwd(args, ctx)
        try:
            directory = self._resolver.resolve(args)
        except DirectoryRejected as e:
            return CommandResult(text=str(e))
        await self._bindings.set(ctx.key, directory)
        logger.info("Bound %s to %s", ctx.key, directory)
        return CommandResult(text=f"Directory set to: {directory}")

    async def cmd_pwd(self, args: str, ctx: CommandContext) -> CommandResult:
        """Show the directory. Arguments are ignored; only /dir rebinds."""
        return CommandResult(text=f"Current directory: {ctx.directory}")

    async def cmd_reset(self, args: str, ctx: CommandContext) -> CommandResult:
        self._models.pop(ctx.key, None)
        record = await self._reset_session(ctx.key, ctx.directory)
        short_id = record.session_id[:12]
        return CommandResult(
            text=f"Started a fresh session ({short_id}) in {ctx.directory}."
        )

    async def cmd_status(self, args: str, ctx: CommandContext) -> CommandResult:
        lines = [f"Directory: {ctx.directory}"]
        if ctx.session and ctx.session.directory == ctx.directory:
            lines.append(f"Session: {ctx.session.session_id[:12]}")
        else:
            lines.append("Session: none (one starts with your next message)")
        lines.append(f"Model: {self.model_for(ctx.key) or 'default'}")
        return CommandResult(text="\n".join(lines))

    async def cmd_model(self, args: str, ctx: CommandContext) -> CommandResult:
        return CommandResult(
            text=f"Current model: {self.model_for(ctx.key) or 'default'}"
        )

    def _switch_model(self, key: PeerKey, model: str) -> CommandResult:
        self._models[key] = model
        logger.info("Model for %s switched to %s", key, model)
        return CommandResult(text=f"Model switched to {model}")

    async def cmd_agent(self, args: str, ctx: CommandContext) -> CommandResult:
        profile = self._agent_file.load()
        lines = [
            "Scope: workspace",
            f"Agent file: {profile.path}",
            f"Agent: {profile.agent or '(none)'}",
            f"Status: {'loaded' if profile.loaded else 'missing or empty'}",
        ]
        return CommandResult(text="\n".join(lines))

    async def cmd_help(self, args: str, ctx: CommandContext) -> CommandResult:
        lines = ["Commands:"]
        lines.extend(f"/{name} - {desc}" for name, desc in self.COMMANDS.items())
        lines.append("Anything else is sent to the agent.")
        return CommandResult(text="\n".join(lines))
