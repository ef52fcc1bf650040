"""Bridge Dispatcher: routes normalized chat messages to agent sessions.

For each inbound message, serialized per peer:

1. Resolve the directory (binding, else the identity/workspace default).
   Relay commands such as ``/dir`` are answered here and stop.
2. Resolve the session, creating one (and saying "Session started.") when
   the peer has none or its session belongs to another directory.
   Creation is bounded by the same timeout as prompts.
3. Prompt the agent, bounded by ``prompt_timeout``, with the peer's model
   choice and the workspace agent file. While it runs the peer sees a
   typing indicator (where the platform has one) and, if enabled, tool
   progress lines; permission requests are answered automatically.
4. If the reply has no visible text, replace the session and resend the
   prompt once (recovery attempt), prefixed with a notice to the peer.
5. Chunk the reply to the adapter's limit and send it.

Any failure is caught per message and reported to the peer; it never
reaches other peers or the adapters' receive loops.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime

from .adapters.base import ChannelAdapter
from .agentfile import AgentFileLoader
from .commands import CommandContext, CommandHandler
from .conventions import (
    PROMPT_TIMEOUT_SECONDS,
    SESSION_STARTED_NOTICE,
    STALE_SESSION_NOTICE,
    TOOL_OUTPUT_LIMIT,
    TYPING_INTERVAL_SECONDS,
)
from .models import InboundMessage, PeerKey, SessionRecord
from .progress import RunMonitor
from .runtime import (
    AgentRuntime,
    PromptReply,
    PromptTimeout,
    RuntimeEvents,
    describe_failure,
)
from .store import BindingStore, SessionStore
from .text import split_message
from .workspace import DirectoryRejected, WorkspaceResolver

logger = logging.getLogger(__name__)


class PeerLocks:
    """One asyncio.Lock per peer, discarded once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[PeerKey, asyncio.Lock] = {}
        self._users: dict[PeerKey, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, key: PeerKey) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


@dataclass
class ActivityTracker:
    """Inbound/outbound message counts for the current UTC day."""

    day: str = ""
    inbound_today: int = 0
    outbound_today: int = 0
    last_inbound_at: str | None = None
    last_outbound_at: str | None = None

    def _roll(self) -> str:
        now = datetime.now(UTC)
        today = now.date().isoformat()
        if today != self.day:
            self.day = today
            self.inbound_today = 0
            self.outbound_today = 0
        return now.isoformat()

    def record_inbound(self) -> None:
        self.last_inbound_at = self._roll()
        self.inbound_today += 1

    def record_outbound(self) -> None:
        self.last_outbound_at = self._roll()
        self.outbound_today += 1

    def snapshot(self) -> dict[str, object]:
        self._roll()
        return asdict(self)


@dataclass
class BroadcastResult:
    """Outcome of a directory-scoped broadcast."""

    attempted: int = 0
    notified: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)
    reason: str = ""


class BridgeDispatcher:
    """Central orchestrator between adapters, stores and the agent runtime.

    Holds no peer state of its own: bindings and sessions are read fresh
    from the stores on every dispatch.
    """

    def __init__(
        self,
        *,
        bindings: BindingStore,
        sessions: SessionStore,
        resolver: WorkspaceResolver,
        runtime: AgentRuntime,
        prompt_timeout: float = PROMPT_TIMEOUT_SECONDS,
        identity_directories: dict[tuple[str, str], str] | None = None,
        default_model: str = "",
        agent_file: AgentFileLoader | None = None,
        tool_updates: bool = False,
        tool_output_limit: int = TOOL_OUTPUT_LIMIT,
        permission_mode: str = "allow",
        typing_interval: float = TYPING_INTERVAL_SECONDS,
    ) -> None:
        self._bindings = bindings
        self._sessions = sessions
        self._resolver = resolver
        self._runtime = runtime
        self._prompt_timeout = prompt_timeout
        self._identity_directories = dict(identity_directories or {})
        self._tool_updates = tool_updates
        self._tool_output_limit = tool_output_limit
        self._permission_mode = permission_mode
        self._typing_interval = typing_interval
        self._adapters: dict[tuple[str, str], ChannelAdapter] = {}
        self._locks = PeerLocks()
        self.activity = ActivityTracker()
        self.commands = CommandHandler(
            bindings,
            resolver,
            self._replace_session,
            default_model=default_model,
            agent_file=agent_file,
        )

    # --- Adapter registry ---

    def register_adapter(self, adapter: ChannelAdapter) -> None:
        self._adapters[(adapter.channel, adapter.identity_id)] = adapter

    def unregister_adapter(self, channel: str, identity_id: str) -> None:
        self._adapters.pop((channel, identity_id), None)

    def get_adapter(self, channel: str, identity_id: str) -> ChannelAdapter | None:
        return self._adapters.get((channel, identity_id))

    @property
    def adapters(self) -> list[ChannelAdapter]:
        return list(self._adapters.values())

    def set_identity_directory(
        self, channel: str, identity_id: str, directory: str
    ) -> None:
        """Set or (with an empty *directory*) clear an identity's default."""
        if directory:
            self._identity_directories[(channel, identity_id)] = directory
        else:
            self._identity_directories.pop((channel, identity_id), None)

    @property
    def in_flight(self) -> int:
        """Peers with a dispatch running or queued."""
        return len(self._locks)

    # --- Inbound path ---

    async def handle_inbound(self, message: InboundMessage) -> None:
        """Entry point for adapters. Never raises for per-message failures."""
        adapter = self.get_adapter(message.channel, message.identity_id)
        if adapter is None:
            logger.warning(
                "No adapter for %s/%s, dropping message",
                message.channel,
                message.identity_id,
            )
            return

        self.activity.record_inbound()
        logger.info("Inbound from %s (%d chars)", message.key, len(message.text))

        async with self._locks.hold(message.key):
            try:
                await self._dispatch(message, adapter)
            except Exception as exc:
                logger.exception("Dispatch failed for %s", message.key)
                await self._report_failure(adapter, message.peer_id, exc)

    async def _dispatch(self, message: InboundMessage, adapter: ChannelAdapter) -> None:
        key = message.key
        text = message.text.strip()
        if not text:
            return

        binding = await self._bindings.get(key)
        directory = binding.directory if binding else self._default_directory(key)

        parsed = self.commands.parse_command(text)
        if parsed is not None:
            name, args = parsed
            ctx = CommandContext(
                key=key, directory=directory, session=await self._sessions.get(key)
            )
            result = await self.commands.handle(name, args, ctx)
            await self._send(adapter, message.peer_id, result.text)
            return

        if binding is None:
            await self._bindings.set(key, directory)

        session = await self._sessions.get(key)
        if session is None or session.directory != directory:
            session = await self._replace_session(key, directory)
            await self._send(adapter, message.peer_id, SESSION_STARTED_NOTICE)

        reply = await self._prompt(adapter, message, session, text)
        if reply.is_empty:
            await self._recover(adapter, message, session)
            return

        await self._send(adapter, message.peer_id, reply.text)

    async def _recover(
        self, adapter: ChannelAdapter, message: InboundMessage, stale: SessionRecord
    ) -> None:
        """Recovery attempt: one fresh session, one resend, no further retries."""
        logger.warning(
            "Empty reply from session %s for %s; replacing session",
            stale.session_id,
            message.key,
        )
        session = await self._replace_session(message.key, stale.directory)
        retry = await self._prompt(adapter, message, session, message.text.strip())

        await self._send(adapter, message.peer_id, STALE_SESSION_NOTICE)
        if retry.is_empty:
            logger.warning("Recovery reply for %s was empty too", message.key)
            return
        await self._send(adapter, message.peer_id, retry.text)

    def _default_directory(self, key: PeerKey) -> str:
        configured = self._identity_directories.get((key.channel, key.identity_id))
        return configured or self._resolver.default_directory()

    async def _replace_session(self, key: PeerKey, directory: str) -> SessionRecord:
        """Create a session for *key* in *directory*, replacing any previous one."""
        try:
            session_id = await asyncio.wait_for(
                self._runtime.create_session(directory, title=f"agent-relay {key}"),
                timeout=self._prompt_timeout,
            )
        except TimeoutError as exc:
            raise PromptTimeout(
                f"No session created for {key} within {self._prompt_timeout:g}s"
            ) from exc
        record = await self._sessions.set(key, session_id, directory)
        logger.info("Session %s created for %s in %s", session_id, key, directory)
        return record

    async def _prompt(
        self,
        adapter: ChannelAdapter,
        message: InboundMessage,
        session: SessionRecord,
        text: str,
    ) -> PromptReply:
        profile = self.commands.agent_file.load()
        async with self._feedback(adapter, message.peer_id, session):
            try:
                return await asyncio.wait_for(
                    self._runtime.prompt(
                        session.session_id,
                        text,
                        session.directory,
                        model=self.commands.model_for(message.key),
                        agent=profile.agent,
                        system=profile.instructions,
                    ),
                    timeout=self._prompt_timeout,
                )
            except TimeoutError as exc:
                raise PromptTimeout(
                    f"No reply from session {session.session_id} "
                    f"within {self._prompt_timeout:g}s"
                ) from exc

    @contextlib.asynccontextmanager
    async def _feedback(
        self, adapter: ChannelAdapter, peer_id: str, session: SessionRecord
    ) -> AsyncIterator[None]:
        """Typing indicator and runtime event handling for one running prompt."""
        tasks: list[asyncio.Task[None]] = []
        send_typing = getattr(adapter, "send_typing", None)
        if send_typing is not None:
            tasks.append(asyncio.create_task(self._typing_loop(send_typing, peer_id)))
        if isinstance(self._runtime, RuntimeEvents):

            async def send(text: str) -> None:
                await self._send(adapter, peer_id, text)

            monitor = RunMonitor(
                self._runtime,
                session,
                send,
                tool_updates=self._tool_updates,
                output_limit=self._tool_output_limit,
                permission_mode=self._permission_mode,
            )
            tasks.append(asyncio.create_task(monitor.run()))
        # let the first typing call and the event subscription go out
        await asyncio.sleep(0)
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _typing_loop(
        self, send_typing: Callable[[str], Awaitable[None]], peer_id: str
    ) -> None:
        while True:
            try:
                await send_typing(peer_id)
            except Exception as e:
                logger.warning("Typing indicator for %s failed: %s", peer_id, e)
            await asyncio.sleep(self._typing_interval)

    async def _report_failure(
        self, adapter: ChannelAdapter, peer_id: str, exc: Exception
    ) -> None:
        text = str(exc) if isinstance(exc, DirectoryRejected) else describe_failure(exc)
        try:
            await self._send(adapter, peer_id, text)
        except Exception:
            logger.exception("Could not deliver failure notice to %s", peer_id)

    # --- Outbound path ---

    async def _send(self, adapter: ChannelAdapter, peer_id: str, text: str) -> None:
        for chunk in split_message(text, adapter.max_text_length):
            await adapter.send_text(peer_id, chunk)
            self.activity.record_outbound()

    async def send_to_peer(
        self, channel: str, identity_id: str, peer_id: str, text: str
    ) -> None:
        """Send *text* to one peer out of band. Raises if it cannot be delivered."""
        adapter = self.get_adapter(channel, identity_id)
        if adapter is None:
            raise ValueError(f"Adapter not running: {channel}/{identity_id}")
        await self._send(adapter, peer_id, text)

    async def broadcast(
        self,
        channel: str,
        directory: str,
        text: str,
        identity_id: str | None = None,
    ) -> BroadcastResult:
        """Send *text* to every peer bound to exactly *directory*.

        Peers bound to a parent or child of *directory* are not included.
        Each peer is attempted independently; failures are collected.
        """
        targets = self._bindings.list(
            channel=channel, identity_id=identity_id, directory=directory
        )
        result = BroadcastResult(attempted=len(targets))
        if not targets:
            result.reason = f"No bound peers for directory: {directory}"
            return result

        async def deliver(key: PeerKey) -> str | None:
            try:
                await self.send_to_peer(key.channel, key.identity_id, key.peer_id, text)
            except Exception as exc:
                logger.warning("Broadcast to %s failed: %s", key, exc)
                return str(exc) or type(exc).__name__
            return None

        errors = await asyncio.gather(*(deliver(b.key) for b in targets))
        for binding, error in zip(targets, errors, strict=True):
            if error is None:
                result.notified += 1
            else:
                result.failures.append(
                    {
                        "identity_id": binding.key.identity_id,
                        "peer_id": binding.key.peer_id,
                        "error": error,
                    }
                )
        logger.info(
            "Broadcast to %s %s: %d/%d delivered",
            channel,
            directory,
            result.notified,
            result.attempted,
        )
        return result
