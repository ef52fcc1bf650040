"""Channel adapter abstraction.

Provides a Protocol every chat platform implements and an in-memory
implementation for tests. The dispatcher only ever talks to adapters
through this interface.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from ..models import InboundMessage


MessageHandler = Callable[[InboundMessage], Awaitable[None]]


@runtime_checkable
class ChannelAdapter(Protocol):
    """Capability interface for one configured identity on one channel."""

    channel: str
    identity_id: str
    max_text_length: int

    @property
    def running(self) -> bool: ...

    async def start(self) -> None:
        """Connect to the platform. Calling twice while started is a no-op."""
        ...

    async def stop(self) -> None:
        """Disconnect. Calling while stopped is a no-op."""
        ...

    async def send_text(self, peer_id: str, text: str) -> None:
        """Deliver *text* to *peer_id*. Raises ValueError for bad peer ids."""
        ...


@dataclass
class SentText:
    """Record of a message sent through MemoryAdapter."""

    peer_id: str
    text: str


@dataclass
class MemoryAdapter:
    """In-memory adapter for tests and local simulation.

    Records every send. Peers listed in ``failing_peers`` raise on send;
    ``fail_start`` makes ``start`` raise. ``deliver`` pushes an inbound
    message to the registered handler as the platform would.
    """

    channel: str = "memory"
    identity_id: str = "default"
    max_text_length: int = 4000
    on_message: MessageHandler | None = None
    sent: list[SentText] = field(default_factory=list)
    failing_peers: set[str] = field(default_factory=set)
    fail_start: bool = False
    start_calls: int = 0
    _running: bool = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self.start_calls += 1
        if self.fail_start:
            raise RuntimeError(f"{self.channel}/{self.identity_id} failed to start")
        self._running = True

    async def stop(self) -> None:
        self._running = False

    async def send_text(self, peer_id: str, text: str) -> None:
        if not peer_id:
            raise ValueError("peerId is required")
        if peer_id in self.failing_peers:
            raise RuntimeError(f"delivery to {peer_id} failed")
        self.sent.append(SentText(peer_id=peer_id, text=text))

    def texts_for(self, peer_id: str) -> list[str]:
        return [m.text for m in self.sent if m.peer_id == peer_id]

    async def deliver(self, peer_id: str, text: str) -> None:
        if self.on_message is None:
            raise RuntimeError("No message handler registered")
        await self.on_message(
            InboundMessage(
                channel=self.channel,
                identity_id=self.identity_id,
                peer_id=peer_id,
                text=text,
            )
        )
