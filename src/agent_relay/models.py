"""Data models shared by adapters, stores and the dispatcher.

- Peer addressing (PeerKey) and the normalized InboundMessage
- Persisted records (BindingRecord, SessionRecord)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def _now() -> str:
    return datetime.now(UTC).isoformat()


class ChannelName(StrEnum):
    """Chat platforms the relay can bridge."""

    SLACK = "slack"
    TELEGRAM = "telegram"


@dataclass(frozen=True)
class PeerKey:
    """Structural identity of a peer: ``(channel, identity_id, peer_id)``."""

    channel: str
    identity_id: str
    peer_id: str

    def __str__(self) -> str:
        return f"{self.channel}/{self.identity_id}/{self.peer_id}"


@dataclass
class InboundMessage:
    """A chat message normalized by a channel adapter.

    ``raw`` carries the platform payload through untouched; the dispatcher
    never looks inside it.
    """

    channel: str
    identity_id: str
    peer_id: str
    text: str
    raw: Any = None

    @property
    def key(self) -> PeerKey:
        return PeerKey(self.channel, self.identity_id, self.peer_id)


@dataclass
class BindingRecord:
    """Maps a peer to the directory its prompts run in."""

    key: PeerKey
    directory: str
    updated_at: str = field(default_factory=_now)


@dataclass
class SessionRecord:
    """Maps a peer to its live agent session.

    ``directory`` is the directory the session was created in, so a
    rebind can be detected on the next dispatch.
    """

    key: PeerKey
    session_id: str
    directory: str
    created_at: str = field(default_factory=_now)
