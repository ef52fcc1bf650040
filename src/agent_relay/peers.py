"""Peer id encodings for each channel.

Slack peers are either a bare conversation id (DMs) or a composite
``<channel_id>|<thread_ts>`` for threads started by a mention. ``|`` never
appears in Slack channel ids or timestamps, so parsing inverts formatting
exactly. Telegram peers are the numeric chat id as a string.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

SLACK_PEER_SEPARATOR = "|"

_TELEGRAM_PEER = re.compile(r"^-?\d+$")


@dataclass(frozen=True)
class SlackPeer:
    """Decoded Slack peer: conversation id plus optional thread root."""

    channel_id: str
    thread_ts: str | None = None

    @property
    def is_threaded(self) -> bool:
        return self.thread_ts is not None


def format_slack_peer_id(peer: SlackPeer) -> str:
    """Encode a Slack peer as a string peer id."""
    if SLACK_PEER_SEPARATOR in peer.channel_id:
        raise ValueError(f"Invalid Slack channel id: {peer.channel_id!r}")
    if peer.thread_ts is None:
        return peer.channel_id
    if SLACK_PEER_SEPARATOR in peer.thread_ts:
        raise ValueError(f"Invalid Slack thread ts: {peer.thread_ts!r}")
    return f"{peer.channel_id}{SLACK_PEER_SEPARATOR}{peer.thread_ts}"


def parse_slack_peer_id(peer_id: str) -> SlackPeer:
    """Decode a Slack peer id produced by :func:`format_slack_peer_id`.

    Raises ValueError for ids that cannot address a conversation.
    """
    channel_id, sep, thread_ts = peer_id.partition(SLACK_PEER_SEPARATOR)
    if not channel_id:
        raise ValueError(f"Invalid Slack peerId: {peer_id!r}")
    if not sep:
        return SlackPeer(channel_id)
    if not thread_ts or SLACK_PEER_SEPARATOR in thread_ts:
        raise ValueError(f"Invalid Slack peerId: {peer_id!r}")
    return SlackPeer(channel_id, thread_ts)


def is_telegram_peer_id(peer_id: str) -> bool:
    return bool(_TELEGRAM_PEER.match(peer_id))


def parse_telegram_peer_id(peer_id: str) -> int:
    """Return the Telegram chat id for *peer_id*, or raise ValueError."""
    if not is_telegram_peer_id(peer_id):
        raise ValueError(f"Invalid Telegram peerId: {peer_id!r}")
    return int(peer_id)
