"""Slack channel adapter: Socket Mode in, Web API out.

Connects over a direct aiohttp WebSocket (no public URL needed) and
posts replies with chat.postMessage over httpx.

Inbound policy:
- Bot-authored messages, our own messages, messages with any subtype and
  blank messages are dropped.
- Plain ``message`` events are forwarded only from DMs (``D...``).
- ``app_mention`` events are forwarded from anywhere, addressed to the
  thread the mention belongs to, with the leading mention stripped.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import time
from typing import Any

import aiohttp
import httpx

from ..conventions import SLACK_MAX_TEXT_LENGTH
from ..models import ChannelName, InboundMessage
from ..peers import SlackPeer, format_slack_peer_id, parse_slack_peer_id
from ..schema import SlackAppConfig
from .base import MessageHandler

logger = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api"

# Reconnect backoff
_INITIAL_BACKOFF = 1.0
_MAX_BACKOFF = 60.0
_BACKOFF_FACTOR = 2.0

# Slack pings roughly every 30s; 5 minutes of silence means a dead socket.
_RECEIVE_TIMEOUT = 300  # seconds

# Dedup window: ignore redeliveries of the same message within this window
_DEDUP_WINDOW_SECS = 10.0
_DEDUP_MAX_SIZE = 200

_LEADING_PUNCTUATION = re.compile(r"^\s*[:,-]+\s*")


def strip_mention(text: str, bot_user_id: str | None) -> str:
    """Remove ``<@BOT>`` tokens and the punctuation that follows a leading one.

    ``"<@U1> - do X"`` becomes ``"do X"``.
    """
    if bot_user_id:
        text = text.replace(f"<@{bot_user_id}>", " ")
    text = _LEADING_PUNCTUATION.sub("", text)
    return text.strip()


def normalize_event(
    event: dict[str, Any],
    *,
    identity_id: str,
    bot_user_id: str | None,
) -> InboundMessage | None:
    """Turn a Slack ``message``/``app_mention`` event into an InboundMessage.

    Returns None for anything that must not reach the dispatcher.
    """
    event_type = event.get("type")
    channel_id = event.get("channel")
    text = event.get("text")
    user = event.get("user")

    if event.get("bot_id"):
        return None
    if event.get("subtype"):
        return None
    if bot_user_id and user == bot_user_id:
        return None
    if not isinstance(channel_id, str) or not channel_id:
        return None
    if not isinstance(text, str) or not text.strip():
        return None

    thread_ts = event.get("thread_ts")
    if not isinstance(thread_ts, str):
        thread_ts = None

    if event_type == "message":
        # Only direct messages by default; channel traffic needs a mention.
        if not channel_id.startswith("D"):
            return None
        peer = SlackPeer(channel_id, thread_ts)
        text = text.strip()
    elif event_type == "app_mention":
        ts = event.get("ts") if isinstance(event.get("ts"), str) else None
        peer = SlackPeer(channel_id, thread_ts or ts)
        text = strip_mention(text, bot_user_id)
        if not text:
            return None
    else:
        return None

    return InboundMessage(
        channel=ChannelName.SLACK,
        identity_id=identity_id,
        peer_id=format_slack_peer_id(peer),
        text=text,
        raw=event,
    )


class SlackAdapter:
    """One Slack app connected through Socket Mode.

    Manages the WebSocket connection directly via aiohttp:
    - Calls apps.connections.open for a fresh WebSocket URL
    - Acknowledges envelopes and forwards normalized messages
    - Reconnects with exponential backoff
    """

    channel = ChannelName.SLACK

    def __init__(
        self,
        config: SlackAppConfig,
        on_message: MessageHandler,
        *,
        max_text_length: int = SLACK_MAX_TEXT_LENGTH,
        api_base: str = SLACK_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.bot_token:
            raise ValueError("Slack bot token is required for Slack adapter")
        if not config.app_token:
            raise ValueError("Slack app token is required for Socket Mode")
        self._config = config
        self._on_message = on_message
        self._api_base = api_base
        self._transport = transport
        self.identity_id = config.id
        self.max_text_length = max_text_length
        self._task: asyncio.Task[None] | None = None
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._running = False
        self._bot_user_id: str | None = None
        # Maps "channel:ts" -> monotonic time when first seen.
        self._seen_events: dict[str, float] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self._typing_supported = True

    @property
    def running(self) -> bool:
        return self._running

    @property
    def bot_user_id(self) -> str | None:
        return self._bot_user_id

    async def _api_call(
        self, method: str, token: str | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Make a Slack Web API call. Raises RuntimeError when ``ok`` is false."""
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(
                f"{self._api_base}/{method}",
                headers={"Authorization": f"Bearer {token or self._config.bot_token}"},
                json=kwargs,
            )
            data = response.json()
            if not data.get("ok"):
                raise RuntimeError(f"Slack API error: {data.get('error', 'unknown')}")
            return data

    async def start(self) -> None:
        """Resolve the bot user id, then run the connection loop in the background."""
        if self._running:
            return
        auth = await self._api_call("auth.test")
        self._bot_user_id = auth.get("user_id")
        logger.info(f"Slack[{self.identity_id}] bot user ID: {self._bot_user_id}")

        self._running = True
        self._task = asyncio.create_task(self._connection_loop())
        logger.info(f"Slack[{self.identity_id}] adapter started")

    async def stop(self) -> None:
        if not self._running and self._task is None:
            return
        self._running = False

        await self._close_ws()

        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info(f"Slack[{self.identity_id}] adapter stopped")

    async def send_text(self, peer_id: str, text: str) -> None:
        peer = parse_slack_peer_id(peer_id)
        kwargs: dict[str, Any] = {"channel": peer.channel_id, "text": text}
        if peer.thread_ts:
            kwargs["thread_ts"] = peer.thread_ts
        await self._api_call("chat.postMessage", **kwargs)

    async def send_typing(self, peer_id: str) -> None:
        """Thread status via assistant.threads.setStatus; DMs have no equivalent.

        The first rejection (missing scope, app not an assistant) turns the
        indicator off for this identity.
        """
        peer = parse_slack_peer_id(peer_id)
        if not peer.thread_ts or not self._typing_supported:
            return
        try:
            await self._api_call(
                "assistant.threads.setStatus",
                channel_id=peer.channel_id,
                thread_ts=peer.thread_ts,
                status="is typing...",
            )
        except RuntimeError as e:
            self._typing_supported = False
            logger.debug(f"Slack[{self.identity_id}] typing status disabled: {e}")

    async def _get_ws_url(self) -> str:
        """Call apps.connections.open to get a fresh WebSocket URL."""
        data = await self._api_call(
            "apps.connections.open", token=self._config.app_token
        )
        return data["url"]

    async def _connection_loop(self) -> None:
        """Main loop: connect, process, reconnect on failure."""
        backoff = _INITIAL_BACKOFF

        while self._running:
            try:
                url = await self._get_ws_url()
                session = aiohttp.ClientSession()
                self._session = session
                self._ws = await session.ws_connect(url)
                logger.info(f"Slack[{self.identity_id}] WebSocket connected")
                backoff = _INITIAL_BACKOFF
                await self._process_frames()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception(f"Slack[{self.identity_id}] connection error")
            finally:
                await self._close_ws()

            if self._running:
                logger.info(f"Reconnecting in {backoff:.0f}s...")
                await asyncio.sleep(backoff)
                backoff = min(backoff * _BACKOFF_FACTOR, _MAX_BACKOFF)

    async def _process_frames(self) -> None:
        """Read WebSocket frames until the socket closes or goes silent."""
        assert self._ws is not None

        while self._running and self._ws and not self._ws.closed:
            try:
                msg = await asyncio.wait_for(
                    self._ws.receive(), timeout=_RECEIVE_TIMEOUT
                )
            except TimeoutError:
                logger.warning(
                    f"No Slack frames in {_RECEIVE_TIMEOUT}s, assuming dead connection"
                )
                break

            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    await self._handle_frame(json.loads(msg.data))
                except (json.JSONDecodeError, KeyError, ValueError):
                    logger.exception("Error handling WebSocket frame")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error(f"WebSocket error: {self._ws.exception()}")
                break
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
            ):
                break

    async def _handle_frame(self, frame: dict[str, Any]) -> None:
        frame_type = frame.get("type", "")

        if frame_type == "hello":
            connections = frame.get("num_connections", "?")
            logger.info(f"Socket Mode hello (connections: {connections})")
        elif frame_type == "disconnect":
            reason = frame.get("reason", "unknown")
            logger.warning(f"Socket Mode disconnect requested: {reason}")
            if self._ws:
                await self._ws.close()
        elif frame_type == "events_api":
            # Slack retries if no ack arrives within 3s
            await self._ack(frame)
            self._handle_event(frame.get("payload", {}).get("event", {}))
        elif frame.get("envelope_id"):
            # Interactive payloads and slash commands are not used
            await self._ack(frame)

    def _handle_event(self, event: dict[str, Any]) -> None:
        message = normalize_event(
            event, identity_id=self.identity_id, bot_user_id=self._bot_user_id
        )
        if message is None:
            return

        ts = event.get("ts", "")
        if ts and self._is_duplicate(f"{event.get('channel')}:{ts}"):
            logger.debug(f"Skipping duplicate Slack event for {message.peer_id}")
            return

        # Dispatch runs in its own task so a slow agent reply never blocks
        # the socket; ordering per peer is kept by the dispatcher.
        task = asyncio.create_task(self._deliver(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, message: InboundMessage) -> None:
        try:
            await self._on_message(message)
        except Exception:
            logger.exception(f"Slack inbound handler failed for {message.peer_id}")

    def _is_duplicate(self, key: str) -> bool:
        """Check if this event key was recently seen. Records it if not."""
        now = time.monotonic()

        if len(self._seen_events) > _DEDUP_MAX_SIZE:
            cutoff = now - _DEDUP_WINDOW_SECS
            self._seen_events = {
                k: v for k, v in self._seen_events.items() if v > cutoff
            }

        seen = self._seen_events.get(key)
        if seen is not None and now - seen < _DEDUP_WINDOW_SECS:
            return True
        self._seen_events[key] = now
        return False

    async def _ack(self, frame: dict[str, Any]) -> None:
        eid = frame.get("envelope_id")
        if eid and self._ws and not self._ws.closed:
            await self._ws.send_json({"envelope_id": eid})

    async def _close_ws(self) -> None:
        if self._ws and not self._ws.closed:
            try:
                await self._ws.close()
            except OSError:
                logger.debug("Error closing WebSocket", exc_info=True)
        self._ws = None

        if self._session and not self._session.closed:
            try:
                await self._session.close()
            except OSError:
                logger.debug("Error closing HTTP session", exc_info=True)
        self._session = None
