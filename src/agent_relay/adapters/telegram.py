"""Telegram channel adapter: Bot API long polling over httpx.

Inbound policy:
- Only new ``message`` updates are considered; edits, channel posts and
  service messages (joins, pins) carry no ``text`` or live under another
  key and are dropped.
- Messages from bots and blank messages are dropped.
- Private chats are always forwarded. Group chats are forwarded only when
  groups are enabled and the bot is @mentioned; the mention is stripped.

Peer ids are the numeric chat id.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from typing import Any

import httpx

from ..conventions import TELEGRAM_MAX_TEXT_LENGTH
from ..models import ChannelName, InboundMessage
from ..peers import parse_telegram_peer_id
from ..schema import TelegramBotConfig
from .base import MessageHandler

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# Long-poll wait passed to getUpdates; the HTTP timeout must exceed it.
_POLL_TIMEOUT = 25
_HTTP_TIMEOUT = 35.0

_INITIAL_BACKOFF = 1.0
_MAX_BACKOFF = 60.0
_BACKOFF_FACTOR = 2.0

_LEADING_PUNCTUATION = re.compile(r"^\s*[:,-]+\s*")


def normalize_update(
    update: dict[str, Any],
    *,
    identity_id: str,
    bot_username: str | None,
    groups_enabled: bool,
) -> InboundMessage | None:
    """Turn a getUpdates entry into an InboundMessage, or None to drop it."""
    message = update.get("message")
    if not isinstance(message, dict):
        return None

    sender = message.get("from") or {}
    if sender.get("is_bot"):
        return None

    chat = message.get("chat") or {}
    chat_id = chat.get("id")
    if chat_id is None:
        return None

    text = message.get("text")
    if not isinstance(text, str) or not text.strip():
        return None

    if chat.get("type", "private") != "private":
        if not groups_enabled or not bot_username:
            return None
        mention = re.compile(rf"@{re.escape(bot_username)}\b", re.IGNORECASE)
        if not mention.search(text):
            return None
        text = _LEADING_PUNCTUATION.sub("", mention.sub(" ", text))
        if not text.strip():
            return None

    return InboundMessage(
        channel=ChannelName.TELEGRAM,
        identity_id=identity_id,
        peer_id=str(chat_id),
        text=text.strip(),
        raw=update,
    )


class TelegramAdapter:
    """One Telegram bot polled with getUpdates."""

    channel = ChannelName.TELEGRAM

    def __init__(
        self,
        config: TelegramBotConfig,
        on_message: MessageHandler,
        *,
        groups_enabled: bool = False,
        max_text_length: int = TELEGRAM_MAX_TEXT_LENGTH,
        api_base: str = TELEGRAM_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.token:
            raise ValueError("Telegram bot token is required for Telegram adapter")
        self._config = config
        self._on_message = on_message
        self._groups_enabled = groups_enabled
        self._base_url = f"{api_base}/bot{config.token}"
        self._transport = transport
        self.identity_id = config.id
        self.max_text_length = max_text_length
        self._client: httpx.AsyncClient | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._offset = 0
        self._bot_username: str | None = None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def bot_username(self) -> str | None:
        return self._bot_username

    @property
    def groups_enabled(self) -> bool:
        return self._groups_enabled

    @groups_enabled.setter
    def groups_enabled(self, enabled: bool) -> None:
        self._groups_enabled = enabled

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=_HTTP_TIMEOUT,
                transport=self._transport,
            )
        return self._client

    async def _api_call(self, method: str, **kwargs: Any) -> Any:
        """Call a Bot API method. Raises RuntimeError when ``ok`` is false."""
        response = await self._http().post(f"/{method}", json=kwargs)
        data = response.json()
        if not data.get("ok"):
            raise RuntimeError(
                f"Telegram API error: {data.get('description', response.status_code)}"
            )
        return data.get("result")

    async def start(self) -> None:
        if self._running:
            return
        me = await self._api_call("getMe")
        self._bot_username = (me or {}).get("username")
        logger.info(f"Telegram[{self.identity_id}] bot: @{self._bot_username}")

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Telegram[{self.identity_id}] adapter started")

    async def stop(self) -> None:
        if not self._running and self._task is None and self._client is None:
            return
        self._running = False

        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info(f"Telegram[{self.identity_id}] adapter stopped")

    async def send_text(self, peer_id: str, text: str) -> None:
        chat_id = parse_telegram_peer_id(peer_id)
        await self._api_call("sendMessage", chat_id=chat_id, text=text)

    async def send_typing(self, peer_id: str) -> None:
        """Show "typing..." in the chat; Telegram clears it after about 5s."""
        chat_id = parse_telegram_peer_id(peer_id)
        await self._api_call("sendChatAction", chat_id=chat_id, action="typing")

    async def poll_once(self) -> int:
        """Fetch one batch of updates and dispatch them. Returns the batch size."""
        updates = await self._api_call(
            "getUpdates",
            offset=self._offset,
            timeout=_POLL_TIMEOUT,
            allowed_updates=["message"],
        )
        for update in updates or []:
            if not isinstance(update, dict):
                logger.warning(
                    f"Telegram[{self.identity_id}] skipping malformed update {update!r}"
                )
                continue
            update_id = update.get("update_id")
            if isinstance(update_id, int):
                self._offset = max(self._offset, update_id + 1)
            self._handle_update(update)
        return len(updates or [])

    async def _poll_loop(self) -> None:
        backoff = _INITIAL_BACKOFF
        while self._running:
            try:
                await self.poll_once()
                backoff = _INITIAL_BACKOFF
            except asyncio.CancelledError:
                break
            except (httpx.HTTPError, RuntimeError, ValueError):
                logger.exception(f"Telegram[{self.identity_id}] polling error")
                await asyncio.sleep(backoff)
                backoff = min(backoff * _BACKOFF_FACTOR, _MAX_BACKOFF)

    def _handle_update(self, update: dict[str, Any]) -> None:
        message = normalize_update(
            update,
            identity_id=self.identity_id,
            bot_username=self._bot_username,
            groups_enabled=self._groups_enabled,
        )
        if message is None:
            return
        task = asyncio.create_task(self._deliver(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, message: InboundMessage) -> None:
        try:
            await self._on_message(message)
        except Exception:
            logger.exception(f"Telegram inbound handler failed for {message.peer_id}")
