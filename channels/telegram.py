"""Telegram channel via Bot API (long polling).

Inbound: getUpdates long polling (httpx async).
Outbound: sendMessage / sendChatAction (httpx async).
"""

from __future__ import annotations

import logging

import httpx

from . import ChatMessage

log = logging.getLogger(__name__)

# Telegram Bot API base URL
_API_BASE = "https://api.telegram.org/bot{token}"


class TelegramAPIError(RuntimeError):
    """Telegram answered with ok=false or a body that is not JSON."""

    def __init__(self, method: str, description: str):
        super().__init__(f"Telegram API error ({method}): {description}")
        self.method = method
        self.description = description


class TelegramChannel:
    def __init__(
        self,
        token: str,
        chunk_limit: int = 4000,
        parse_mode: str = "Markdown",
        poll_timeout: int = 30,
    ):
        self.token = token
        self.base_url = _API_BASE.format(token=token)
        self.chunk_limit = chunk_limit
        self.parse_mode = parse_mode
        self.poll_timeout = poll_timeout

        self._bot_id: int = 0
        self._bot_username: str = ""

        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            # Read timeout must outlast the long-poll window
            read_timeout = max(60.0, self.poll_timeout + 15.0)
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(read_timeout, connect=10.0))
        return self._client

    async def _api(self, method: str, **params) -> dict | list | bool:
        """Call Telegram Bot API method."""
        client = await self._get_client()
        url = f"{self.base_url}/{method}"
        resp = await client.post(url, json=params)

        # Parse JSON first; Telegram returns error descriptions even on 4xx.
        # Don't rely on raise_for_status() which discards the body.
        try:
            data = resp.json()
        except (ValueError, KeyError) as exc:
            resp.raise_for_status()
            raise TelegramAPIError(method, f"non-JSON response {resp.status_code}") from exc

        if not isinstance(data, dict):
            raise TelegramAPIError(method, f"unexpected response body {type(data).__name__}")
        if not data.get("ok"):
            raise TelegramAPIError(method, data.get("description", f"HTTP {resp.status_code}"))

        return data.get("result", {})

    async def connect(self) -> None:
        """Verify bot token and log identity."""
        try:
            me = await self._api("getMe")
            self._bot_id = me.get("id", 0)
            self._bot_username = me.get("username", "")
            log.info("Telegram bot connected: @%s (id=%d)", self._bot_username, self._bot_id)
        except Exception as e:
            log.error("Cannot connect to Telegram Bot API: %s", e)
            raise ConnectionError(f"Telegram Bot API unreachable: {e}") from e

    async def disconnect(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def fetch_updates(self, cursor: int) -> tuple[list[ChatMessage], int]:
        """Long-poll for updates after ``cursor`` (the last handled update_id).

        Returns the parsed messages and the highest update_id seen, or
        ``cursor`` unchanged when the poll timed out with nothing new.
        Transport errors propagate to the caller.
        """
        updates = await self._api(
            "getUpdates",
            offset=cursor + 1,
            timeout=self.poll_timeout,
            allowed_updates=["message"],
        )
        if not isinstance(updates, list):
            raise TelegramAPIError("getUpdates", "result is not a list")

        messages = []
        next_cursor = cursor
        for update in updates:
            update_id = update.get("update_id", 0)
            if update_id > next_cursor:
                next_cursor = update_id

            message = update.get("message")
            if not message:
                continue

            parsed = self._parse_message(update_id, message)
            if parsed is not None:
                messages.append(parsed)
        return messages, next_cursor

    def _parse_message(self, update_id: int, message: dict) -> ChatMessage | None:
        """Parse a Telegram message dict into ChatMessage, or None to skip."""
        from_user = message.get("from") or {}
        chat = message.get("chat") or {}
        if "id" not in chat:
            log.debug("Skipping update %d without chat", update_id)
            return None

        # Plain text only; captions, stickers and media yield ""
        text = (message.get("text") or "").strip()
        username = from_user.get("username") or from_user.get("first_name") or "unknown"

        return ChatMessage(
            update_id=update_id,
            message_id=message.get("message_id", 0),
            sender_id=from_user.get("id", 0),
            chat_id=chat["id"],
            text=text,
            username=username,
            date=float(message.get("date", 0) or 0),
        )

    async def send_text(self, chat_id: int, text: str) -> bool:
        """Send text, chunked to the transport limit. True if every chunk went out."""
        delivered = True
        for chunk in self._chunk_text(text):
            if not await self._send_chunk(chat_id, chunk):
                delivered = False
        return delivered

    async def _send_chunk(self, chat_id: int, chunk: str) -> bool:
        """Formatted first, plain text once if Telegram rejects the formatting."""
        try:
            if self.parse_mode:
                try:
                    await self._api("sendMessage", chat_id=chat_id, text=chunk,
                                    parse_mode=self.parse_mode)
                    return True
                except TelegramAPIError as e:
                    log.debug("Formatted send rejected (%s), retrying as plain text", e.description)
            await self._api("sendMessage", chat_id=chat_id, text=chunk)
            return True
        except (TelegramAPIError, httpx.HTTPError) as e:
            log.warning("Failed to send %d chars to chat %s: %s", len(chunk), chat_id, e)
            return False

    async def send_typing(self, chat_id: int) -> None:
        """Send typing indicator."""
        try:
            await self._api("sendChatAction", chat_id=chat_id, action="typing")
        except Exception as e:
            log.debug("Typing indicator failed (non-critical): %s", e)

    def _chunk_text(self, text: str) -> list[str]:
        """Split text into contiguous slices within chunk limit."""
        if not text:
            return []
        return [text[i:i + self.chunk_limit] for i in range(0, len(text), self.chunk_limit)]
