"""Channel interface and shared types.

Defines the contract between the bridge loops and the chat transport.
The bridge needs only three outbound operations (send text, send typing,
fetch new messages since a cursor).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from config import Config


@dataclass(frozen=True)
class ChatMessage:
    update_id: int
    message_id: int
    sender_id: int
    chat_id: int
    text: str             # Trimmed; "" for stickers, photos, etc.
    username: str = ""
    date: float = 0.0     # Server arrival time (Unix seconds), 0 if unknown


class Channel(Protocol):
    async def connect(self) -> None: ...
    async def disconnect(self) -> None: ...
    async def fetch_updates(self, cursor: int) -> tuple[list[ChatMessage], int]: ...
    async def send_text(self, chat_id: int, text: str) -> bool: ...
    async def send_typing(self, chat_id: int) -> None: ...


def create_channel(config: Config) -> Channel:
    """Factory: create the Telegram channel from config."""
    from .telegram import TelegramChannel
    return TelegramChannel(
        token=config.telegram_token,
        chunk_limit=config.chunk_limit,
        parse_mode=config.parse_mode,
        poll_timeout=config.poll_timeout,
    )
