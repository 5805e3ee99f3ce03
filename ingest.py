"""Ingestion loop: Telegram → automaton inbox.

Long-polls the channel, enforces the allowlist, answers built-in commands
locally, and injects everything else into the inbox. Injection clears the
agent's sleep hint and opens the reply slot in CorrelationState.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from datetime import datetime, timezone

from channels import Channel, ChatMessage
from config import DEFAULT_ACK, DEFAULT_REJECTION, DEFAULT_WELCOME
from correlation import CorrelationState, typing_heartbeat
from mailbox_store import InboundMessage, MailboxStore, StatusSnapshot

log = logging.getLogger(__name__)

ID_PREFIX = "tg-"
SENDER_PREFIX = "telegram:"
OPERATOR_PREFIX = (
    "[Direct message from your Creator via Telegram - "
    "please respond conversationally and directly to them]: "
)

WELCOME_COMMANDS = frozenset({"/start", "/hello"})
STATUS_COMMAND = "/status"


def build_inbound(msg: ChatMessage, now: float | None = None) -> InboundMessage:
    """Wrap a chat message as an inbox record.

    The id uses the message's server arrival time, so a redelivered update
    maps to the same id and the insert is absorbed.
    """
    now = time.time() if now is None else now
    arrived = msg.date or now
    arrival_ms = int(arrived * 1000)
    return InboundMessage(
        id=f"{ID_PREFIX}{arrival_ms}-{msg.sender_id}-{msg.message_id}",
        sender=f"{SENDER_PREFIX}{msg.sender_id}",
        body=f"{OPERATOR_PREFIX}{msg.text}",
        received_at=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
    )


def _format_sleep_until(value: str) -> str:
    """Render a stored sleep_until value as local wall-clock time."""
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        try:
            ts = float(value)
            # Millisecond epochs are what a JS-side writer would store
            dt = datetime.fromtimestamp(ts / 1000 if ts > 1e11 else ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return value
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone().strftime("%H:%M:%S")
    except (OverflowError, OSError):
        return value


def format_status(snapshot: StatusSnapshot) -> str:
    lines = [
        "*Automaton Status*",
        f"State: `{snapshot.agent_state or 'unknown'}`",
        f"Turns completed: {snapshot.turn_count}",
    ]
    if snapshot.sleep_until:
        lines.append(f"Sleeping until: {_format_sleep_until(snapshot.sleep_until)}")
    else:
        lines.append("Not sleeping")
    return "\n".join(lines)


class IngestionLoop:
    def __init__(
        self,
        channel: Channel,
        store: MailboxStore,
        state: CorrelationState,
        allowed_ids: frozenset[int],
        typing_interval: float = 4.0,
        retry_delay: float = 5.0,
        rejection_message: str = DEFAULT_REJECTION,
        welcome_message: str = DEFAULT_WELCOME,
        ack_message: str = DEFAULT_ACK,
    ):
        self.channel = channel
        self.store = store
        self.state = state
        self.allowed_ids = frozenset(allowed_ids)
        self.typing_interval = typing_interval
        self.retry_delay = retry_delay
        self.rejection_message = rejection_message
        self.welcome_message = welcome_message
        self.ack_message = ack_message

    async def run(self) -> None:
        """Poll forever. Transport and busy-store errors back off and retry."""
        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("Poll cycle failed (%s), retrying in %.0fs", e, self.retry_delay)
                await asyncio.sleep(self.retry_delay)

    async def poll_once(self) -> int:
        """One FETCHING → PROCESSING cycle. Returns the number of messages handled."""
        messages, next_cursor = await self.channel.fetch_updates(self.state.last_inbound_cursor)
        for msg in messages:
            try:
                await self.handle_message(msg)
            except (asyncio.CancelledError, sqlite3.OperationalError):
                # A busy or locked store leaves the cursor on the previous
                # update, so this one is fetched again after the back-off
                raise
            except Exception:
                log.exception("Error handling update %d", msg.update_id)
            # Advance only once the update is handled; a crash before this
            # point redelivers it
            self.state.advance_cursor(msg.update_id)
        self.state.advance_cursor(next_cursor)
        return len(messages)

    async def handle_message(self, msg: ChatMessage) -> None:
        if not msg.text:
            return  # stickers, photos, etc.

        if msg.sender_id not in self.allowed_ids:
            log.warning("Blocked message from unknown user %s (@%s)", msg.sender_id, msg.username)
            await self.channel.send_text(msg.chat_id, self.rejection_message)
            return

        log.info("Message from @%s (%s): %s", msg.username, msg.sender_id, msg.text[:200])

        if msg.text in WELCOME_COMMANDS:
            await self.channel.send_text(msg.chat_id, self.welcome_message)
            return
        if msg.text == STATUS_COMMAND:
            snapshot = await self.store.read_status_fields()
            await self.channel.send_text(msg.chat_id, format_status(snapshot))
            return

        await self._inject(msg)

        task = asyncio.create_task(
            typing_heartbeat(self.channel.send_typing, msg.chat_id, self.typing_interval),
        )
        self.state.begin_wait(msg.chat_id, task)

        await self.channel.send_text(msg.chat_id, self.ack_message)

    async def _inject(self, msg: ChatMessage) -> None:
        record = build_inbound(msg)
        if await self.store.insert_inbound_if_absent(record):
            log.info('Injected into inbox: "%s"', msg.text[:80])
        else:
            log.info("Duplicate delivery of %s ignored", record.id)
        try:
            await self.store.clear_scheduler_hint()
            log.info("Cleared sleep_until so agent wakes immediately")
        except Exception as e:
            log.warning("Could not clear sleep_until: %s", e)
