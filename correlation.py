"""Correlation state shared by the ingestion and reply-watch loops.

Single-slot: at most one chat waits for a reply. A new request while one
is pending overwrites the target; only the most recent requester receives
the next reply.

Every transition is a plain synchronous method. On a single event loop
each one runs to completion, so awaiting_reply and pending_chat_id are
always observed as a consistent pair.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

log = logging.getLogger(__name__)


class CorrelationState:
    def __init__(self) -> None:
        self.last_inbound_cursor: int = 0
        self.last_observed_outbound_id: str | None = None
        self._awaiting_reply = False
        self._pending_chat_id: int | None = None
        # Typing heartbeat for the pending chat; owned here between
        # begin_wait() and complete()
        self._typing_task: asyncio.Task | None = None

    @property
    def awaiting_reply(self) -> bool:
        return self._awaiting_reply

    @property
    def pending_chat_id(self) -> int | None:
        return self._pending_chat_id

    def advance_cursor(self, update_id: int) -> None:
        """Move the inbound cursor forward (never backward)."""
        if update_id > self.last_inbound_cursor:
            self.last_inbound_cursor = update_id

    def observe_outbound(self, record_id: str | None) -> None:
        self.last_observed_outbound_id = record_id

    def begin_wait(self, chat_id: int, typing_task: asyncio.Task | None = None) -> None:
        """Mark chat_id as the reply target and take ownership of its heartbeat.

        A heartbeat left over from a previous request is cancelled.
        """
        previous = self._typing_task
        if self._awaiting_reply and self._pending_chat_id != chat_id:
            log.info("Reply target moved from chat %s to chat %s",
                     self._pending_chat_id, chat_id)
        self._awaiting_reply = True
        self._pending_chat_id = chat_id
        self._typing_task = typing_task
        if previous is not None and previous is not typing_task:
            previous.cancel()

    def complete(self, record_id: str) -> int | None:
        """Record the reply and release the slot.

        Returns the chat that was waiting, or None if nothing was pending.
        The typing heartbeat is cancelled.
        """
        if not self._awaiting_reply:
            return None
        chat_id = self._pending_chat_id
        self.last_observed_outbound_id = record_id
        self._awaiting_reply = False
        self._pending_chat_id = None
        task, self._typing_task = self._typing_task, None
        if task is not None:
            task.cancel()
        return chat_id

    def cancel_typing(self) -> None:
        task, self._typing_task = self._typing_task, None
        if task is not None:
            task.cancel()


async def typing_heartbeat(send_typing: Callable[[int], Awaitable[None]],
                           chat_id: int, interval: float) -> None:
    """Emit a typing signal immediately, then every ``interval`` seconds until cancelled."""
    while True:
        await send_typing(chat_id)
        await asyncio.sleep(interval)
