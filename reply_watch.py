"""Reply-watch loop: automaton turns → Telegram.

While a chat is waiting, polls the turns log on a fixed interval. The first
turn newer than the last one observed that carries non-empty content is
the reply. Correlation is by recency only; there is no reply-target
reference in the store.
"""

from __future__ import annotations

import asyncio
import logging

from channels import Channel
from correlation import CorrelationState
from mailbox_store import MailboxStore

log = logging.getLogger(__name__)


class ReplyWatcher:
    def __init__(
        self,
        channel: Channel,
        store: MailboxStore,
        state: CorrelationState,
        interval: float = 5.0,
    ):
        self.channel = channel
        self.store = store
        self.state = state
        self.interval = interval

    async def prime(self) -> str | None:
        """Remember the turn that is latest at boot so it is never forwarded."""
        latest = await self.store.latest_outbound_record()
        if latest is not None:
            self.state.observe_outbound(latest.id)
            log.info("Boot turn ID: %s", latest.id)
            return latest.id
        return None

    async def check_once(self) -> bool:
        """Forward the reply if one has appeared. Returns True if sent."""
        if not self.state.awaiting_reply:
            return False

        latest = await self.store.latest_outbound_record()
        if latest is None or latest.id == self.state.last_observed_outbound_id:
            return False
        reply = (latest.content or "").strip()
        if not reply:
            # Newest turn was not user-facing; wait for the next tick
            return False

        chat_id = self.state.complete(latest.id)
        if chat_id is None:
            return False

        log.info('Agent replied: "%s"', reply[:100])
        if not await self.channel.send_text(chat_id, reply):
            log.warning("Reply to chat %s was not fully delivered", chat_id)
        return True

    async def run(self) -> None:
        while True:
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("Reply check error: %s", e)
            await asyncio.sleep(self.interval)
