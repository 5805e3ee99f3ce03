"""Mailbox store adapter over the automaton's state.db.

The bridge touches three tables owned by the agent process:

    inbox_messages : inbound queue the agent drains (bridge inserts)
    turns          : append-only log of agent turns (bridge reads latest)
    kv             : small key/value table (bridge clears sleep_until,
                     reads agent_state for /status)

Every operation opens its own short-lived connection in a worker thread,
so a busy database never stalls the event loop and no connection is held
across a network call.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

SLEEP_UNTIL_KEY = "sleep_until"
AGENT_STATE_KEY = "agent_state"


class MailboxNotFoundError(FileNotFoundError):
    """The agent's state database does not exist (agent never ran)."""


@dataclass(frozen=True)
class InboundMessage:
    id: str
    sender: str            # from_address, e.g. "telegram:42"
    body: str
    received_at: str       # ISO-8601 UTC
    correlates_to: str | None = None


@dataclass(frozen=True)
class OutboundRecord:
    id: str
    produced_at: str
    content: str | None


@dataclass(frozen=True)
class StatusSnapshot:
    agent_state: str | None
    sleep_until: str | None
    turn_count: int


class MailboxStore:
    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        if not self.db_path.exists():
            raise MailboxNotFoundError(
                f"Database not found at {self.db_path}. "
                "Make sure the Automaton has been run at least once"
            )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    async def insert_inbound_if_absent(self, msg: InboundMessage) -> bool:
        """Insert into the inbox unless the id already exists.

        Returns True if a row was written. Raises sqlite3.OperationalError
        when the agent holds the write lock past the busy timeout.
        """
        def _insert():
            conn = self._connect()
            try:
                with conn:
                    cur = conn.execute(
                        "INSERT OR IGNORE INTO inbox_messages "
                        "(id, from_address, content, received_at, reply_to) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (msg.id, msg.sender, msg.body, msg.received_at, msg.correlates_to),
                    )
                return cur.rowcount > 0
            finally:
                conn.close()

        inserted = await asyncio.to_thread(_insert)
        if not inserted:
            log.debug("Inbox already holds %s, skipped", msg.id)
        return inserted

    async def latest_outbound_record(self) -> OutboundRecord | None:
        def _query():
            conn = self._connect()
            try:
                return conn.execute(
                    "SELECT id, timestamp, thinking FROM turns "
                    "ORDER BY timestamp DESC LIMIT 1"
                ).fetchone()
            finally:
                conn.close()

        row = await asyncio.to_thread(_query)
        if row is None:
            return None
        return OutboundRecord(
            id=str(row["id"]),
            produced_at=str(row["timestamp"]),
            content=row["thinking"],
        )

    async def clear_scheduler_hint(self) -> None:
        """Delete sleep_until so the agent wakes on its next scheduler tick."""
        def _delete():
            conn = self._connect()
            try:
                with conn:
                    conn.execute("DELETE FROM kv WHERE key = ?", (SLEEP_UNTIL_KEY,))
            finally:
                conn.close()

        await asyncio.to_thread(_delete)

    async def read_status_fields(self) -> StatusSnapshot:
        def _query():
            conn = self._connect()
            try:
                state = conn.execute(
                    "SELECT value FROM kv WHERE key = ?", (AGENT_STATE_KEY,),
                ).fetchone()
                sleep_until = conn.execute(
                    "SELECT value FROM kv WHERE key = ?", (SLEEP_UNTIL_KEY,),
                ).fetchone()
                count = conn.execute("SELECT COUNT(*) AS c FROM turns").fetchone()
            finally:
                conn.close()
            return StatusSnapshot(
                agent_state=state["value"] if state else None,
                sleep_until=sleep_until["value"] if sleep_until else None,
                turn_count=count["c"] if count else 0,
            )

        return await asyncio.to_thread(_query)
