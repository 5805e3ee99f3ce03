"""Shared fixtures for the bridge test suite.

All tests use temporary directories and mock objects.
Nothing touches ~/.automaton/ or the real Telegram API.
"""

import asyncio
import sqlite3
import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))


def create_state_db(path: Path) -> Path:
    """Create the subset of the Automaton schema the bridge touches."""
    conn = sqlite3.connect(str(path))
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS inbox_messages (
            id           TEXT PRIMARY KEY,
            from_address TEXT NOT NULL,
            content      TEXT NOT NULL,
            received_at  TEXT NOT NULL,
            processed_at TEXT,
            reply_to     TEXT
        );
        CREATE TABLE IF NOT EXISTS turns (
            id        TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            state     TEXT,
            input     TEXT,
            thinking  TEXT
        );
        CREATE TABLE IF NOT EXISTS kv (
            key   TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
    """)
    conn.commit()
    conn.close()
    return path


def add_turn(db_path: Path, turn_id: str, timestamp: str, thinking: str | None) -> None:
    conn = sqlite3.connect(str(db_path))
    conn.execute(
        "INSERT INTO turns (id, timestamp, thinking) VALUES (?, ?, ?)",
        (turn_id, timestamp, thinking),
    )
    conn.commit()
    conn.close()


def set_kv(db_path: Path, key: str, value: str) -> None:
    conn = sqlite3.connect(str(db_path))
    conn.execute("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, value))
    conn.commit()
    conn.close()


def inbox_rows(db_path: Path) -> list[tuple]:
    conn = sqlite3.connect(str(db_path))
    rows = conn.execute(
        "SELECT id, from_address, content, received_at, reply_to FROM inbox_messages"
    ).fetchall()
    conn.close()
    return rows


@pytest.fixture
def state_db(tmp_path):
    """Empty Automaton state.db with inbox_messages, turns and kv tables."""
    return create_state_db(tmp_path / "state.db")


@pytest.fixture
def store(state_db):
    from mailbox_store import MailboxStore
    return MailboxStore(state_db)


class FakeChannel:
    """In-memory Channel: records sends, replays queued update batches."""

    def __init__(self, batches=None):
        self.sent: list[tuple[int, str]] = []
        self.typing: list[int] = []
        self.batches = list(batches or [])
        self.cursors: list[int] = []
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def fetch_updates(self, cursor):
        self.cursors.append(cursor)
        if not self.batches:
            # Stand-in for the long-poll wait
            await asyncio.sleep(0.005)
            return [], cursor
        batch = self.batches.pop(0)
        if isinstance(batch, Exception):
            raise batch
        next_cursor = max([cursor] + [m.update_id for m in batch])
        return batch, next_cursor

    async def send_text(self, chat_id, text):
        self.sent.append((chat_id, text))
        return True

    async def send_typing(self, chat_id):
        self.typing.append(chat_id)


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def bridge_toml_data(tmp_path):
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "telegram": {
            "token": "123:fake-token",
            "allowed_ids": "42, 7",
        },
        "paths": {
            "state_dir": str(tmp_path / "automaton"),
        },
    }


def hold_write_lock(db_path: Path) -> sqlite3.Connection:
    """Open a connection that holds the write lock, as a busy agent would.

    Caller must rollback() and close() it.
    """
    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("BEGIN IMMEDIATE")
    return conn
