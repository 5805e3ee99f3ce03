"""Tests for reply_watch.py: boot priming, new-turn detection, empty content
deferral, heartbeat cancellation and loop resilience."""

import asyncio
import sqlite3
from unittest.mock import patch

import pytest

from conftest import FakeChannel, add_turn
from correlation import CorrelationState
from reply_watch import ReplyWatcher


async def _forever():
    await asyncio.Event().wait()


def _make_watcher(store, channel=None, state=None, interval=0.01):
    return ReplyWatcher(channel or FakeChannel(), store, state or CorrelationState(),
                        interval=interval)


class TestPrime:
    @pytest.mark.asyncio
    async def test_records_boot_turn(self, store, state_db):
        add_turn(state_db, "t-1", "2026-10-17T12:00:01Z", "old reply")
        w = _make_watcher(store)
        assert await w.prime() == "t-1"
        assert w.state.last_observed_outbound_id == "t-1"

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        w = _make_watcher(store)
        assert await w.prime() is None
        assert w.state.last_observed_outbound_id is None

    @pytest.mark.asyncio
    async def test_boot_turn_never_forwarded(self, store, state_db):
        add_turn(state_db, "t-1", "2026-10-17T12:00:01Z", "old reply")
        ch = FakeChannel()
        w = _make_watcher(store, ch)
        await w.prime()
        w.state.begin_wait(4200)

        assert await w.check_once() is False
        assert ch.sent == []
        assert w.state.awaiting_reply is True


class TestCheckOnce:
    @pytest.mark.asyncio
    async def test_idle_is_noop(self, store, state_db):
        add_turn(state_db, "t-1", "2026-10-17T12:00:01Z", "reply")
        ch = FakeChannel()
        w = _make_watcher(store, ch)
        with patch.object(store, "latest_outbound_record") as latest:
            assert await w.check_once() is False
            latest.assert_not_called()
        assert ch.sent == []

    @pytest.mark.asyncio
    async def test_no_turns_yet(self, store):
        w = _make_watcher(store)
        w.state.begin_wait(4200)
        assert await w.check_once() is False

    @pytest.mark.asyncio
    async def test_new_turn_forwarded(self, store, state_db):
        ch = FakeChannel()
        w = _make_watcher(store, ch)
        await w.prime()
        typing_task = asyncio.create_task(_forever())
        w.state.begin_wait(4200, typing_task)
        add_turn(state_db, "t-1", "2026-10-17T12:00:01Z", "  Hi, operator.  ")

        assert await w.check_once() is True
        await asyncio.sleep(0.01)

        assert ch.sent == [(4200, "Hi, operator.")]
        assert w.state.awaiting_reply is False
        assert w.state.pending_chat_id is None
        assert w.state.last_observed_outbound_id == "t-1"
        assert typing_task.cancelled()

    @pytest.mark.asyncio
    async def test_reply_sent_once(self, store, state_db):
        ch = FakeChannel()
        w = _make_watcher(store, ch)
        w.state.begin_wait(4200)
        add_turn(state_db, "t-1", "2026-10-17T12:00:01Z", "reply")

        assert await w.check_once() is True
        assert await w.check_once() is False
        assert len(ch.sent) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [None, "", "   \n\t"])
    async def test_empty_content_deferred(self, store, state_db, content):
        ch = FakeChannel()
        w = _make_watcher(store, ch)
        w.state.begin_wait(4200)
        add_turn(state_db, "t-1", "2026-10-17T12:00:01Z", content)

        assert await w.check_once() is False
        assert ch.sent == []
        assert w.state.awaiting_reply is True
        assert w.state.last_observed_outbound_id is None

        add_turn(state_db, "t-2", "2026-10-17T12:00:02Z", "real reply")
        assert await w.check_once() is True
        assert ch.sent == [(4200, "real reply")]

    @pytest.mark.asyncio
    async def test_undelivered_reply_still_releases_slot(self, store, state_db):
        ch = FakeChannel()

        async def failing_send(chat_id, text):
            ch.sent.append((chat_id, text))
            return False

        ch.send_text = failing_send
        w = _make_watcher(store, ch)
        w.state.begin_wait(4200)
        add_turn(state_db, "t-1", "2026-10-17T12:00:01Z", "reply")

        assert await w.check_once() is True
        assert w.state.awaiting_reply is False


class TestRun:
    @pytest.mark.asyncio
    async def test_errors_do_not_stop_loop(self, store, state_db):
        ch = FakeChannel()
        w = _make_watcher(store, ch, interval=0.01)
        w.state.begin_wait(4200)
        add_turn(state_db, "t-1", "2026-10-17T12:00:01Z", "reply")

        real = store.latest_outbound_record
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("database is locked")
            return await real()

        with patch.object(store, "latest_outbound_record", side_effect=flaky):
            task = asyncio.create_task(w.run())
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert ch.sent == [(4200, "reply")]
