#!/usr/bin/env python3
"""Automaton Telegram bridge.

Runs alongside the Automaton as a separate process:
- polls Telegram for the operator's messages,
- drops them into the Automaton's SQLite inbox,
- watches for the Automaton's replies and sends them back.

Entry point. Wires config → mailbox → channel → loops.
Handles PID file, Unix signals, and the two concurrent loops.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path

# Add bridge directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from channels import Channel, create_channel
from config import Config, ConfigError, load_config
from correlation import CorrelationState
from ingest import IngestionLoop
from mailbox_store import MailboxNotFoundError, MailboxStore
from reply_watch import ReplyWatcher

log = logging.getLogger("bridge")


class StartupError(Exception):
    """Raised when the bridge cannot start (fatal, no retry)."""


# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another bridge is live (replies would go out twice)."""
    if path.exists():
        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            raise StartupError(f"Another bridge is running (PID {pid}).")
        except PermissionError:
            raise StartupError(f"Another bridge is running (PID {pid}).") from None
        except (ProcessLookupError, ValueError):
            log.info("Stale PID file found, removing")
            path.unlink()


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(os.getpid()))


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        log.debug("Could not remove PID file %s", path)


# ─── Daemon ──────────────────────────────────────────────────────

class BridgeDaemon:
    def __init__(self, config: Config, channel: Channel | None = None,
                 store: MailboxStore | None = None):
        self.config = config
        self.channel = channel
        self.store = store
        self.state = CorrelationState()
        self.ingestion: IngestionLoop | None = None
        self.watcher: ReplyWatcher | None = None
        self._stop: asyncio.Event | None = None

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        # Stderr handler (for journald)
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore"):
            logging.getLogger(name).setLevel(logging.WARNING)

    def _init_store(self) -> None:
        if self.store is None:
            try:
                self.store = MailboxStore(self.config.db_path)
            except MailboxNotFoundError as e:
                raise StartupError(str(e)) from e
        log.info("Database opened: %s", self.store.db_path)

    def _init_channel(self) -> None:
        if self.channel is None:
            self.channel = create_channel(self.config)

    async def _init_loops(self) -> None:
        cfg = self.config
        self.ingestion = IngestionLoop(
            self.channel, self.store, self.state,
            allowed_ids=cfg.allowed_ids,
            typing_interval=cfg.typing_interval,
            retry_delay=cfg.poll_retry_delay,
            rejection_message=cfg.rejection_message,
            welcome_message=cfg.welcome_message,
            ack_message=cfg.ack_message,
        )
        self.watcher = ReplyWatcher(
            self.channel, self.store, self.state,
            interval=cfg.reply_check_interval,
        )
        # Before either loop runs: existing output must never count as a reply
        await self.watcher.prime()

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigterm():
            log.info("Signal received: shutting down")
            self.stop()

        try:
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def serve(self) -> None:
        """Run both loops until stop() or until one of them dies."""
        self._stop = asyncio.Event()
        ingest_task = asyncio.create_task(self.ingestion.run(), name="ingestion")
        watch_task = asyncio.create_task(self.watcher.run(), name="reply-watch")
        stop_task = asyncio.create_task(self._stop.wait(), name="stop")
        tasks = {ingest_task, watch_task, stop_task}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if t is not stop_task and not t.cancelled() and t.exception() is not None:
                    raise t.exception()
        finally:
            for t in tasks:
                t.cancel()
            self.state.cancel_typing()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run(self) -> None:
        """Main entry point. Starts all components and runs until signalled."""
        cfg = self.config
        pid_path = cfg.pid_file

        self._setup_logging()
        log.info("Starting Automaton Telegram Bridge...")

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        try:
            self._init_store()
            self._init_channel()
            await self.channel.connect()
            await self._init_loops()

            self._setup_signals(asyncio.get_running_loop())

            log.info("Allowed user IDs: %s", ", ".join(str(i) for i in sorted(cfg.allowed_ids)))
            log.info("Waiting for Telegram messages...")
            await self.serve()
        finally:
            if self.channel is not None:
                try:
                    await self.channel.disconnect()
                except Exception as e:
                    log.debug("Channel disconnect failed: %s", e)
            _remove_pid_file(pid_path)
            log.info("Bridge stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="Bridge Telegram messages into an Automaton's inbox and relay its replies",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("BRIDGE_CONFIG"),
        help="Path to bridge.toml (default: $BRIDGE_CONFIG, else ./bridge.toml if present)",
    )
    parser.add_argument(
        "--db",
        help="Override path to the Automaton state.db",
    )
    args = parser.parse_args()

    overrides = {}
    if args.db:
        overrides["paths.db"] = args.db

    try:
        if args.config:
            config = load_config(args.config, required=True, overrides=overrides)
        else:
            config = load_config("./bridge.toml", overrides=overrides)
    except ConfigError as e:
        print(f"[Bridge] ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    daemon = BridgeDaemon(config)
    try:
        asyncio.run(daemon.run())
    except (StartupError, ConnectionError) as e:
        print(f"[Bridge] ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
