"""Daemon process: serve the memory store over HTTP.

Usage: python -m memkeep serve

Manages:
- HTTP server lifecycle
- Maintenance scheduler
- PID file (prevent duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from memkeep.config import MemkeepConfig, load_config
from memkeep.memory.service import MemoryService
from memkeep.scheduler.jobs import MaintenanceScheduler
from memkeep.server import MemoryServer

logger = logging.getLogger(__name__)


class MemkeepDaemon:
    """Always-on daemon process."""

    def __init__(self, config: MemkeepConfig | None = None) -> None:
        self.config = config or load_config()
        self._shutdown_event = asyncio.Event()

    # ── PID file management ──────────────────────────────────

    def _write_pid(self) -> None:
        self.config.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_file.write_text(str(os.getpid()))
        logger.info("PID file written: %s (pid=%d)", self.config.pid_file, os.getpid())

    def _remove_pid(self) -> None:
        self.config.pid_file.unlink(missing_ok=True)

    def _check_existing(self) -> None:
        if not self.config.pid_file.exists():
            return
        try:
            pid = int(self.config.pid_file.read_text().strip())
            os.kill(pid, 0)
            print(f"memkeep daemon already running (pid={pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            # Stale PID file
            self._remove_pid()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    # ── Main run loop ────────────────────────────────────────

    async def run(self) -> None:
        self._check_existing()
        self._write_pid()
        self._setup_signals()

        service = MemoryService.from_config(self.config)
        await service.open()
        server = MemoryServer(service, self.config.server)
        scheduler = MaintenanceScheduler(service, self.config.scheduler)

        logger.info("memkeep daemon starting (store=%s)", service.root)
        try:
            await server.start()
            await scheduler.start(self._shutdown_event)
        except asyncio.CancelledError:
            pass
        finally:
            await server.stop()
            self._remove_pid()
            logger.info("memkeep daemon stopped.")
