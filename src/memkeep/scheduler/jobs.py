"""Periodic store maintenance using pure asyncio.

Each pass:
- Decay: half-life relevance decay of active memories
- Archive: old memories whose relevance fell below the floor
- Consolidate (optional): merge duplicate groups
- Cleanup: trim the .versions/ backlog
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from memkeep.errors import MemkeepError

if TYPE_CHECKING:
    from memkeep.config import SchedulerConfig
    from memkeep.memory.models import MaintenanceReport
    from memkeep.memory.service import MemoryService

logger = logging.getLogger(__name__)

LOCK_FILE = ".maintenance.lock"
LOCK_TIMEOUT = 600  # seconds
MAX_VERSION_FILES = 200


@dataclass
class PassResult:
    """What one maintenance pass did; ``skipped`` if another process held the lock."""

    skipped: bool = False
    reports: list[MaintenanceReport] = field(default_factory=list)
    merged: int = 0
    versions_removed: int = 0


class MaintenanceScheduler:
    """Run decay/archive (and optionally consolidation) on an interval."""

    def __init__(self, service: MemoryService, config: SchedulerConfig) -> None:
        self._service = service
        self._interval = config.maintenance_interval
        self._consolidate = config.consolidate
        self.lock_path = service.root / LOCK_FILE

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Run maintenance passes until shutdown_event is set."""
        logger.info(
            "Scheduler started (interval=%ds, consolidate=%s)",
            self._interval,
            self._consolidate,
        )
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
                break  # shutdown requested
            except asyncio.TimeoutError:
                pass  # interval elapsed, run a pass

            try:
                await self.run_once()
            except MemkeepError as e:
                logger.error("Maintenance pass failed: %s", e)
        logger.info("Scheduler stopped.")

    def _acquire_lock(self) -> bool:
        if self.lock_path.exists():
            if time.time() - self.lock_path.stat().st_mtime < LOCK_TIMEOUT:
                logger.debug("Maintenance lock held, skipping")
                return False
            logger.warning("Removing stale maintenance lock %s", self.lock_path)
            self.lock_path.unlink(missing_ok=True)
        self.lock_path.write_text(str(time.time()), encoding="utf-8")
        return True

    async def run_once(self) -> PassResult:
        """One full maintenance pass, guarded by the cross-process lock file."""
        if not self._acquire_lock():
            return PassResult(skipped=True)
        result = PassResult()
        try:
            result.reports.append(await self._service.decay())
            result.reports.append(await self._service.archive())
            if self._consolidate:
                consolidation = await self._service.consolidate()
                result.merged = consolidation.merged
            result.versions_removed = await asyncio.to_thread(
                self._service.store.cleanup_old_versions, MAX_VERSION_FILES
            )
        finally:
            self.lock_path.unlink(missing_ok=True)

        decay, archive = result.reports
        logger.info(
            "Maintenance pass: %d decayed, %d archived, %d merged, %d old versions removed",
            decay.changed,
            archive.changed,
            result.merged,
            result.versions_removed,
        )
        return result
