"""Record store: one Markdown file per memory.

Each record lives at ``records/<id>.md``: YAML frontmatter carries the
metadata, the body carries the content. Record files are the source of
truth; the index and stats files next to them are caches.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import secrets
import shutil
from datetime import datetime
from pathlib import Path

import frontmatter
import yaml

from memkeep.errors import NotFound, StorageError, ValidationError
from memkeep.memory.models import Memory, MemoryType, utcnow

logger = logging.getLogger(__name__)

RECORDS_DIR = "records"
VERSIONS_DIR = ".versions"
MAX_VERSIONS_PER_RECORD = 10

_ID_RE = re.compile(r"^mem_[0-9]{8}T[0-9]{6}_[0-9a-f]{6,}$")


def generate_memory_id(now: datetime | None = None) -> str:
    """Timestamp-derived id, e.g. ``mem_20261019T101500_3fa9c2``."""
    ts = (now or utcnow()).strftime("%Y%m%dT%H%M%S")
    return f"mem_{ts}_{secrets.token_hex(3)}"


def write_atomic(path: Path, text: str) -> None:
    """Write ``text`` to a sibling temp file, then rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{secrets.token_hex(4)}.tmp")
    try:
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)


def validate(memory: Memory) -> None:
    """Raise ValidationError if required fields are missing or out of range."""
    missing = [name for name in ("content", "summary") if not str(getattr(memory, name)).strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    if not isinstance(memory.type, MemoryType):
        raise ValidationError(f"Invalid memory type: {memory.type!r}")
    if not 0.0 <= memory.confidence <= 1.0:
        raise ValidationError(f"confidence must be in [0, 1], got {memory.confidence}")
    if not 0.0 <= memory.relevance_score <= 1.0:
        raise ValidationError(f"relevance_score must be in [0, 1], got {memory.relevance_score}")


class RecordStore:
    """Create/read/update/delete of individual memory files."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.records_dir = root / RECORDS_DIR
        self.versions_dir = root / VERSIONS_DIR
        self._ensure_initialized()

    def _ensure_initialized(self) -> None:
        """Ensure base directories exist. Idempotent."""
        for d in (self.records_dir, self.versions_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ── Paths ─────────────────────────────────────────────────

    def path_for(self, memory_id: str) -> Path:
        if not _ID_RE.match(memory_id or ""):
            raise NotFound(memory_id)
        return self.records_dir / f"{memory_id}.md"

    def exists(self, memory_id: str) -> bool:
        try:
            return self.path_for(memory_id).exists()
        except NotFound:
            return False

    def list_ids(self) -> list[str]:
        return sorted(p.stem for p in self.records_dir.glob("mem_*.md"))

    # ── Serialization ─────────────────────────────────────────

    @staticmethod
    def render(memory: Memory) -> str:
        meta = memory.to_dict()
        content = meta.pop("content")
        post = frontmatter.Post(content, **meta)
        return frontmatter.dumps(post, sort_keys=False) + "\n"

    @staticmethod
    def parse(text: str) -> Memory:
        post = frontmatter.loads(text)
        data = dict(post.metadata)
        data["content"] = post.content
        return Memory.from_dict(data)

    # ── Sync primitives (run in a worker thread) ──────────────

    def _read_sync(self, memory_id: str) -> Memory:
        path = self.path_for(memory_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFound(memory_id) from None
        except OSError as e:
            raise StorageError(f"Failed to read {path.name}: {e}") from e
        try:
            memory = self.parse(text)
        except (yaml.YAMLError, KeyError, ValueError, TypeError) as e:
            raise StorageError(f"Malformed record file {path.name}: {e}") from e
        if memory.id != memory_id:
            raise StorageError(f"Record file {path.name} carries id {memory.id}")
        return memory

    def _write_sync(self, memory: Memory, backup: bool) -> None:
        path = self.path_for(memory.id)
        try:
            if backup:
                self._backup(path)
            write_atomic(path, self.render(memory))
        except OSError as e:
            raise StorageError(f"Failed to write {path.name}: {e}") from e

    def _remove_sync(self, memory_id: str) -> bool:
        try:
            path = self.path_for(memory_id)
        except NotFound:
            return False
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete {path.name}: {e}") from e

    def _backup(self, path: Path) -> None:
        """Backup to .versions/, keep at most MAX_VERSIONS_PER_RECORD per record."""
        if not path.exists():
            return
        ts = utcnow().strftime("%Y%m%dT%H%M%S%f")
        shutil.copyfile(path, self.versions_dir / f"{path.stem}-{ts}.md")
        old = sorted(self.versions_dir.glob(f"{path.stem}-*.md"))
        for f in old[:-MAX_VERSIONS_PER_RECORD]:
            f.unlink(missing_ok=True)

    def _load_all_sync(self) -> tuple[list[Memory], list[str]]:
        records: list[Memory] = []
        errors: list[str] = []
        for memory_id in self.list_ids():
            try:
                records.append(self._read_sync(memory_id))
            except (StorageError, NotFound) as e:
                logger.warning("Skipping unreadable record %s: %s", memory_id, e)
                errors.append(str(e))
        return records, errors

    # ── Public async API ──────────────────────────────────────

    async def put(self, memory: Memory, *, backup: bool = False) -> Memory:
        """Persist a record. Assigns id and version=1 on first insert."""
        validate(memory)
        if not memory.id:
            memory.id = generate_memory_id(memory.created)
            while self.exists(memory.id):
                memory.id = generate_memory_id(memory.created)
            memory.version = 1
        await asyncio.to_thread(self._write_sync, memory, backup)
        logger.debug("Wrote record %s (v%d)", memory.id, memory.version)
        return memory

    async def get(self, memory_id: str) -> Memory:
        """Read a record without touching access bookkeeping."""
        return await asyncio.to_thread(self._read_sync, memory_id)

    async def remove(self, memory_id: str) -> bool:
        """Hard delete. Returns False (not an error) if the record was absent."""
        removed = await asyncio.to_thread(self._remove_sync, memory_id)
        if removed:
            logger.debug("Removed record %s", memory_id)
        return removed

    async def load_all(self) -> tuple[list[Memory], list[str]]:
        """Read every record file; unreadable files are reported, not fatal."""
        return await asyncio.to_thread(self._load_all_sync)

    def cleanup_old_versions(self, keep: int = 200) -> int:
        """Keep only the most recent ``keep`` backup files overall."""
        versions = sorted(
            self.versions_dir.glob("*.md"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        removed = 0
        for path in versions[keep:]:
            path.unlink(missing_ok=True)
            removed += 1
        return removed
