"""Index manager: derived lookup structures over the record store.

Four bucket mappings (project, type, tag, entity → ids) plus a timeline of
``(id, created)`` pairs, newest first. Built once at startup, updated
incrementally on writes, persisted to ``_index.json`` by atomic replace.
Everything here can be rebuilt from the record files at any time.
"""

from __future__ import annotations

import bisect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable

from memkeep.errors import InconsistentIndexError, StorageError
from memkeep.memory.models import (
    Memory,
    MemoryStats,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from memkeep.memory.store import write_atomic

logger = logging.getLogger(__name__)

INDEX_FILE = "_index.json"
STATS_FILE = "_stats.json"
INDEX_FORMAT = 1


@dataclass
class IndexEntry:
    """What the index remembers about one record, enough to undo its buckets."""

    project_id: str | None
    type: str
    tags: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    created: datetime = field(default_factory=utcnow)

    @classmethod
    def of(cls, memory: Memory) -> IndexEntry:
        return cls(
            project_id=memory.project_id,
            type=memory.type.value,
            tags=sorted(set(memory.tags)),
            entities=sorted(set(memory.entities)),
            created=memory.created,
        )


class IndexManager:
    """Owns every index structure; all mutation goes through its entry points."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.index_path = root / INDEX_FILE
        self.stats_path = root / STATS_FILE
        self._entries: dict[str, IndexEntry] = {}
        self._project: dict[str, set[str]] = {}
        self._type: dict[str, set[str]] = {}
        self._tag: dict[str, set[str]] = {}
        self._entity: dict[str, set[str]] = {}
        # Sorted ascending by (timestamp, id); exposed newest first.
        self._timeline: list[tuple[datetime, str]] = []
        self.stats_dirty = True

    # ── Entry points ──────────────────────────────────────────

    def rebuild(self, records: Iterable[Memory]) -> None:
        """Derive every structure from scratch."""
        self._clear()
        for memory in records:
            self._add(memory.id, IndexEntry.of(memory))
        self.stats_dirty = True
        logger.info("Index rebuilt: %d records", len(self._entries))

    def on_insert(self, memory: Memory) -> None:
        if memory.id in self._entries:
            self._discard(memory.id)
        self._add(memory.id, IndexEntry.of(memory))
        self.stats_dirty = True

    def on_update(self, old: Memory | None, new: Memory) -> None:
        """Move ``new.id`` between buckets whose membership changed."""
        if old is not None and old.id != new.id:
            self._discard(old.id)
        self._discard(new.id)
        self._add(new.id, IndexEntry.of(new))
        self.stats_dirty = True

    def on_remove(self, memory_id: str) -> None:
        self._discard(memory_id)
        self.stats_dirty = True

    # ── Internals ─────────────────────────────────────────────

    def _clear(self) -> None:
        self._entries.clear()
        self._project.clear()
        self._type.clear()
        self._tag.clear()
        self._entity.clear()
        self._timeline.clear()

    @staticmethod
    def _bucket_add(mapping: dict[str, set[str]], key: str, memory_id: str) -> None:
        mapping.setdefault(key, set()).add(memory_id)

    @staticmethod
    def _bucket_discard(mapping: dict[str, set[str]], key: str, memory_id: str) -> None:
        ids = mapping.get(key)
        if ids is None:
            return
        ids.discard(memory_id)
        if not ids:
            del mapping[key]

    def _add(self, memory_id: str, entry: IndexEntry) -> None:
        self._entries[memory_id] = entry
        if entry.project_id:
            self._bucket_add(self._project, entry.project_id, memory_id)
        self._bucket_add(self._type, entry.type, memory_id)
        for tag in entry.tags:
            self._bucket_add(self._tag, tag, memory_id)
        for entity in entry.entities:
            self._bucket_add(self._entity, entity, memory_id)
        bisect.insort(self._timeline, (entry.created, memory_id))

    def _discard(self, memory_id: str) -> None:
        entry = self._entries.pop(memory_id, None)
        if entry is None:
            return
        if entry.project_id:
            self._bucket_discard(self._project, entry.project_id, memory_id)
        self._bucket_discard(self._type, entry.type, memory_id)
        for tag in entry.tags:
            self._bucket_discard(self._tag, tag, memory_id)
        for entity in entry.entities:
            self._bucket_discard(self._entity, entity, memory_id)
        pos = bisect.bisect_left(self._timeline, (entry.created, memory_id))
        if pos < len(self._timeline) and self._timeline[pos] == (entry.created, memory_id):
            del self._timeline[pos]
        else:
            self._timeline = [item for item in self._timeline if item[1] != memory_id]

    # ── Lookups ───────────────────────────────────────────────

    def __contains__(self, memory_id: str) -> bool:
        return memory_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def ids(self) -> set[str]:
        return set(self._entries)

    def entry(self, memory_id: str) -> IndexEntry | None:
        return self._entries.get(memory_id)

    def ids_for_project(self, project_id: str) -> set[str]:
        return set(self._project.get(project_id, ()))

    def ids_for_types(self, types: Iterable[str]) -> set[str]:
        result: set[str] = set()
        for t in types:
            result |= self._type.get(getattr(t, "value", t), set())
        return result

    def ids_for_tags(self, tags: Iterable[str]) -> set[str]:
        result: set[str] = set()
        for tag in tags:
            result |= self._tag.get(tag, set())
        return result

    def ids_for_entities(self, entities: Iterable[str]) -> set[str]:
        result: set[str] = set()
        for entity in entities:
            result |= self._entity.get(entity, set())
        return result

    def timeline(self) -> list[tuple[str, datetime]]:
        """``(id, created)`` pairs, newest first."""
        return [(memory_id, ts) for ts, memory_id in reversed(self._timeline)]

    def ids_created_between(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> set[str]:
        result = set()
        for ts, memory_id in self._timeline:
            if start is not None and ts < start:
                continue
            if end is not None and ts > end:
                break
            result.add(memory_id)
        return result

    def verify(self, existing_ids: Iterable[str]) -> None:
        """Raise InconsistentIndexError if the index names ids not on disk."""
        missing = sorted(set(self._entries) - set(existing_ids))
        if missing:
            raise InconsistentIndexError(missing)

    def snapshot(self) -> dict:
        """Comparable plain view of every structure (sorted id lists)."""

        def flat(mapping: dict[str, set[str]]) -> dict[str, list[str]]:
            return {k: sorted(v) for k, v in sorted(mapping.items())}

        return {
            "project": flat(self._project),
            "type": flat(self._type),
            "tag": flat(self._tag),
            "entity": flat(self._entity),
            "timeline": [(memory_id, ts.isoformat()) for memory_id, ts in self.timeline()],
        }

    # ── Persistence ───────────────────────────────────────────

    def to_dict(self) -> dict:
        snap = self.snapshot()
        return {
            "format": INDEX_FORMAT,
            "saved_at": format_timestamp(utcnow()),
            "projectIndex": snap["project"],
            "typeIndex": snap["type"],
            "tagIndex": snap["tag"],
            "entityIndex": snap["entity"],
            "temporalIndex": [{"id": i, "timestamp": ts} for i, ts in snap["timeline"]],
            "entries": {
                memory_id: {
                    "project_id": e.project_id,
                    "type": e.type,
                    "tags": e.tags,
                    "entities": e.entities,
                    "created": format_timestamp(e.created),
                }
                for memory_id, e in sorted(self._entries.items())
            },
        }

    def save(self) -> None:
        try:
            write_atomic(self.index_path, json.dumps(self.to_dict(), ensure_ascii=False, indent=2))
        except OSError as e:
            raise StorageError(f"Failed to write index: {e}") from e

    def load(self) -> bool:
        """Load the persisted index. Returns False if there is none.

        Timestamps are parsed back into datetimes here; JSON only knows
        strings. A malformed file raises StorageError.
        """
        if not self.index_path.exists():
            return False
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
            entries = {
                memory_id: IndexEntry(
                    project_id=raw.get("project_id"),
                    type=raw["type"],
                    tags=list(raw.get("tags") or []),
                    entities=list(raw.get("entities") or []),
                    created=parse_timestamp(raw["created"]),
                )
                for memory_id, raw in data["entries"].items()
            }
            timeline = sorted(
                (parse_timestamp(item["timestamp"]), item["id"]) for item in data["temporalIndex"]
            )
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Malformed index file: {e}") from e

        self._clear()
        for memory_id, entry in entries.items():
            self._add(memory_id, entry)
        if [memory_id for _, memory_id in timeline] != [i for _, i in self._timeline]:
            logger.warning("Persisted timeline disagrees with entries; using entries")
        self.stats_dirty = True
        return True

    # ── Stats cache ───────────────────────────────────────────

    def save_stats(self, stats: MemoryStats) -> None:
        try:
            write_atomic(self.stats_path, json.dumps(stats.to_dict(), ensure_ascii=False, indent=2))
        except OSError as e:
            raise StorageError(f"Failed to write stats: {e}") from e
        self.stats_dirty = False

    def invalidate_stats(self) -> None:
        self.stats_dirty = True

    def load_stats(self) -> MemoryStats | None:
        if not self.stats_path.exists():
            return None
        try:
            return MemoryStats.from_dict(json.loads(self.stats_path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring malformed stats file: %s", e)
            return None


def compute_stats(records: Iterable[Memory]) -> MemoryStats:
    """Recompute aggregate counters from the record set."""
    stats = MemoryStats()
    relevance_total = 0.0
    for memory in records:
        stats.total += 1
        stats.by_type[memory.type.value] = stats.by_type.get(memory.type.value, 0) + 1
        if memory.project_id:
            stats.by_project[memory.project_id] = stats.by_project.get(memory.project_id, 0) + 1
        if memory.archived:
            stats.archived += 1
        relevance_total += memory.relevance_score
    stats.average_relevance = relevance_total / stats.total if stats.total else 0.0
    stats.last_updated = utcnow()
    return stats
