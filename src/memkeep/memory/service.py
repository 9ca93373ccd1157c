"""MemoryService: the operation surface over store, index and lifecycle.

Ordering rules:
- a record write always completes before the index hears about it;
- writes to one record are serialized by that record's lock;
- index mutation and the index file write share one lock.

An index that fails to save is logged and left for the next save or
rebuild; the record write it followed is never rolled back.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable

from memkeep.errors import (
    DuplicateError,
    InconsistentIndexError,
    NotFound,
    StorageError,
    ValidationError,
)
from memkeep.memory.analytics import build_report, range_start
from memkeep.memory.backup import export_memories, memory_from_import, parse_format, parse_import
from memkeep.memory.index import IndexManager, compute_stats
from memkeep.memory.lifecycle import (
    ARCHIVE_RELEVANCE_FLOOR,
    DEFAULT_ACCESS_BOOST,
    DEFAULT_ARCHIVE_AGE_DAYS,
    DEFAULT_CHAIN_DEPTH,
    DEFAULT_HALF_LIFE_DAYS,
    MAX_CHAIN_DEPTH,
    apply_access,
    apply_decay,
    build_chain,
    is_archivable,
    merge_into,
    plan_consolidation,
)
from memkeep.memory.models import (
    ConsolidationReport,
    ImportReport,
    MaintenanceReport,
    Memory,
    MemoryQuery,
    MemoryStats,
    MemoryType,
    SimilarityResult,
    normalize_keys,
    utcnow,
)
from memkeep.memory.query import QueryEngine
from memkeep.memory.similarity import (
    DEFAULT_MERGE_THRESHOLD,
    extract_entities,
    find_consolidation_candidates,
    find_duplicate_candidate,
    fingerprint,
)
from memkeep.memory.store import RecordStore, generate_memory_id, validate

if TYPE_CHECKING:
    from memkeep.config import MemkeepConfig

logger = logging.getLogger(__name__)

CHAIN_PREVIEW_CHARS = 200

_OPERATION_ALIASES = {
    "archive_old": "archive",
    "decay_scores": "decay",
    "get_stats": "stats",
}

_UPDATABLE_FIELDS = frozenset(
    {
        "content",
        "summary",
        "type",
        "tags",
        "entities",
        "related_memories",
        "archived",
        "metadata",
        "confidence",
        "project_id",
        "task_id",
        "context_snapshot",
        "supersedes",
        "author",
        "trigger_context",
    }
)


def _unique(items: Iterable[Any]) -> list[str]:
    return list(dict.fromkeys(str(i) for i in items if i is not None and str(i) != ""))


def _coerce_field(name: str, value: Any) -> Any:
    if name == "type":
        try:
            return MemoryType.parse(value)
        except ValueError:
            raise ValidationError(f"Invalid memory type: {value!r}") from None
    if name in ("tags", "entities", "related_memories"):
        if isinstance(value, str) or not isinstance(value, Iterable):
            raise ValidationError(f"{name} must be a list")
        return _unique(value)
    if name in ("metadata", "context_snapshot"):
        if not isinstance(value, dict):
            raise ValidationError(f"{name} must be an object")
        return dict(value)
    if name == "confidence":
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"confidence must be a number, got {value!r}") from None
    if name == "archived":
        return bool(value)
    if name in ("content", "summary"):
        return str(value).strip()
    return value


def _preview(text: str, limit: int = CHAIN_PREVIEW_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


class MemoryService:
    """Persistent memory store for one agent (or one project of agents)."""

    def __init__(
        self,
        root: Path,
        *,
        dedup_window_seconds: float = 300.0,
        access_boost: float = DEFAULT_ACCESS_BOOST,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
        archive_age_days: float = DEFAULT_ARCHIVE_AGE_DAYS,
        archive_relevance_floor: float = ARCHIVE_RELEVANCE_FLOOR,
        merge_threshold: float = DEFAULT_MERGE_THRESHOLD,
        chain_depth: int = DEFAULT_CHAIN_DEPTH,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.root = Path(root).expanduser()
        self.store = RecordStore(self.root)
        self.index = IndexManager(self.root)
        self.queries = QueryEngine(self.store, self.index, chain_depth)

        self.dedup_window_seconds = dedup_window_seconds
        self.access_boost = access_boost
        self.half_life_days = half_life_days
        self.archive_age_days = archive_age_days
        self.archive_relevance_floor = archive_relevance_floor
        self.merge_threshold = merge_threshold
        self.chain_depth = chain_depth
        self._clock = clock

        self._index_lock = asyncio.Lock()
        self._insert_lock = asyncio.Lock()  # dedup check + insert
        self._record_locks: dict[str, asyncio.Lock] = {}
        self._opened = False

    @classmethod
    def from_config(cls, config: MemkeepConfig) -> MemoryService:
        return cls(
            config.store.dir,
            dedup_window_seconds=config.store.dedup_window_seconds,
            access_boost=config.store.access_boost,
            half_life_days=config.lifecycle.half_life_days,
            archive_age_days=config.lifecycle.archive_age_days,
            archive_relevance_floor=config.lifecycle.archive_relevance_floor,
            merge_threshold=config.lifecycle.merge_threshold,
            chain_depth=config.lifecycle.chain_depth,
        )

    # ── Locks and index plumbing ──────────────────────────────

    def _lock_for(self, memory_id: str) -> asyncio.Lock:
        if memory_id not in self._record_locks:
            self._record_locks[memory_id] = asyncio.Lock()
        return self._record_locks[memory_id]

    def _drop_lock(self, memory_id: str) -> None:
        lock = self._record_locks.get(memory_id)
        if lock is not None and not lock.locked():
            del self._record_locks[memory_id]

    async def open(self) -> None:
        """Load the persisted index, rebuilding it if missing, malformed or stale."""
        async with self._index_lock:
            if self._opened:
                return
            try:
                loaded = await asyncio.to_thread(self.index.load)
            except StorageError as e:
                logger.warning("Index unusable (%s), rebuilding", e)
                loaded = False
            if loaded:
                on_disk = set(await asyncio.to_thread(self.store.list_ids))
                try:
                    self.index.verify(on_disk)
                except InconsistentIndexError as e:
                    logger.warning("%s, rebuilding", e)
                    loaded = False
            if loaded:
                unindexed = on_disk - self.index.ids()
                if unindexed:
                    logger.warning("%d records missing from the index, rebuilding", len(unindexed))
                    loaded = False
            if not loaded:
                await self._rebuild_locked()
            self._opened = True
            logger.info("Memory store opened at %s (%d records)", self.root, len(self.index))

    async def _ensure_open(self) -> None:
        if not self._opened:
            await self.open()

    async def _rebuild_locked(self) -> int:
        records, errors = await self.store.load_all()
        if errors:
            logger.warning("Rebuild skipped %d unreadable record(s)", len(errors))
        self.index.rebuild(records)
        await self._save_index_locked()
        return len(records)

    async def _save_index_locked(self) -> None:
        try:
            await asyncio.to_thread(self.index.save)
        except StorageError as e:
            logger.error("Index save failed, file left stale until next save: %s", e)

    async def _commit(self, mutate: Callable[..., None], *args: Any) -> None:
        """Apply one index entry point, then persist the index."""
        async with self._index_lock:
            mutate(*args)
            await self._save_index_locked()

    async def rebuild_index(self) -> int:
        """Re-derive the index from the record files. Returns the record count."""
        async with self._index_lock:
            count = await self._rebuild_locked()
            self._opened = True
        return count

    # ── Record ────────────────────────────────────────────────

    async def record(
        self,
        content: str,
        summary: str,
        type: MemoryType | str,
        *,
        tags: Iterable[str] | None = None,
        entities: Iterable[str] | None = None,
        project_id: str | None = None,
        task_id: str | None = None,
        confidence: float = 0.8,
        related_memories: Iterable[str] | None = None,
        context_snapshot: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        author: str = "agent",
        trigger_context: str | None = None,
        supersedes: str | None = None,
        allow_duplicate: bool = False,
    ) -> Memory:
        """Create a memory.

        Raises ValidationError for missing or malformed fields and
        DuplicateError when a near-identical memory of the same type was
        recorded within the dedup window (unless ``allow_duplicate``).
        """
        await self._ensure_open()
        now = self._clock()
        content = _coerce_field("content", content or "")
        memory = Memory(
            id="",
            content=content,
            summary=_coerce_field("summary", summary or ""),
            type=_coerce_field("type", type),
            created=now,
            last_accessed=now,
            confidence=_coerce_field("confidence", confidence),
            supersedes=supersedes,
            project_id=project_id,
            task_id=task_id,
            related_memories=_unique(related_memories or []),
            tags=_unique(tags or []),
            entities=_unique([*(entities or []), *extract_entities(content)]),
            context_snapshot=dict(context_snapshot or {}),
            author=author,
            metadata=dict(metadata or {}),
            trigger_context=trigger_context,
        )
        validate(memory)

        async with self._insert_lock:
            if not allow_duplicate:
                existing = await self._find_duplicate(memory, now)
                if existing is not None:
                    logger.info("Rejected duplicate of %s: %s", existing.id, memory.summary)
                    raise DuplicateError(existing)
            await self.store.put(memory)
            await self._commit(self.index.on_insert, memory)

        logger.info("Recorded %s memory %s: %s", memory.type.value, memory.id, memory.summary)
        return memory

    async def _find_duplicate(self, memory: Memory, now: datetime) -> Memory | None:
        window_start = now - timedelta(seconds=self.dedup_window_seconds)
        candidate_ids = self.index.ids_created_between(window_start) & self.index.ids_for_types(
            [memory.type]
        )
        recent = []
        for memory_id in sorted(candidate_ids):
            try:
                recent.append(await self.store.get(memory_id))
            except NotFound:
                continue
        return find_duplicate_candidate(memory, recent, self.dedup_window_seconds, now)

    # ── Read ──────────────────────────────────────────────────

    async def _touch(self, memory_id: str) -> Memory:
        async with self._lock_for(memory_id):
            memory = await self.store.get(memory_id)
            apply_access(memory, self.access_boost, self._clock())
            await self.store.put(memory)
        return memory

    async def _touch_all(self, memories: Iterable[Memory]) -> list[Memory]:
        touched = []
        for memory in memories:
            try:
                touched.append(await self._touch(memory.id))
            except NotFound:
                logger.debug("Memory %s vanished before its access was recorded", memory.id)
        if touched:
            self.index.invalidate_stats()
        return touched

    async def get(self, memory_id: str) -> Memory:
        """Fetch one memory by id, counting the read."""
        await self._ensure_open()
        memory = await self._touch(memory_id)
        self.index.invalidate_stats()
        return memory

    @staticmethod
    def _coerce_query(
        spec: MemoryQuery | dict[str, Any] | None,
        defaults: dict[str, Any] | None = None,
    ) -> MemoryQuery:
        if isinstance(spec, MemoryQuery):
            query = spec
        else:
            try:
                query = MemoryQuery.from_dict({**(defaults or {}), **(spec or {})})
            except (TypeError, ValueError) as e:
                raise ValidationError(f"Invalid query: {e}") from e
        if query.limit < 1:
            raise ValidationError(f"limit must be at least 1, got {query.limit}")
        return query

    async def _run_query(self, query: MemoryQuery, *, unbounded: bool = False) -> list[Memory]:
        await self._ensure_open()
        runner = self.queries.select if unbounded else self.queries.run
        try:
            return await runner(query)
        except InconsistentIndexError as e:
            logger.warning("%s, rebuilding and retrying", e)
            await self.rebuild_index()
            return await runner(query)

    async def query(self, spec: MemoryQuery | dict[str, Any] | None = None) -> list[Memory]:
        """Filtered, searched, ranked and bounded retrieval. Counts every returned read."""
        hits = await self._run_query(self._coerce_query(spec))
        return await self._touch_all(hits)

    # ── Update / delete ───────────────────────────────────────

    async def update(self, memory_id: str, **fields: Any) -> Memory:
        """Edit content or metadata. Bumps ``version`` by one and stamps ``last_updated``."""
        await self._ensure_open()
        fields = normalize_keys(fields)
        rejected = sorted(set(fields) - _UPDATABLE_FIELDS)
        if rejected:
            raise ValidationError(f"Fields cannot be updated: {', '.join(rejected)}")
        coerced = {name: _coerce_field(name, value) for name, value in fields.items()}

        async with self._lock_for(memory_id):
            old = await self.store.get(memory_id)
            new = copy.deepcopy(old)
            for name, value in coerced.items():
                setattr(new, name, value)
            if new.content != old.content:
                new.entities = _unique([*new.entities, *extract_entities(new.content)])
            new.version = old.version + 1
            new.last_updated = self._clock()
            validate(new)
            await self.store.put(new, backup=True)
            await self._commit(self.index.on_update, old, new)

        logger.info("Updated memory %s to v%d (%s)", memory_id, new.version, ", ".join(coerced))
        return new

    async def delete(self, memory_id: str) -> bool:
        """Hard delete. Returns False if there was nothing to delete."""
        await self._ensure_open()
        async with self._lock_for(memory_id):
            removed = await self.store.remove(memory_id)
        self._drop_lock(memory_id)
        if removed or memory_id in self.index:
            await self._commit(self.index.on_remove, memory_id)
        if removed:
            logger.info("Deleted memory %s", memory_id)
        return removed

    # ── Maintenance ───────────────────────────────────────────

    async def maintenance(self, operation: str, **params: Any) -> MaintenanceReport:
        """Run ``decay``, ``archive``, ``stats`` or ``consolidate`` over the store."""
        op = _OPERATION_ALIASES.get(operation, operation)
        if op == "decay":
            return await self.decay(params.get("half_life_days"))
        if op == "archive":
            age = params.get("age_days", params.get("older_than_days"))
            return await self.archive(age, params.get("relevance_floor"))
        if op == "stats":
            stats = await self.get_stats()
            return MaintenanceReport(
                operation="stats", processed=stats.total, details=stats.to_dict()
            )
        if op == "consolidate":
            result = await self.consolidate(
                params.get("strategy", "summary"),
                params.get("threshold"),
                bool(params.get("dry_run", False)),
            )
            return MaintenanceReport(
                operation="consolidate",
                processed=result.merged + result.remaining,
                changed=result.merged,
                failed=result.failed,
                errors=result.errors,
                details=result.to_dict(),
            )
        raise ValidationError(f"Unknown maintenance operation: {operation}")

    async def _sweep(
        self,
        report: MaintenanceReport,
        step: Callable[[Memory], bool],
    ) -> MaintenanceReport:
        """Apply ``step`` to every record, persisting those it changes.

        Per-record failures are counted and the sweep moves on.
        """
        await self._ensure_open()
        for memory_id in await asyncio.to_thread(self.store.list_ids):
            async with self._lock_for(memory_id):
                try:
                    memory = await self.store.get(memory_id)
                    report.processed += 1
                    if step(memory):
                        await self.store.put(memory)
                        report.changed += 1
                except NotFound:
                    continue
                except StorageError as e:
                    report.failed += 1
                    report.errors.append(f"{memory_id}: {e}")
                    logger.error("%s failed for %s: %s", report.operation, memory_id, e)
        if report.changed:
            self.index.invalidate_stats()
        logger.info(
            "%s: %d processed, %d changed, %d failed",
            report.operation.capitalize(),
            report.processed,
            report.changed,
            report.failed,
        )
        return report

    async def decay(self, half_life_days: float | None = None) -> MaintenanceReport:
        """Half-life decay of every active record since its last access or decay."""
        half_life = self.half_life_days if half_life_days is None else float(half_life_days)
        if half_life <= 0:
            raise ValidationError("half_life_days must be positive")
        now = self._clock()
        report = MaintenanceReport(operation="decay", details={"half_life_days": half_life})
        return await self._sweep(report, lambda m: apply_decay(m, half_life, now))

    async def archive(
        self,
        age_days: float | None = None,
        relevance_floor: float | None = None,
    ) -> MaintenanceReport:
        """Archive records older than ``age_days`` whose relevance fell below the floor."""
        age = self.archive_age_days if age_days is None else float(age_days)
        floor = self.archive_relevance_floor if relevance_floor is None else float(relevance_floor)
        if age < 0:
            raise ValidationError("age_days must not be negative")
        now = self._clock()
        report = MaintenanceReport(
            operation="archive", details={"age_days": age, "relevance_floor": floor}
        )

        def step(memory: Memory) -> bool:
            if not is_archivable(memory, age, floor, now):
                return False
            memory.archived = True
            return True

        return await self._sweep(report, step)

    async def get_stats(self) -> MemoryStats:
        """Aggregate counters, served from ``_stats.json`` unless a write made it stale."""
        await self._ensure_open()
        if not self.index.stats_dirty:
            cached = await asyncio.to_thread(self.index.load_stats)
            if cached is not None:
                return cached
        records, _ = await self.store.load_all()
        stats = compute_stats(records)
        async with self._index_lock:
            try:
                await asyncio.to_thread(self.index.save_stats, stats)
            except StorageError as e:
                logger.error("Stats save failed: %s", e)
        return stats

    # ── Chains ────────────────────────────────────────────────

    async def get_chain(
        self,
        memory_id: str,
        depth: int | None = None,
        include_content: bool = False,
    ) -> list[Memory]:
        """The root and every memory within ``depth`` related-hops, root first.

        Without ``include_content`` each member's content is cut to a preview.
        """
        depth = self.chain_depth if depth is None else depth
        if isinstance(depth, bool) or not isinstance(depth, int):
            raise ValidationError(f"depth must be an integer, got {depth!r}")
        if not 1 <= depth <= MAX_CHAIN_DEPTH:
            raise ValidationError(f"depth must be an integer from 1 to {MAX_CHAIN_DEPTH}")
        await self._ensure_open()
        records, _ = await self.store.load_all()
        by_id = {m.id: m for m in records}
        if memory_id not in by_id:
            raise NotFound(memory_id)

        members = await self._touch_all(by_id[i] for i in build_chain(memory_id, depth, by_id))
        if not include_content:
            for member in members:
                member.content = _preview(member.content)
        return members

    # ── Consolidation ─────────────────────────────────────────

    async def find_similar(self, threshold: float | None = None) -> list[SimilarityResult]:
        """Advisory merge candidates among active records. Nothing is changed."""
        await self._ensure_open()
        records, _ = await self.store.load_all()
        active = [m for m in records if not m.archived]
        return find_consolidation_candidates(
            active, self.merge_threshold if threshold is None else threshold
        )

    async def consolidate(
        self,
        strategy: str = "summary",
        threshold: float | None = None,
        dry_run: bool = False,
    ) -> ConsolidationReport:
        """Merge duplicate groups into their most recent member and delete the rest.

        Safe to re-run: leftovers from an interrupted run (records already
        listed in a survivor's ``consolidated_from``) are deleted first.
        """
        if strategy not in ("summary", "similarity"):
            raise ValidationError(f"Unknown consolidation strategy: {strategy}")
        threshold = self.merge_threshold if threshold is None else float(threshold)
        await self._ensure_open()
        report = ConsolidationReport(dry_run=dry_run)

        records, _ = await self.store.load_all()
        if not dry_run:
            records = await self._purge_absorbed(records, report)

        for group in plan_consolidation(records, strategy, threshold):  # type: ignore[arg-type]
            report.groups[group.survivor.id] = [m.id for m in group.absorbed]
            if dry_run:
                report.merged += len(group.absorbed)
                continue
            try:
                report.merged += await self._merge_group(group.survivor.id, group.absorbed)
            except (NotFound, StorageError, ValidationError) as e:
                report.failed += 1
                report.errors.append(f"{group.survivor.id}: {e}")
                logger.error("Consolidation into %s failed: %s", group.survivor.id, e)

        if dry_run:
            report.remaining = len(records) - report.merged
        else:
            report.remaining = len(await asyncio.to_thread(self.store.list_ids))
        logger.info(
            "Consolidation%s: %d merged, %d remaining",
            " (dry run)" if dry_run else "",
            report.merged,
            report.remaining,
        )
        return report

    async def _purge_absorbed(
        self, records: list[Memory], report: ConsolidationReport
    ) -> list[Memory]:
        absorbed = {i for m in records for i in m.consolidated_from}
        kept = []
        for memory in records:
            if memory.id not in absorbed:
                kept.append(memory)
                continue
            logger.warning("Removing %s left over from an earlier consolidation", memory.id)
            try:
                await self._remove(memory.id)
            except StorageError as e:
                report.failed += 1
                report.errors.append(f"{memory.id}: {e}")
        return kept

    async def _remove(self, memory_id: str) -> None:
        async with self._lock_for(memory_id):
            await self.store.remove(memory_id)
        self._drop_lock(memory_id)
        await self._commit(self.index.on_remove, memory_id)

    async def _merge_group(self, survivor_id: str, absorbed: list[Memory]) -> int:
        async with self._lock_for(survivor_id):
            old = await self.store.get(survivor_id)
            fresh = []
            for member in absorbed:
                try:
                    fresh.append(await self.store.get(member.id))
                except NotFound:
                    continue
            if not fresh:
                return 0
            new = merge_into(copy.deepcopy(old), fresh)
            new.version = old.version + 1
            new.last_updated = self._clock()
            await self.store.put(new, backup=True)
            await self._commit(self.index.on_update, old, new)

        for member in fresh:
            await self._remove(member.id)
        logger.info("Merged %d memories into %s", len(fresh), survivor_id)
        return len(fresh)

    # ── Export / import ───────────────────────────────────────

    async def export(
        self,
        query: MemoryQuery | dict[str, Any] | None = None,
        fmt: str = "structured",
    ) -> bytes:
        """Serialize matching memories (archived included unless filtered).

        Exporting is not a read by the agent, so access counts are untouched.
        """
        fmt = parse_format(fmt)
        spec = self._coerce_query(query, defaults={"archived": None})
        memories = await self._run_query(spec, unbounded=True)
        logger.info("Exporting %d memories (%s)", len(memories), fmt)
        return export_memories(memories, fmt, spec.project_id)

    async def import_(
        self,
        data: bytes | str,
        overwrite_existing: bool = False,
        project_id: str | None = None,
    ) -> ImportReport:
        """Load a structured export.

        Entries get fresh ids, except that with ``overwrite_existing`` an
        entry whose id exists replaces that record in place (version + 1).
        Entries whose content already exists with the same type are
        skipped. ``related_memories`` pointing inside the batch follow the
        new ids.
        """
        entries = parse_import(data)
        await self._ensure_open()
        report = ImportReport()

        existing, _ = await self.store.load_all()
        # Only records already stored count; a batch may repeat content across projects
        known_prints = {(m.type, m.project_id, fingerprint(m.content, m.type)) for m in existing}
        existing_ids = {m.id for m in existing}
        taken = set(existing_ids)

        plan: list[tuple[Memory, bool]] = []
        id_map: dict[str, str] = {}
        for entry in entries:
            try:
                memory = memory_from_import(entry)
                memory.content = memory.content.strip()
                if project_id:
                    memory.project_id = project_id
                validate(memory)
            except ValidationError as e:
                report.failed += 1
                report.errors.append(str(e))
                continue

            source_id = memory.id
            if overwrite_existing and source_id in existing_ids:
                plan.append((memory, True))
                id_map[source_id] = source_id
                continue
            digest = (memory.type, memory.project_id, fingerprint(memory.content, memory.type))
            if digest in known_prints:
                report.skipped += 1
                continue

            new_id = generate_memory_id(memory.created)
            while new_id in taken:
                new_id = generate_memory_id(memory.created)
            taken.add(new_id)
            memory.id = new_id
            memory.version = 1
            memory.access_count = 0
            if source_id:
                id_map[source_id] = new_id
            plan.append((memory, False))

        for memory, overwrite in plan:
            memory.related_memories = _unique(id_map.get(r, r) for r in memory.related_memories)
            try:
                if overwrite:
                    await self._overwrite(memory)
                    report.overwritten += 1
                else:
                    await self.store.put(memory)
                    await self._commit(self.index.on_insert, memory)
                    report.imported += 1
            except (NotFound, StorageError, ValidationError) as e:
                report.failed += 1
                report.errors.append(f'Failed to import memory "{memory.summary}": {e}')

        logger.info(
            "Import: %d imported, %d overwritten, %d skipped, %d failed",
            report.imported,
            report.overwritten,
            report.skipped,
            report.failed,
        )
        return report

    async def _overwrite(self, memory: Memory) -> None:
        async with self._lock_for(memory.id):
            old = await self.store.get(memory.id)
            memory.created = old.created
            memory.version = old.version + 1
            memory.last_updated = self._clock()
            # Usage history never goes backwards on overwrite
            memory.access_count = max(old.access_count, memory.access_count)
            memory.last_accessed = max(old.last_accessed, memory.last_accessed)
            await self.store.put(memory, backup=True)
            await self._commit(self.index.on_update, old, memory)

    # ── Analytics ─────────────────────────────────────────────

    async def analytics(
        self,
        time_range: str = "month",
        project_id: str | None = None,
        include_archived: bool = False,
        group_by: str = "type",
    ) -> dict[str, Any]:
        """Distribution, timeline, insights and recommendations for a time window."""
        now = self._clock()
        try:
            start = range_start(time_range, now)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        query = MemoryQuery(
            project_id=project_id,
            date_start=start,
            archived=None if include_archived else False,
        )
        memories = await self._run_query(query, unbounded=True)
        return build_report(memories, time_range, group_by, now)
