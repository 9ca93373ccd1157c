"""Relevance decay, access boosting, archival, consolidation and chains.

Pure functions over Memory objects. Persisting the results is the
service's job, so every step here is CPU-only and never suspends.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Literal, Mapping

from memkeep.memory.models import Memory, MemoryType, clamp_score, normalize_summary, utcnow
from memkeep.memory.similarity import DEFAULT_MERGE_THRESHOLD, find_consolidation_candidates

DEFAULT_HALF_LIFE_DAYS = 30.0
DEFAULT_ARCHIVE_AGE_DAYS = 90.0
ARCHIVE_RELEVANCE_FLOOR = 0.3
DEFAULT_ACCESS_BOOST = 0.02
DEFAULT_CHAIN_DEPTH = 2
MAX_CHAIN_DEPTH = 5

ConsolidationStrategy = Literal["summary", "similarity"]

TYPE_IMPORTANCE = {
    MemoryType.BREAKTHROUGH: 0.9,
    MemoryType.ERROR_RECOVERY: 0.8,
    MemoryType.DECISION: 0.7,
    MemoryType.PATTERN: 0.7,
    MemoryType.USER_PREFERENCE: 0.6,
    MemoryType.FEEDBACK: 0.5,
}

_SECONDS_PER_DAY = 86400.0


def _days_between(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds() / _SECONDS_PER_DAY)


# ── Access hook ──────────────────────────────────────────────


def apply_access(
    memory: Memory,
    boost: float = DEFAULT_ACCESS_BOOST,
    now: datetime | None = None,
) -> Memory:
    """Record one read: count it, stamp it, nudge relevance up (never down)."""
    memory.access_count += 1
    memory.last_accessed = now or utcnow()
    memory.relevance_score = clamp_score(memory.relevance_score + max(0.0, boost))
    return memory


# ── Decay ────────────────────────────────────────────────────


def decay_anchor(memory: Memory) -> datetime:
    """Decay runs from whichever is later: the last read or the last decay pass."""
    if memory.last_decayed and memory.last_decayed > memory.last_accessed:
        return memory.last_decayed
    return memory.last_accessed


def decay_score(
    memory: Memory,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    now: datetime | None = None,
) -> float:
    """Exponential half-life decay of the current score. Never increases it."""
    if half_life_days <= 0:
        raise ValueError("half_life_days must be positive")
    elapsed = _days_between(decay_anchor(memory), now or utcnow())
    factor = math.pow(0.5, elapsed / half_life_days)
    return clamp_score(memory.relevance_score * factor)


def apply_decay(
    memory: Memory,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    now: datetime | None = None,
) -> bool:
    """Decay a non-archived memory in place. Returns True if the score moved.

    Stamping ``last_decayed`` makes an immediate second pass a no-op.
    """
    if memory.archived:
        return False
    now = now or utcnow()
    new_score = decay_score(memory, half_life_days, now)
    changed = new_score != memory.relevance_score
    memory.relevance_score = new_score
    memory.last_decayed = now
    return changed


# ── Archival ─────────────────────────────────────────────────


def is_archivable(
    memory: Memory,
    age_days: float = DEFAULT_ARCHIVE_AGE_DAYS,
    relevance_floor: float = ARCHIVE_RELEVANCE_FLOOR,
    now: datetime | None = None,
) -> bool:
    if memory.archived:
        return False
    cutoff = (now or utcnow()) - timedelta(days=age_days)
    return memory.created < cutoff and memory.relevance_score < relevance_floor


# ── Consolidation ────────────────────────────────────────────


@dataclass
class ConsolidationGroup:
    survivor: Memory
    absorbed: list[Memory] = field(default_factory=list)


def _pick_survivor(group: list[Memory]) -> Memory:
    return max(group, key=lambda m: (m.created, m.id))


def plan_consolidation(
    records: Iterable[Memory],
    strategy: ConsolidationStrategy = "summary",
    threshold: float = DEFAULT_MERGE_THRESHOLD,
) -> list[ConsolidationGroup]:
    """Group duplicate candidates; the most recently created member survives.

    ``summary`` groups by type, project and normalized summary. ``similarity``
    joins the advisory same-type, same-project pairs transitively (union-find).
    """
    records = list(records)
    groups: list[list[Memory]]

    if strategy == "summary":
        by_key: dict[tuple[str, str, str], list[Memory]] = {}
        for memory in records:
            key = (memory.type.value, memory.project_id or "", normalize_summary(memory.summary))
            by_key.setdefault(key, []).append(memory)
        groups = [g for g in by_key.values() if len(g) > 1]
    elif strategy == "similarity":
        by_id = {m.id: m for m in records}
        parent = {m.id: m.id for m in records}

        def find(x: str) -> str:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for pair in find_consolidation_candidates(records, threshold):
            a, b = find(pair.first_id), find(pair.second_id)
            if a != b:
                parent[b] = a
        clusters: dict[str, list[Memory]] = {}
        for memory_id in by_id:
            clusters.setdefault(find(memory_id), []).append(by_id[memory_id])
        groups = [g for g in clusters.values() if len(g) > 1]
    else:
        raise ValueError(f"Unknown consolidation strategy: {strategy}")

    plan = []
    for group in groups:
        survivor = _pick_survivor(group)
        absorbed = sorted((m for m in group if m.id != survivor.id), key=lambda m: m.created)
        plan.append(ConsolidationGroup(survivor=survivor, absorbed=absorbed))
    plan.sort(key=lambda g: g.survivor.id)
    return plan


def _union(first: list[str], *others: Iterable[str]) -> list[str]:
    seen = set(first)
    merged = list(first)
    for items in others:
        for item in items:
            if item not in seen:
                seen.add(item)
                merged.append(item)
    return merged


def merge_into(survivor: Memory, absorbed: list[Memory]) -> Memory:
    """Fold ``absorbed`` into ``survivor`` in place; provenance is append-only."""
    absorbed_ids = {m.id for m in absorbed}
    survivor.tags = _union(survivor.tags, *(m.tags for m in absorbed))
    survivor.entities = _union(survivor.entities, *(m.entities for m in absorbed))
    related = _union(survivor.related_memories, *(m.related_memories for m in absorbed))
    survivor.related_memories = [
        r for r in related if r not in absorbed_ids and r != survivor.id
    ]
    survivor.consolidated_from = _union(
        survivor.consolidated_from,
        *([m.id, *m.consolidated_from] for m in absorbed),
    )
    survivor.relevance_score = clamp_score(
        max([survivor.relevance_score, *(m.relevance_score for m in absorbed)])
    )
    survivor.confidence = clamp_score(max([survivor.confidence, *(m.confidence for m in absorbed)]))
    survivor.metadata = {
        **survivor.metadata,
        "consolidatedCount": len(survivor.consolidated_from) + 1,
    }
    return survivor


# ── Chains ───────────────────────────────────────────────────


def build_chain(
    root_id: str,
    depth: int,
    records: Mapping[str, Memory],
) -> list[str]:
    """Breadth-first walk of ``related_memories`` up to ``depth`` hops.

    Edges are followed in both directions. Ids that no longer exist are
    skipped. Returns each reachable id once, root first, in BFS order.
    """
    if root_id not in records:
        return []

    adjacency: dict[str, list[str]] = {memory_id: [] for memory_id in records}
    for memory_id, memory in records.items():
        for related in memory.related_memories:
            if related in records and related != memory_id:
                adjacency[memory_id].append(related)
                adjacency[related].append(memory_id)

    visited = {root_id}
    order = [root_id]
    queue: deque[tuple[str, int]] = deque([(root_id, 0)])
    while queue:
        current, hops = queue.popleft()
        if hops >= depth:
            continue
        for neighbour in adjacency[current]:
            if neighbour not in visited:
                visited.add(neighbour)
                order.append(neighbour)
                queue.append((neighbour, hops + 1))
    return order


# ── Importance / analytics ───────────────────────────────────


def importance_score(memory: Memory, now: datetime | None = None) -> float:
    """Blend of recency (90-day scale), access volume, confidence and type weight."""
    age_days = _days_between(memory.created, now or utcnow())
    recency = math.exp(-age_days / 90)
    access = min(1.0, math.log10(memory.access_count + 1) / 2)
    return (
        recency * 0.3
        + access * 0.2
        + memory.confidence * 0.3
        + TYPE_IMPORTANCE.get(memory.type, 0.5) * 0.2
    )
