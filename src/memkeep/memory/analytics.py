"""Usage analytics over a set of memories."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Iterable, Literal

from memkeep.memory.lifecycle import (
    ARCHIVE_RELEVANCE_FLOOR,
    DEFAULT_ARCHIVE_AGE_DAYS,
    importance_score,
)
from memkeep.memory.models import Memory, MemoryType, utcnow

TimeRange = Literal["week", "month", "quarter", "year", "all"]
GroupBy = Literal["type", "project", "tag", "week"]

_RANGE_DAYS = {"week": 7, "month": 30, "quarter": 91, "year": 365}

IMPORTANCE_BUCKETS = (
    (0.8, "Very High (0.8-1.0)"),
    (0.6, "High (0.6-0.8)"),
    (0.4, "Medium (0.4-0.6)"),
    (0.2, "Low (0.2-0.4)"),
    (0.0, "Very Low (0-0.2)"),
)


def range_start(time_range: str, now: datetime | None = None) -> datetime | None:
    """Start of the analytics window, or None for ``all``."""
    if time_range == "all":
        return None
    try:
        return (now or utcnow()) - timedelta(days=_RANGE_DAYS[time_range])
    except KeyError:
        raise ValueError(f"Unknown time range: {time_range}") from None


def by_type(memories: list[Memory]) -> dict[str, int]:
    return dict(Counter(m.type.value for m in memories).most_common())


def by_importance(memories: list[Memory], now: datetime | None = None) -> dict[str, int]:
    buckets = {label: 0 for _, label in IMPORTANCE_BUCKETS}
    for memory in memories:
        score = importance_score(memory, now)
        for floor, label in IMPORTANCE_BUCKETS:
            if score >= floor:
                buckets[label] += 1
                break
    return buckets


def timeline(memories: list[Memory], group_by: str = "type") -> dict[str, dict[str, int]]:
    """Creation counts per period (ISO week for ``week``, month otherwise)."""
    result: dict[str, dict[str, int]] = {}
    for memory in sorted(memories, key=lambda m: m.created):
        if group_by == "week":
            year, week, _ = memory.created.isocalendar()
            period = f"{year}-W{week:02d}"
        else:
            period = memory.created.strftime("%Y-%m")
        if group_by == "type":
            sub = memory.type.value
        elif group_by == "project":
            sub = memory.project_id or "Global"
        elif group_by == "tag":
            sub = memory.tags[0] if memory.tags else "Untagged"
        else:
            sub = "Total"
        bucket = result.setdefault(period, {})
        bucket[sub] = bucket.get(sub, 0) + 1
    return result


def top_tags(memories: list[Memory], n: int = 10) -> list[tuple[str, int]]:
    return Counter(tag for m in memories for tag in m.tags).most_common(n)


def insights(memories: list[Memory], now: datetime | None = None) -> list[str]:
    if not memories:
        return []
    now = now or utcnow()
    notes = []

    counts = by_type(memories)
    top_type, top_count = next(iter(counts.items()))
    notes.append(f"Most recorded memory type: {top_type} ({top_count} memories)")

    oldest = min(m.created for m in memories)
    days = max(1.0, (now - oldest).total_seconds() / 86400)
    notes.append(f"Average memories per day: {len(memories) / days:.2f}")

    most_accessed = max(memories, key=lambda m: m.access_count)
    if most_accessed.access_count:
        notes.append(
            f'Most accessed memory: "{most_accessed.summary}" '
            f"({most_accessed.access_count} accesses)"
        )

    tags = top_tags(memories, 3)
    if tags:
        notes.append("Top tags: " + ", ".join(f"{tag} ({count})" for tag, count in tags))
    return notes


def recommendations(memories: list[Memory], now: datetime | None = None) -> list[str]:
    now = now or utcnow()
    notes = []

    cutoff = now - timedelta(days=DEFAULT_ARCHIVE_AGE_DAYS)
    stale = [
        m
        for m in memories
        if not m.archived and m.created < cutoff and m.relevance_score < ARCHIVE_RELEVANCE_FLOOR
    ]
    if stale:
        notes.append(f"Consider archiving {len(stale)} old memories with low relevance scores")

    counts = by_type(memories)
    sparse = [t.value for t in MemoryType if counts.get(t.value, 0) < 2]
    if sparse:
        notes.append(f"Consider recording more {', '.join(sparse)} memories for better coverage")

    untagged = sum(1 for m in memories if not m.tags)
    if untagged > 5:
        notes.append(f"{untagged} memories lack tags - consider adding tags for better organization")

    if len(memories) > 1000 and not any(m.archived for m in memories):
        notes.append(
            f"With {len(memories)} memories, consider running maintenance to archive old entries"
        )
    return notes


def build_report(
    memories: Iterable[Memory],
    time_range: str = "month",
    group_by: str = "type",
    now: datetime | None = None,
) -> dict[str, Any]:
    memories = list(memories)
    now = now or utcnow()
    confidence = sum(m.confidence for m in memories) / len(memories) if memories else 0.0
    return {
        "time_range": time_range,
        "total": len(memories),
        "active": sum(1 for m in memories if not m.archived),
        "average_confidence": confidence,
        "by_type": by_type(memories),
        "by_importance": by_importance(memories, now),
        "timeline": timeline(memories, group_by),
        "top_tags": top_tags(memories),
        "insights": insights(memories, now),
        "recommendations": recommendations(memories, now),
    }
