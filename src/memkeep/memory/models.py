"""Data model: memories, queries, derived results and reports."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

SortKey = Literal["relevance", "recency", "access_count"]

DEFAULT_QUERY_LIMIT = 20
MAX_QUERY_LIMIT = 100


class MemoryType(str, Enum):
    BREAKTHROUGH = "breakthrough"
    DECISION = "decision"
    FEEDBACK = "feedback"
    ERROR_RECOVERY = "error_recovery"
    PATTERN = "pattern"
    USER_PREFERENCE = "user_preference"

    @classmethod
    def parse(cls, value: str | MemoryType) -> MemoryType:
        """Accept enum members, values, and hyphenated spellings."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        return cls(normalized)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Turn a persisted timestamp back into an aware datetime.

    YAML may already hand us a datetime; JSON always hands us a string.
    Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_optional_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def clamp_score(value: float) -> float:
    """Clamp a relevance/confidence value to [0, 1]."""
    return min(1.0, max(0.0, float(value)))


# camelCase keys written by older exports and by HTTP clients.
_FIELD_ALIASES = {
    "lastAccessed": "last_accessed",
    "lastUpdated": "last_updated",
    "lastDecayed": "last_decayed",
    "accessCount": "access_count",
    "relevanceScore": "relevance_score",
    "consolidatedFrom": "consolidated_from",
    "projectId": "project_id",
    "taskId": "task_id",
    "relatedMemories": "related_memories",
    "contextSnapshot": "context_snapshot",
    "triggerContext": "trigger_context",
    "allowDuplicate": "allow_duplicate",
    "minRelevance": "min_relevance",
    "searchText": "search_text",
    "includeChains": "include_chains",
    "sortBy": "sort_by",
    "dateRange": "date_range",
    "currentTask": "current_task",
    "currentFiles": "current_files",
    "recentActions": "recent_actions",
}

_TIMESTAMP_FIELDS = ("created", "last_accessed", "last_updated", "last_decayed")


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Map camelCase field names onto their snake_case equivalents."""
    return {_FIELD_ALIASES.get(k, k): v for k, v in data.items()}


@dataclass
class Memory:
    """One persisted memory. Content is fixed at creation; metadata evolves."""

    id: str
    content: str
    summary: str
    type: MemoryType
    version: int = 1
    created: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)
    last_updated: datetime | None = None
    last_decayed: datetime | None = None
    access_count: int = 0
    relevance_score: float = 1.0
    confidence: float = 0.8
    archived: bool = False
    consolidated_from: list[str] = field(default_factory=list)
    supersedes: str | None = None
    project_id: str | None = None
    task_id: str | None = None
    related_memories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    context_snapshot: dict[str, Any] = field(default_factory=dict)
    author: str = "agent"
    metadata: dict[str, Any] = field(default_factory=dict)
    trigger_context: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Plain, JSON/YAML-safe representation with ISO timestamps."""
        data = asdict(self)
        data["type"] = self.type.value
        for name in _TIMESTAMP_FIELDS:
            data[name] = format_timestamp(getattr(self, name))
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Memory:
        """Rebuild a Memory from persisted form, parsing every timestamp.

        Raises KeyError/ValueError/TypeError on malformed input; callers
        translate those into StorageError or ValidationError.
        """
        data = normalize_keys(data)
        known = {f for f in cls.__dataclass_fields__}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["type"] = MemoryType.parse(kwargs["type"])
        kwargs["created"] = parse_timestamp(kwargs["created"])
        kwargs["last_accessed"] = parse_timestamp(
            kwargs.get("last_accessed") or kwargs["created"]
        )
        kwargs["last_updated"] = parse_optional_timestamp(kwargs.get("last_updated"))
        kwargs["last_decayed"] = parse_optional_timestamp(kwargs.get("last_decayed"))
        for name in ("consolidated_from", "related_memories", "tags", "entities"):
            kwargs[name] = [str(v) for v in (kwargs.get(name) or [])]
        for name in ("context_snapshot", "metadata"):
            kwargs[name] = dict(kwargs.get(name) or {})
        kwargs["version"] = int(kwargs.get("version", 1))
        kwargs["access_count"] = int(kwargs.get("access_count", 0))
        kwargs["relevance_score"] = clamp_score(kwargs.get("relevance_score", 1.0))
        kwargs["confidence"] = clamp_score(kwargs.get("confidence", 0.8))
        kwargs["archived"] = bool(kwargs.get("archived", False))
        return cls(**kwargs)


@dataclass
class QueryContext:
    """What the caller is working on right now; used only to re-rank results."""

    current_task: str | None = None
    current_files: list[str] = field(default_factory=list)
    recent_actions: list[str] = field(default_factory=list)


@dataclass
class MemoryQuery:
    """Filter/search/sort specification for QueryEngine.

    ``archived=False`` (default) hides archived memories, ``True`` returns
    only archived ones and ``None`` returns both.
    """

    project_id: str | None = None
    types: list[MemoryType] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    date_start: datetime | None = None
    date_end: datetime | None = None
    min_relevance: float | None = None
    archived: bool | None = False
    search_text: str | None = None
    context: QueryContext | None = None
    sort_by: SortKey = "relevance"
    limit: int = DEFAULT_QUERY_LIMIT
    include_chains: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryQuery:
        """Build a query from the nested ``{filters: {...}, searchText, ...}`` shape.

        Flat keyword dicts are accepted too.
        """
        data = normalize_keys(dict(data))
        filters = normalize_keys(dict(data.pop("filters", None) or {}))
        merged = {**data, **filters}

        date_range = merged.get("date_range") or {}
        sort_by = merged.get("sort_by") or "relevance"
        if sort_by == "accessCount":
            sort_by = "access_count"
        if sort_by not in ("relevance", "recency", "access_count"):
            raise ValueError(f"unknown sort key: {sort_by}")

        min_relevance = merged.get("min_relevance")
        if min_relevance is not None:
            min_relevance = float(min_relevance)
            if not 0.0 <= min_relevance <= 1.0:
                raise ValueError(f"min_relevance must be between 0 and 1, got {min_relevance}")

        limit = merged.get("limit")
        query = cls(
            project_id=merged.get("project_id"),
            types=[MemoryType.parse(t) for t in merged.get("types") or []],
            tags=list(merged.get("tags") or []),
            entities=list(merged.get("entities") or []),
            date_start=parse_optional_timestamp(date_range.get("start")),
            date_end=parse_optional_timestamp(date_range.get("end")),
            min_relevance=min_relevance,
            archived=merged.get("archived", False),
            search_text=merged.get("search_text"),
            sort_by=sort_by,
            limit=DEFAULT_QUERY_LIMIT if limit is None else int(limit),
            include_chains=bool(merged.get("include_chains", False)),
        )
        context = merged.get("context")
        if context:
            context = normalize_keys(dict(context))
            query.context = QueryContext(
                current_task=context.get("current_task"),
                current_files=list(context.get("current_files") or []),
                recent_actions=list(context.get("recent_actions") or []),
            )
        return query


@dataclass
class MemoryStats:
    """Aggregate counters; always recomputable from the record set."""

    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_project: dict[str, int] = field(default_factory=dict)
    average_relevance: float = 0.0
    archived: int = 0
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = format_timestamp(self.last_updated)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryStats:
        return cls(
            total=int(data.get("total", 0)),
            by_type=dict(data.get("by_type") or {}),
            by_project=dict(data.get("by_project") or {}),
            average_relevance=float(data.get("average_relevance", 0.0)),
            archived=int(data.get("archived", 0)),
            last_updated=parse_timestamp(data["last_updated"]),
        )


@dataclass
class SimilarityResult:
    """Advisory pairing of two memories; never persisted."""

    first_id: str
    second_id: str
    similarity: float
    suggest_merge: bool


@dataclass
class MaintenanceReport:
    """Outcome of a full-store maintenance pass."""

    operation: str
    processed: int = 0
    changed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return self.failed > 0

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "partial": self.partial}


@dataclass
class ConsolidationReport:
    merged: int = 0
    remaining: int = 0
    groups: dict[str, list[str]] = field(default_factory=dict)
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportReport:
    imported: int = 0
    overwritten: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_WS_RE = re.compile(r"\s+")


def normalize_summary(summary: str) -> str:
    """Grouping key for summary-based consolidation."""
    return _WS_RE.sub(" ", summary.strip().lower())
