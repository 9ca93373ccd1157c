"""Export and import of memories.

Two export formats: ``structured`` (JSON, re-importable) and ``narrative``
(Markdown grouped by type, for humans). Only structured exports import.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Literal

from memkeep.errors import ValidationError
from memkeep.memory.models import Memory, MemoryType, format_timestamp, utcnow

EXPORT_VERSION = "1.0"

ExportFormat = Literal["structured", "narrative"]

_FORMAT_ALIASES = {
    "structured": "structured",
    "json": "structured",
    "narrative": "narrative",
    "markdown": "narrative",
    "md": "narrative",
}


def parse_format(fmt: str) -> ExportFormat:
    try:
        return _FORMAT_ALIASES[fmt.lower()]  # type: ignore[return-value]
    except (KeyError, AttributeError):
        raise ValidationError(f"Unknown export format: {fmt!r}") from None


def export_structured(
    memories: Iterable[Memory],
    project_id: str | None = None,
    now: datetime | None = None,
) -> bytes:
    memories = list(memories)
    payload = {
        "version": EXPORT_VERSION,
        "exportDate": format_timestamp(now or utcnow()),
        "projectId": project_id,
        "totalMemories": len(memories),
        "memories": [m.to_dict() for m in memories],
    }
    return json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")


def _type_heading(memory_type: MemoryType) -> str:
    return memory_type.value.replace("_", " ").capitalize()


def export_narrative(
    memories: Iterable[Memory],
    project_id: str | None = None,
    now: datetime | None = None,
) -> bytes:
    memories = list(memories)
    lines = [
        "# Memory Export",
        "",
        f"**Export Date:** {format_timestamp(now or utcnow())}",
        f"**Project:** {project_id or 'All projects'}",
        f"**Total Memories:** {len(memories)}",
        "",
    ]

    by_type: dict[MemoryType, list[Memory]] = {}
    for memory in memories:
        by_type.setdefault(memory.type, []).append(memory)

    for memory_type in MemoryType:
        group = by_type.get(memory_type)
        if not group:
            continue
        lines += [f"## {_type_heading(memory_type)} ({len(group)})", ""]
        for m in group:
            lines += [
                f"### {m.summary}",
                "",
                f"- **ID:** {m.id}",
                f"- **Created:** {format_timestamp(m.created)}",
                f"- **Confidence:** {m.confidence}",
                f"- **Relevance:** {m.relevance_score:.2f}",
                f"- **Access Count:** {m.access_count}",
            ]
            if m.tags:
                lines.append(f"- **Tags:** {', '.join(m.tags)}")
            if m.project_id:
                lines.append(f"- **Project:** {m.project_id}")
            if m.archived:
                lines.append("- **Status:** ARCHIVED")
            lines += ["", "**Content:**", m.content, ""]
            if m.entities:
                lines += [f"**Entities:** {', '.join(m.entities)}", ""]
            lines += ["---", ""]

    return "\n".join(lines).encode("utf-8")


def export_memories(
    memories: Iterable[Memory],
    fmt: str = "structured",
    project_id: str | None = None,
) -> bytes:
    if parse_format(fmt) == "structured":
        return export_structured(memories, project_id)
    return export_narrative(memories, project_id)


def parse_import(data: bytes | str) -> list[dict[str, Any]]:
    """Decode a structured export and return its raw memory entries."""
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"Import data is not UTF-8: {e}") from e
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        raise ValidationError(
            "Import data must be a structured (JSON) export produced by the memory store."
        ) from None
    if (
        not isinstance(payload, dict)
        or not payload.get("version")
        or not isinstance(payload.get("memories"), list)
    ):
        raise ValidationError("Invalid import format: expected {version, memories: [...]}")
    return [entry for entry in payload["memories"] if isinstance(entry, dict)]


def memory_from_import(entry: dict[str, Any]) -> Memory:
    """Turn one exported entry into a Memory, raising ValidationError if malformed."""
    data = dict(entry)
    data.setdefault("id", "")
    data.setdefault("created", format_timestamp(utcnow()))
    try:
        return Memory.from_dict(data)
    except (KeyError, ValueError, TypeError) as e:
        summary = entry.get("summary", "?")
        raise ValidationError(f'Failed to import memory "{summary}": {e}') from e
