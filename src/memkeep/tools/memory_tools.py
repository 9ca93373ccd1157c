"""Agent-facing tools over the memory store.

Each tool is a coroutine returning plain text, so it can be registered as an
MCP tool or called directly. Store errors come back as text, never raised.
"""

from __future__ import annotations

import functools
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from memkeep.errors import DuplicateError, MemkeepError, NotFound
from memkeep.memory import triggers

if TYPE_CHECKING:
    from memkeep.memory.models import Memory
    from memkeep.memory.service import MemoryService

logger = logging.getLogger(__name__)

ToolFn = Callable[..., Awaitable[str]]


def _ts(memory: Memory, name: str) -> str:
    value = getattr(memory, name)
    return value.isoformat(timespec="seconds") if value else "Never"


def _csv(items: list[str]) -> str:
    return ", ".join(items) or "None"


def format_memory(memory: Memory) -> str:
    return (
        "Memory Details:\n\n"
        f"ID: {memory.id}\n"
        f"Type: {memory.type.value}\n"
        f"Version: {memory.version}\n"
        f"Created: {_ts(memory, 'created')}\n"
        f"Last Accessed: {_ts(memory, 'last_accessed')}\n"
        f"Last Updated: {_ts(memory, 'last_updated')}\n"
        f"Access Count: {memory.access_count}\n"
        f"Relevance Score: {memory.relevance_score:.2f}\n"
        f"Confidence: {memory.confidence}\n"
        f"Archived: {'Yes' if memory.archived else 'No'}\n\n"
        f"Summary: {memory.summary}\n\n"
        f"Content:\n{memory.content}\n\n"
        f"Tags: {_csv(memory.tags)}\n"
        f"Entities: {_csv(memory.entities)}\n"
        f"Related Memories: {_csv(memory.related_memories)}\n\n"
        f"Context Snapshot:\n{json.dumps(memory.context_snapshot, indent=2, ensure_ascii=False)}"
    )


def format_listing(memories: list[Memory]) -> str:
    if not memories:
        return "No memories found matching your query."
    lines = []
    for i, m in enumerate(memories, 1):
        entry = (
            f"{i}. [{m.type.value.upper()}] {m.summary}\n"
            f"   ID: {m.id} | Created: {_ts(m, 'created')}\n"
            f"   Relevance: {m.relevance_score:.2f} | Access Count: {m.access_count}\n"
            f"   Tags: {_csv(m.tags)}"
        )
        if m.archived:
            entry += "\n   ARCHIVED"
        lines.append(entry)
    return (
        f"Found {len(memories)} memories:\n\n"
        + "\n\n".join(lines)
        + "\n\nUse 'get_memory' with a specific ID to view full content."
    )


def format_chain(chain: list[Memory], include_content: bool) -> str:
    root = chain[0]
    out = [f'## Memory Chain for "{root.summary}"', "", f"Found {len(chain)} related memories:", ""]
    for i, m in enumerate(chain, 1):
        relationship = "ROOT" if i == 1 else "RELATED"
        out += [
            f"### {i}. [{relationship}] {m.summary}",
            f"- **ID:** {m.id}",
            f"- **Type:** {m.type.value}",
            f"- **Created:** {_ts(m, 'created')}",
            f"- **Tags:** {_csv(m.tags)}",
        ]
        label = "Content" if include_content else "Content Preview"
        out += [f"- **{label}:** {m.content}", ""]
    return "\n".join(out)


def _text_errors(action: str) -> Callable[[ToolFn], ToolFn]:
    """Render store errors as the tool's text result."""

    def decorator(fn: ToolFn) -> ToolFn:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> str:
            try:
                return await fn(*args, **kwargs)
            except NotFound as e:
                return f"Memory with ID {e.memory_id} not found."
            except DuplicateError as e:
                m = e.existing
                return (
                    f"A similar memory already exists (created {_ts(m, 'created')}):\n\n"
                    f"ID: {m.id}\nType: {m.type.value}\nSummary: {m.summary}\n\n"
                    "The new memory was not created to avoid duplication. "
                    "Consider updating the existing memory if you have additional insights."
                )
            except MemkeepError as e:
                logger.warning("%s failed: %s", action, e)
                return f"Error {action}: {e}"

        return wrapper

    return decorator


def get_memory_tools(service: MemoryService) -> dict[str, ToolFn]:
    """Return a dict of tool_name -> coroutine function for memory operations."""

    @_text_errors("recording memory")
    async def record_memory(
        content: str,
        summary: str,
        type: str,
        tags: list[str] | None = None,
        entities: list[str] | None = None,
        project_id: str | None = None,
        task_id: str | None = None,
        confidence: float = 0.8,
        related_memories: list[str] | None = None,
        context_snapshot: dict | None = None,
        metadata: dict | None = None,
    ) -> str:
        """Record a new memory (breakthrough, decision, feedback, error_recovery, ...)."""
        memory = await service.record(
            content,
            summary,
            type,
            tags=tags,
            entities=entities,
            project_id=project_id,
            task_id=task_id,
            confidence=confidence,
            related_memories=related_memories,
            context_snapshot=context_snapshot,
            metadata=metadata,
            trigger_context="Manual recording via memory tool",
        )
        return (
            "Memory recorded successfully!\n\n"
            f"ID: {memory.id}\n"
            f"Type: {memory.type.value}\n"
            f"Summary: {memory.summary}\n"
            f"Project: {memory.project_id or 'Global'}\n"
            f"Task: {memory.task_id or 'None'}\n"
            f"Tags: {_csv(memory.tags)}\n"
            f"Entities: {_csv(memory.entities)}\n"
            f"Confidence: {memory.confidence}\n"
            f"Relevance Score: {memory.relevance_score}\n\n"
            "The memory has been stored and indexed for future retrieval."
        )

    @_text_errors("querying memories")
    async def query_memory(**spec: Any) -> str:
        """Search memories by filters, free text and context."""
        return format_listing(await service.query(spec))

    @_text_errors("retrieving memory")
    async def get_memory(memory_id: str) -> str:
        """Full details of one memory."""
        return format_memory(await service.get(memory_id))

    @_text_errors("updating memory")
    async def update_memory(memory_id: str, **updates: Any) -> str:
        memory = await service.update(memory_id, **updates)
        return (
            "Memory updated successfully!\n\n"
            f"ID: {memory.id}\n"
            f"Version: {memory.version} (incremented)\n"
            f"Last Updated: {_ts(memory, 'last_updated')}\n\n"
            "The previous version is preserved in the version history."
        )

    @_text_errors("deleting memory")
    async def delete_memory(memory_id: str) -> str:
        if not await service.delete(memory_id):
            return f"Memory with ID {memory_id} not found or could not be deleted."
        return f"Memory {memory_id} has been successfully deleted."

    @_text_errors("in maintenance operation")
    async def memory_maintenance(operation: str, **params: Any) -> str:
        """Run archive, decay, stats or consolidate over the whole store."""
        report = await service.maintenance(operation, **params)
        if report.operation == "stats":
            stats = report.details
            by_type = "\n".join(f"  {t}: {c}" for t, c in stats["by_type"].items()) or "  None"
            by_project = (
                "\n".join(f"  {p}: {c}" for p, c in stats["by_project"].items()) or "  None"
            )
            return (
                "Memory System Statistics:\n\n"
                f"Total Memories: {stats['total']}\n"
                f"Archived: {stats['archived']}\n\n"
                f"By Type:\n{by_type}\n\n"
                f"By Project:\n{by_project}\n\n"
                f"Average Relevance Score: {stats['average_relevance']:.2f}\n"
                f"Last Updated: {stats['last_updated']}"
            )
        text = (
            f"Maintenance '{report.operation}' finished: {report.processed} processed, "
            f"{report.changed} changed."
        )
        if report.partial:
            text += f"\n{report.failed} failed:\n" + "\n".join(f"- {e}" for e in report.errors)
        return text

    @_text_errors("retrieving memory chain")
    async def get_memory_chain(
        memory_id: str, depth: int = 2, include_content: bool = False
    ) -> str:
        """The memory and everything related to it within ``depth`` hops."""
        chain = await service.get_chain(memory_id, depth, include_content)
        return format_chain(chain, include_content)

    @_text_errors("consolidating memories")
    async def consolidate_memories(
        confirm: bool = False,
        strategy: str = "summary",
        threshold: float | None = None,
    ) -> str:
        """Merge duplicate memories. Without ``confirm`` only reports what would merge."""
        report = await service.consolidate(strategy, threshold, dry_run=not confirm)
        if report.dry_run:
            return (
                "Memory Consolidation Report:\n\n"
                f"Memories that would be consolidated: {report.merged}\n"
                f"Total memories after consolidation: {report.remaining}\n\n"
                "Run with 'confirm' parameter to actually consolidate memories."
            )
        text = (
            "Memory consolidation complete:\n\n"
            f"Memories merged: {report.merged}\n"
            f"Memories remaining: {report.remaining}"
        )
        if report.errors:
            text += "\n\nErrors:\n" + "\n".join(f"- {e}" for e in report.errors)
        return text

    @_text_errors("exporting memories")
    async def export_memories(
        format: str = "structured",
        output_path: str | None = None,
        **filters: Any,
    ) -> str:
        """Export memories; written to ``output_path`` when given, returned otherwise."""
        data = await service.export(filters or None, format)
        if output_path is None:
            return data.decode("utf-8")
        path = Path(output_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return f"Memories exported to {path} ({len(data)} bytes)"

    @_text_errors("importing memories")
    async def import_memories(
        file_path: str,
        overwrite_existing: bool = False,
        project_id: str | None = None,
    ) -> str:
        try:
            data = Path(file_path).expanduser().read_bytes()
        except OSError as e:
            return f"Error importing memories: cannot read {file_path}: {e}"
        report = await service.import_(data, overwrite_existing, project_id)
        text = (
            "Import completed:\n\n"
            f"- Successfully imported: {report.imported} memories\n"
            f"- Overwritten: {report.overwritten} memories\n"
            f"- Skipped (already present): {report.skipped} memories\n"
            f"- Failed: {report.failed} memories\n"
        )
        if project_id:
            text += f"- All memories assigned to project: {project_id}\n"
        if report.errors:
            text += "\nErrors:\n" + "\n".join(f"- {e}" for e in report.errors[:10])
        return text

    @_text_errors("generating analytics")
    async def memory_analytics(
        time_range: str = "month",
        project_id: str | None = None,
        include_archived: bool = False,
        group_by: str = "type",
    ) -> str:
        report = await service.analytics(time_range, project_id, include_archived, group_by)
        lines = [
            f"# Memory Analytics ({report['time_range']})",
            "",
            f"Total memories: {report['total']} ({report['active']} active)",
            f"Average confidence: {report['average_confidence']:.2f}",
            "",
            "## By Type",
            *(f"- {t}: {c}" for t, c in report["by_type"].items()),
            "",
            "## By Importance",
            *(f"- {label}: {c}" for label, c in report["by_importance"].items()),
            "",
            "## Timeline",
            *(
                f"- {period}: " + ", ".join(f"{k} {v}" for k, v in counts.items())
                for period, counts in report["timeline"].items()
            ),
        ]
        if report["insights"]:
            lines += ["", "## Insights", *(f"- {i}" for i in report["insights"])]
        if report["recommendations"]:
            lines += ["", "## Recommendations", *(f"- {r}" for r in report["recommendations"])]
        return "\n".join(lines)

    @_text_errors("analyzing text")
    async def analyze_text_for_memory(
        text: str,
        project_id: str | None = None,
        task_id: str | None = None,
        files: list[str] | None = None,
        recent_actions: list[str] | None = None,
    ) -> str:
        """Record ``text`` as a memory when it carries a trigger keyword."""
        context = triggers.TriggerContext(
            project_id=project_id,
            task_id=task_id,
            files=list(files or []),
            recent_actions=list(recent_actions or []),
        )
        result = await triggers.analyze_text_for_memory(service, text, context)
        if result is None:
            return "No memory-worthy content detected."
        return (
            f"Detected {result.type.value} content (confidence {result.confidence:.2f}).\n\n"
            f"Summary: {result.summary}\n"
            f"Tags: {_csv(result.tags)}\n\n"
            "Recorded as a memory unless an equivalent one already exists."
        )

    return {
        "record_memory": record_memory,
        "query_memory": query_memory,
        "get_memory": get_memory,
        "update_memory": update_memory,
        "delete_memory": delete_memory,
        "memory_maintenance": memory_maintenance,
        "get_memory_chain": get_memory_chain,
        "consolidate_memories": consolidate_memories,
        "export_memories": export_memories,
        "import_memories": import_memories,
        "memory_analytics": memory_analytics,
        "analyze_text_for_memory": analyze_text_for_memory,
    }
