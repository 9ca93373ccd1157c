"""Keyword triggers: decide whether a piece of agent text is worth remembering.

The hooks here are fire-and-forget. A duplicate submission is logged and
dropped; validation and storage errors still propagate.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from memkeep.errors import DuplicateError
from memkeep.memory.models import Memory, MemoryType

if TYPE_CHECKING:
    from memkeep.memory.service import MemoryService

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 100

# Checked in this order; the first type with any keyword hit wins.
TRIGGER_PATTERNS: dict[MemoryType, tuple[tuple[str, ...], float]] = {
    MemoryType.BREAKTHROUGH: (
        (
            "solved", "fixed", "discovered", "realized", "breakthrough", "aha",
            "figured out", "found the issue", "finally",
        ),
        0.7,
    ),
    MemoryType.DECISION: (
        ("decided", "chose", "will use", "going with", "selected", "opted for", "determined"),
        0.6,
    ),
    MemoryType.FEEDBACK: (
        (
            "good work", "great job", "thanks", "excellent", "perfect", "well done",
            "awesome", "appreciate",
        ),
        0.8,
    ),
    MemoryType.ERROR_RECOVERY: (
        ("resolved error", "fixed bug", "error was", "issue was", "problem solved", "debugging"),
        0.7,
    ),
    MemoryType.PATTERN: (
        ("pattern", "recurring", "again", "similar to", "like before", "same issue",
         "keeps happening"),
        0.6,
    ),
    MemoryType.USER_PREFERENCE: (
        ("prefer", "like this", "always", "usually", "my style", "i want", "please always"),
        0.6,
    ),
}

_SUMMARY_PREFIX = {
    MemoryType.BREAKTHROUGH: "Breakthrough: ",
    MemoryType.DECISION: "Decision made: ",
    MemoryType.ERROR_RECOVERY: "Error resolved: ",
    MemoryType.PATTERN: "Pattern identified: ",
}
_FIXED_SUMMARY = {
    MemoryType.FEEDBACK: "Positive feedback received",
    MemoryType.USER_PREFERENCE: "User preference noted",
}

_TOPIC_TAGS = (
    ("testing", ("test",)),
    ("debugging", ("bug", "error")),
    ("performance", ("performance",)),
    ("security", ("security",)),
    ("api", ("api",)),
    ("database", ("database",)),
)

_EXTENSION_RE = re.compile(r"\w\.([A-Za-z][A-Za-z0-9]{0,7})\b")


@dataclass
class TriggerContext:
    """Where the text came from; copied onto the recorded memory."""

    project_id: str | None = None
    task_id: str | None = None
    files: list[str] = field(default_factory=list)
    recent_actions: list[str] = field(default_factory=list)

    def snapshot(self) -> dict[str, Any]:
        return {"files": list(self.files), "recentActions": list(self.recent_actions)}


@dataclass
class TriggerResult:
    type: MemoryType
    confidence: float
    summary: str
    content: str
    tags: list[str] = field(default_factory=list)


def generate_summary(memory_type: MemoryType, content: str) -> str:
    if memory_type in _FIXED_SUMMARY:
        return _FIXED_SUMMARY[memory_type]
    first_line = content.strip().split("\n", 1)[0][:SUMMARY_MAX_CHARS]
    return _SUMMARY_PREFIX.get(memory_type, "") + first_line


def extract_tags(content: str, memory_type: MemoryType) -> list[str]:
    """Type, file extensions mentioned, and a few topic keywords."""
    tags = [memory_type.value]
    tags.extend(ext.lower() for ext in _EXTENSION_RE.findall(content))
    lowered = content.lower()
    for tag, needles in _TOPIC_TAGS:
        if any(n in lowered for n in needles):
            tags.append(tag)
    return list(dict.fromkeys(tags))


def analyze_trigger(text: str) -> TriggerResult | None:
    """Classify ``text`` by keyword; None if nothing memory-worthy was found.

    Confidence starts at the type's floor and rises 0.1 per matched
    keyword, capped at 0.95.
    """
    if not text or not text.strip():
        return None
    lowered = text.lower()
    for memory_type, (keywords, min_confidence) in TRIGGER_PATTERNS.items():
        matches = sum(1 for k in keywords if k in lowered)
        if matches:
            return TriggerResult(
                type=memory_type,
                confidence=min(0.95, min_confidence + 0.1 * matches),
                summary=generate_summary(memory_type, text),
                content=text.strip(),
                tags=extract_tags(text, memory_type),
            )
    return None


async def _record(service: MemoryService, **kwargs: Any) -> Memory | None:
    try:
        return await service.record(**kwargs)
    except DuplicateError as e:
        logger.info("Trigger skipped, already remembered as %s", e.existing.id)
        return None


async def _record_trigger(
    service: MemoryService,
    trigger: TriggerResult,
    extra_tags: list[str],
    project_id: str | None,
    task_id: str | None,
    snapshot: dict[str, Any],
) -> Memory | None:
    return await _record(
        service,
        content=trigger.content,
        summary=trigger.summary,
        type=trigger.type,
        confidence=trigger.confidence,
        tags=[*trigger.tags, *extra_tags],
        project_id=project_id,
        task_id=task_id,
        context_snapshot=snapshot,
        trigger_context=trigger.type.value,
    )


async def on_task_complete(
    service: MemoryService,
    task_id: str,
    notes: str | None,
    *,
    task_name: str | None = None,
    project_id: str | None = None,
    verified: bool = False,
) -> Memory | None:
    """Remember completion (or verification) notes that carry a trigger."""
    trigger = analyze_trigger(notes or "")
    if trigger is None:
        return None
    status = "verified" if verified else "completed"
    return await _record_trigger(
        service,
        trigger,
        ["task-verification" if verified else "task-completion"],
        project_id,
        task_id,
        {"taskContext": {"taskId": task_id, "taskName": task_name, "taskStatus": status}},
    )


async def on_user_feedback(
    service: MemoryService,
    feedback: str,
    context: TriggerContext | None = None,
) -> Memory | None:
    """Remember user feedback; other kinds of trigger are ignored here."""
    trigger = analyze_trigger(feedback)
    if trigger is None or trigger.type != MemoryType.FEEDBACK:
        return None
    context = context or TriggerContext()
    return await _record_trigger(
        service, trigger, ["user-feedback"], context.project_id, context.task_id, context.snapshot()
    )


async def on_error_recovery(
    service: MemoryService,
    error: str,
    solution: str,
    context: TriggerContext | None = None,
) -> Memory | None:
    """Always recorded: an error and the fix that resolved it."""
    context = context or TriggerContext()
    error = error.strip()
    summary = error if len(error) <= 50 else f"{error[:50]}..."
    return await _record(
        service,
        content=f"Error: {error}\n\nSolution: {solution.strip()}",
        summary=f"Error resolved: {summary}",
        type=MemoryType.ERROR_RECOVERY,
        confidence=0.9,
        tags=["error-recovery", "debugging"],
        project_id=context.project_id,
        task_id=context.task_id,
        context_snapshot=context.snapshot(),
        trigger_context="error_recovery",
    )


async def analyze_text_for_memory(
    service: MemoryService,
    text: str,
    context: TriggerContext | None = None,
) -> TriggerResult | None:
    """Record ``text`` if it carries any trigger. Returns the analysis."""
    trigger = analyze_trigger(text)
    if trigger is None:
        return None
    context = context or TriggerContext()
    await _record_trigger(
        service, trigger, [], context.project_id, context.task_id, context.snapshot()
    )
    return trigger
