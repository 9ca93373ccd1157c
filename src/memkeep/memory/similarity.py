"""Lexical similarity, entity extraction and duplicate detection.

Similarity here is token overlap, not embeddings: two memories that say the
same thing in different words score low. That is a known precision limit,
kept so the store has no ML dependency.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable

from memkeep.memory.models import Memory, SimilarityResult, normalize_summary, utcnow

if TYPE_CHECKING:
    from memkeep.memory.models import MemoryType, QueryContext

DUPLICATE_CONTENT_THRESHOLD = 0.95
DEFAULT_MERGE_THRESHOLD = 0.85

STOP_WORDS = frozenset(
    {
        "the", "is", "at", "which", "on", "a", "an", "as", "are", "was", "were",
        "be", "been", "being", "have", "has", "had", "do", "does", "did", "will",
        "would", "could", "should", "may", "might", "must", "can", "shall", "and",
        "or", "but", "for", "from", "with", "into", "onto", "that", "this", "these",
        "those", "then", "than", "there", "their", "they", "them", "its", "our",
        "you", "your", "not", "all", "any", "some", "just", "very", "also", "of",
        "to", "in", "it", "we", "so", "by", "if", "because", "about", "after",
    }
)

_TOKEN_RE = re.compile(r"[\w@./-]+", re.UNICODE)
_STRIP_CHARS = ".,;:!?()[]{}\"'`-/"

_FILE_EXTENSIONS = (
    "ts|tsx|js|jsx|mjs|cjs|json|md|css|scss|html|py|pyi|go|rs|java|kt|cpp|cc|c|h|hpp"
    "|rb|php|sh|yml|yaml|toml|ini|cfg|sql|txt|lock"
)
_FILE_PATH_RE = re.compile(
    rf"(?<![\w@])(?:[\w.-]+/)*[\w-]+(?:\.[\w-]+)*\.(?:{_FILE_EXTENSIONS})\b",
    re.IGNORECASE,
)
_SLASH_PATH_RE = re.compile(r"(?<![\w@:/])(?:\.{0,2}/)?(?:[\w.-]+/)+[\w.-]+")
_SCOPED_PACKAGE_RE = re.compile(r"@[\w.-]+/[\w.-]+")
_HYPHENATED_RE = re.compile(r"\b[a-z][a-z0-9]*(?:-[a-z0-9]+)+\b")
_CAMEL_RE = re.compile(r"\b[a-z]+(?:[A-Z][a-z0-9]*)+\b")
_PASCAL_RE = re.compile(r"\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)+\b")
_DOTTED_RE = re.compile(r"\b[a-zA-Z_]\w*(?:\.[a-zA-Z_]\w*){1,}\(\)")
_URL_RE = re.compile(r"https?://[^\s)>\]]+")


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens with surrounding punctuation stripped."""
    tokens = []
    for raw in _TOKEN_RE.findall(text.lower()):
        token = raw.strip(_STRIP_CHARS)
        if token:
            tokens.append(token)
    return tokens


def text_similarity(a: str, b: str) -> float:
    """Jaccard similarity over word sets. Symmetric; ``sim(a, a) == 1``."""
    if a == b:
        return 1.0
    words_a, words_b = set(tokenize(a)), set(tokenize(b))
    union = words_a | words_b
    if not union:
        return 1.0 if a.strip() == b.strip() else 0.0
    return len(words_a & words_b) / len(union)


def _significant(text: str) -> Counter[str]:
    return Counter(w for w in tokenize(text) if len(w) > 2 and w not in STOP_WORDS)


def weighted_similarity(a: str, b: str) -> float:
    """Cosine similarity over term frequencies with stop words discounted."""
    if a == b:
        return 1.0
    freq_a, freq_b = _significant(a), _significant(b)
    if not freq_a or not freq_b:
        return text_similarity(a, b)
    dot = sum(freq_a[w] * freq_b[w] for w in freq_a.keys() & freq_b.keys())
    norm = math.sqrt(sum(v * v for v in freq_a.values())) * math.sqrt(
        sum(v * v for v in freq_b.values())
    )
    if not norm:
        return 0.0
    return min(1.0, dot / norm)


def fingerprint(content: str, type: MemoryType | str) -> str:
    """Stable hash of type plus normalized content."""
    type_value = getattr(type, "value", type)
    normalized = re.sub(r"[^\w\s]", "", re.sub(r"\s+", " ", content.lower().strip()))
    return hashlib.sha256(f"{type_value}:{normalized}".encode()).hexdigest()


def extract_entities(text: str) -> list[str]:
    """Heuristically pull file paths, packages, identifiers and URLs out of text.

    False positives are tolerated; order of first appearance is kept.
    """
    found: list[str] = []

    urls = _URL_RE.findall(text)
    found.extend(u.rstrip(".,;:") for u in urls)
    remainder = _URL_RE.sub(" ", text)

    found.extend(_SCOPED_PACKAGE_RE.findall(remainder))
    remainder_no_scoped = _SCOPED_PACKAGE_RE.sub(" ", remainder)

    found.extend(_FILE_PATH_RE.findall(remainder_no_scoped))
    found.extend(p.rstrip(".,;:") for p in _SLASH_PATH_RE.findall(remainder_no_scoped))
    found.extend(_DOTTED_RE.findall(remainder_no_scoped))
    found.extend(_HYPHENATED_RE.findall(remainder_no_scoped))
    found.extend(_CAMEL_RE.findall(remainder_no_scoped))
    found.extend(n for n in _PASCAL_RE.findall(remainder_no_scoped) if len(n) > 3)

    seen: set[str] = set()
    entities = []
    for entity in found:
        if entity and entity not in seen:
            seen.add(entity)
            entities.append(entity)
    return entities


def find_duplicate_candidate(
    new: Memory,
    recent: Iterable[Memory],
    window_seconds: float,
    now: datetime | None = None,
) -> Memory | None:
    """Return an existing memory that ``new`` would duplicate, if any.

    Candidates must share type and project and have been created within
    ``window_seconds``; a match is an equal fingerprint, near-identical
    content, or an identical summary.
    """
    now = now or utcnow()
    window_start = now - timedelta(seconds=window_seconds)
    new_print = fingerprint(new.content, new.type)
    new_summary = normalize_summary(new.summary)

    for existing in recent:
        if existing.id == new.id or existing.type != new.type:
            continue
        if existing.project_id != new.project_id:
            continue
        if existing.created < window_start:
            continue
        if fingerprint(existing.content, existing.type) == new_print:
            return existing
        if normalize_summary(existing.summary) == new_summary:
            return existing
        if text_similarity(existing.content, new.content) >= DUPLICATE_CONTENT_THRESHOLD:
            return existing
    return None


def find_consolidation_candidates(
    records: Iterable[Memory],
    threshold: float = DEFAULT_MERGE_THRESHOLD,
) -> list[SimilarityResult]:
    """Advisory pairs whose content similarity reaches ``threshold``.

    Records are bucketed by type and project first; pairs never cross a bucket.
    """
    buckets: dict[tuple[str, str], list[Memory]] = {}
    for memory in records:
        buckets.setdefault((memory.type.value, memory.project_id or ""), []).append(memory)

    results: list[SimilarityResult] = []
    for bucket in buckets.values():
        bucket.sort(key=lambda m: m.id)
        for i, first in enumerate(bucket):
            for second in bucket[i + 1 :]:
                score = weighted_similarity(first.content, second.content)
                if score >= threshold:
                    results.append(
                        SimilarityResult(
                            first_id=first.id,
                            second_id=second.id,
                            similarity=score,
                            suggest_merge=True,
                        )
                    )
    results.sort(key=lambda r: r.similarity, reverse=True)
    return results


def context_relevance(memory: Memory, context: QueryContext) -> float:
    """Boost in [0, 1] for how closely a memory matches the caller's context."""
    score = 0.0

    if context.current_task and memory.task_id == context.current_task:
        score += 0.4

    snapshot_files = set(memory.context_snapshot.get("files") or [])
    if context.current_files and snapshot_files:
        overlap = sum(1 for f in context.current_files if f in snapshot_files)
        score += (overlap / len(context.current_files)) * 0.3

    snapshot_actions = memory.context_snapshot.get("recentActions") or memory.context_snapshot.get(
        "recent_actions"
    )
    if context.recent_actions and snapshot_actions:
        score += (
            text_similarity(" ".join(context.recent_actions), " ".join(snapshot_actions)) * 0.2
        )

    if context.current_files and memory.entities:
        context_entities = {e for f in context.current_files for e in extract_entities(f)}
        if context_entities:
            overlap = len(context_entities & set(memory.entities))
            score += (overlap / len(context_entities)) * 0.1

    return min(1.0, score)
