"""Query engine: narrow through the index, then filter, search, rank, bound."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from memkeep.errors import InconsistentIndexError, NotFound
from memkeep.memory.lifecycle import DEFAULT_CHAIN_DEPTH, build_chain
from memkeep.memory.models import MAX_QUERY_LIMIT, Memory, MemoryQuery, clamp_score
from memkeep.memory.similarity import context_relevance, tokenize, weighted_similarity

if TYPE_CHECKING:
    from memkeep.memory.index import IndexManager
    from memkeep.memory.store import RecordStore

logger = logging.getLogger(__name__)


def matches_search(memory: Memory, words: list[str]) -> bool:
    """True if any search word appears in the content, summary or a tag."""
    content = memory.content.lower()
    summary = memory.summary.lower()
    tags = [t.lower() for t in memory.tags]
    return any(
        word in content or word in summary or any(word in tag for tag in tags) for word in words
    )


class QueryEngine:
    """Read-only: returns ranked memories; the caller applies the access hook."""

    def __init__(
        self,
        store: RecordStore,
        index: IndexManager,
        chain_depth: int = DEFAULT_CHAIN_DEPTH,
    ) -> None:
        self.store = store
        self.index = index
        self.chain_depth = chain_depth

    def candidate_ids(self, query: MemoryQuery) -> set[str]:
        """Intersect the index buckets named by the structural filters."""
        ids = self.index.ids()
        if query.project_id:
            ids &= self.index.ids_for_project(query.project_id)
        if query.types:
            ids &= self.index.ids_for_types(query.types)
        if query.tags:
            ids &= self.index.ids_for_tags(query.tags)
        if query.entities:
            ids &= self.index.ids_for_entities(query.entities)
        if query.date_start or query.date_end:
            ids &= self.index.ids_created_between(query.date_start, query.date_end)
        return ids

    async def _load(self, ids: set[str]) -> list[Memory]:
        memories = []
        missing = []
        for memory_id in sorted(ids):
            try:
                memories.append(await self.store.get(memory_id))
            except NotFound:
                missing.append(memory_id)
        if missing:
            raise InconsistentIndexError(missing)
        return memories

    @staticmethod
    def _passes_filters(memory: Memory, query: MemoryQuery) -> bool:
        if query.archived is not None and memory.archived != query.archived:
            return False
        if query.min_relevance is not None and memory.relevance_score < query.min_relevance:
            return False
        return True

    async def _matching(self, query: MemoryQuery) -> tuple[list[Memory], dict[str, float]]:
        memories = [
            m for m in await self._load(self.candidate_ids(query)) if self._passes_filters(m, query)
        ]
        search_scores: dict[str, float] = {}
        if query.search_text and query.search_text.strip():
            words = tokenize(query.search_text) or [query.search_text.strip().lower()]
            memories = [m for m in memories if matches_search(m, words)]
            for m in memories:
                search_scores[m.id] = weighted_similarity(
                    query.search_text, f"{m.summary} {m.content} {' '.join(m.tags)}"
                )
        return memories, search_scores

    async def select(self, query: MemoryQuery) -> list[Memory]:
        """Every match, oldest first, with no limit or ranking (export, analytics)."""
        memories, _ = await self._matching(query)
        memories.sort(key=lambda m: (m.created, m.id))
        return memories

    async def run(self, query: MemoryQuery) -> list[Memory]:
        memories, search_scores = await self._matching(query)

        ranking: dict[str, float] = {m.id: m.relevance_score for m in memories}
        if query.context:
            for m in memories:
                ranking[m.id] = clamp_score(ranking[m.id] + context_relevance(m, query.context))

        def sort_key(m: Memory) -> tuple:
            if query.sort_by == "recency":
                return (m.created, m.id)
            if query.sort_by == "access_count":
                return (m.access_count, ranking[m.id], m.created)
            return (ranking[m.id], search_scores.get(m.id, 0.0), m.created)

        memories.sort(key=sort_key, reverse=True)

        limit = max(0, min(query.limit, MAX_QUERY_LIMIT))
        hits = memories[:limit]

        if query.include_chains and hits:
            hits = await self._expand_chains(hits, query)
        logger.debug("Query returned %d memories", len(hits))
        return hits

    async def _expand_chains(self, hits: list[Memory], query: MemoryQuery) -> list[Memory]:
        records, _ = await self.store.load_all()
        by_id = {m.id: m for m in records}
        seen = {m.id for m in hits}
        expanded = list(hits)
        for hit in hits:
            for memory_id in build_chain(hit.id, self.chain_depth, by_id)[1:]:
                if memory_id in seen:
                    continue
                member = by_id[memory_id]
                if query.archived is not None and member.archived != query.archived:
                    continue
                seen.add(memory_id)
                expanded.append(member)
        return expanded
