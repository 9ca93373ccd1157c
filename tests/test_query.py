"""Tests for the query engine."""

from __future__ import annotations

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from memkeep.errors import InconsistentIndexError
from memkeep.memory.index import IndexManager
from memkeep.memory.models import Memory, MemoryQuery, MemoryType, QueryContext
from memkeep.memory.query import QueryEngine, matches_search
from memkeep.memory.store import RecordStore

T0 = datetime(2026, 10, 1, tzinfo=timezone.utc)


def _memory(n: int, **kwargs) -> Memory:
    created = T0 + timedelta(days=n)
    defaults = dict(
        id=f"mem_202610{n:02d}T000000_{n:06x}",
        content=f"content number {n}",
        summary=f"summary {n}",
        type=MemoryType.PATTERN,
        created=created,
        last_accessed=created,
    )
    defaults.update(kwargs)
    return Memory(**defaults)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> QueryEngine:
    store = RecordStore(tmp_path)
    records = [
        _memory(1, project_id="p1", tags=["db"], relevance_score=0.9,
                content="Connection pooling fixed the postgres timeouts"),
        _memory(2, project_id="p1", tags=["ui"], relevance_score=0.5, access_count=7,
                type=MemoryType.DECISION, content="Chose tailwind for styling"),
        _memory(3, project_id="p2", tags=["db", "perf"], relevance_score=0.7,
                content="Added an index on users.email", related_memories=[_memory(1).id]),
        _memory(4, project_id="p1", tags=["db"], relevance_score=0.1, archived=True,
                content="Old note about the postgres driver"),
    ]
    for m in records:
        await store.put(m)
    index = IndexManager(tmp_path)
    index.rebuild(records)
    return QueryEngine(store, index)


def _ids(memories: list[Memory]) -> list[int]:
    return [int(m.id.rsplit("_", 1)[1], 16) for m in memories]


class TestFilters:
    @pytest.mark.asyncio
    async def test_default_excludes_archived(self, engine: QueryEngine):
        hits = await engine.run(MemoryQuery())
        assert _ids(hits) == [1, 3, 2]  # relevance descending

    @pytest.mark.asyncio
    async def test_archived_only(self, engine: QueryEngine):
        assert _ids(await engine.run(MemoryQuery(archived=True))) == [4]

    @pytest.mark.asyncio
    async def test_archived_and_active(self, engine: QueryEngine):
        assert sorted(_ids(await engine.run(MemoryQuery(archived=None)))) == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_filters_combine_with_and(self, engine: QueryEngine):
        hits = await engine.run(MemoryQuery(project_id="p1", tags=["db"]))
        assert _ids(hits) == [1]

    @pytest.mark.asyncio
    async def test_tags_match_any(self, engine: QueryEngine):
        hits = await engine.run(MemoryQuery(tags=["ui", "perf"]))
        assert sorted(_ids(hits)) == [2, 3]

    @pytest.mark.asyncio
    async def test_types(self, engine: QueryEngine):
        hits = await engine.run(MemoryQuery(types=[MemoryType.DECISION]))
        assert _ids(hits) == [2]

    @pytest.mark.asyncio
    async def test_date_range(self, engine: QueryEngine):
        query = MemoryQuery(date_start=T0 + timedelta(days=2), date_end=T0 + timedelta(days=3))
        assert sorted(_ids(await engine.run(query))) == [2, 3]

    @pytest.mark.asyncio
    async def test_min_relevance(self, engine: QueryEngine):
        assert _ids(await engine.run(MemoryQuery(min_relevance=0.6))) == [1, 3]

    @pytest.mark.asyncio
    async def test_empty_result(self, engine: QueryEngine):
        assert await engine.run(MemoryQuery(project_id="nobody")) == []


class TestSearchAndSort:
    @pytest.mark.asyncio
    async def test_search_text(self, engine: QueryEngine):
        hits = await engine.run(MemoryQuery(search_text="postgres", archived=None))
        assert sorted(_ids(hits)) == [1, 4]

    @pytest.mark.asyncio
    async def test_search_matches_tags(self, engine: QueryEngine):
        assert _ids(await engine.run(MemoryQuery(search_text="perf"))) == [3]

    @pytest.mark.asyncio
    async def test_sort_recency(self, engine: QueryEngine):
        assert _ids(await engine.run(MemoryQuery(sort_by="recency"))) == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_sort_access_count(self, engine: QueryEngine):
        assert _ids(await engine.run(MemoryQuery(sort_by="access_count")))[0] == 2

    @pytest.mark.asyncio
    async def test_limit(self, engine: QueryEngine):
        assert _ids(await engine.run(MemoryQuery(limit=2))) == [1, 3]

    @pytest.mark.asyncio
    async def test_context_boost_reorders(self, engine: QueryEngine):
        context = QueryContext(current_task="t-2", current_files=["styles.css"])
        assert _ids(await engine.run(MemoryQuery(context=context)))[0] == 1

        # Task and file match lift the 0.5-relevance decision past 0.9
        record = await engine.store.get(_memory(2).id)
        record.task_id = "t-2"
        record.context_snapshot = {"files": ["styles.css"]}
        await engine.store.put(record)
        hits = await engine.run(MemoryQuery(context=context))
        assert _ids(hits)[0] == 2

    @pytest.mark.asyncio
    async def test_include_chains(self, engine: QueryEngine):
        hits = await engine.run(MemoryQuery(tags=["perf"], include_chains=True))
        assert _ids(hits) == [3, 1]

    def test_matches_search(self):
        m = _memory(1, tags=["Database"])
        assert matches_search(m, ["database"])
        assert not matches_search(m, ["redis"])


class TestSelect:
    @pytest.mark.asyncio
    async def test_select_is_unbounded_and_oldest_first(self, engine: QueryEngine):
        hits = await engine.select(MemoryQuery(archived=None, limit=1))
        assert _ids(hits) == [1, 2, 3, 4]


class TestConsistency:
    @pytest.mark.asyncio
    async def test_missing_record_raises(self, engine: QueryEngine):
        await engine.store.remove(_memory(3).id)
        with pytest.raises(InconsistentIndexError) as exc:
            await engine.run(MemoryQuery())
        assert exc.value.missing == [_memory(3).id]


class TestFromDict:
    def test_nested_filters(self):
        query = MemoryQuery.from_dict(
            {"filters": {"projectId": "p", "minRelevance": "0.25"}, "sortBy": "accessCount"}
        )
        assert query.project_id == "p"
        assert query.min_relevance == 0.25
        assert query.sort_by == "access_count"

    def test_min_relevance_out_of_range(self):
        with pytest.raises(ValueError):
            MemoryQuery.from_dict({"min_relevance": 1.5})
        with pytest.raises(ValueError):
            MemoryQuery.from_dict({"min_relevance": "high"})
