"""Tests for the index manager."""

from __future__ import annotations

import copy
import json
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from memkeep.errors import InconsistentIndexError, StorageError
from memkeep.memory.index import IndexManager, compute_stats
from memkeep.memory.models import Memory, MemoryStats, MemoryType

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def index(tmp_path: Path) -> IndexManager:
    tmp_path.mkdir(exist_ok=True)
    return IndexManager(tmp_path)


def _memory(n: int, **kwargs) -> Memory:
    defaults = dict(
        id=f"mem_20260101T00000{n}_00000{n}",
        content=f"content {n}",
        summary=f"summary {n}",
        type=MemoryType.PATTERN,
        created=T0 + timedelta(hours=n),
    )
    defaults.update(kwargs)
    return Memory(**defaults)


class TestBuckets:
    def test_rebuild(self, index: IndexManager):
        a = _memory(1, project_id="p1", tags=["x", "y"], entities=["src/a.py"])
        b = _memory(2, project_id="p2", tags=["y"], type=MemoryType.DECISION)
        index.rebuild([a, b])

        assert index.ids_for_project("p1") == {a.id}
        assert index.ids_for_tags(["y"]) == {a.id, b.id}
        assert index.ids_for_tags(["x", "missing"]) == {a.id}
        assert index.ids_for_types([MemoryType.DECISION]) == {b.id}
        assert index.ids_for_entities(["src/a.py"]) == {a.id}
        assert len(index) == 2

    def test_timeline_newest_first(self, index: IndexManager):
        index.rebuild([_memory(1), _memory(3), _memory(2)])
        assert [i for i, _ in index.timeline()] == [
            _memory(3).id,
            _memory(2).id,
            _memory(1).id,
        ]

    def test_created_between(self, index: IndexManager):
        index.rebuild([_memory(1), _memory(2), _memory(3)])
        ids = index.ids_created_between(T0 + timedelta(hours=2))
        assert ids == {_memory(2).id, _memory(3).id}
        ids = index.ids_created_between(None, T0 + timedelta(hours=1))
        assert ids == {_memory(1).id}

    def test_update_moves_buckets(self, index: IndexManager):
        old = _memory(1, tags=["x", "y"], entities=["fooBar"])
        index.on_insert(old)
        new = copy.deepcopy(old)
        new.tags = ["y", "z"]
        new.entities = []
        index.on_update(old, new)

        assert index.ids_for_tags(["x"]) == set()
        assert index.ids_for_tags(["z"]) == {old.id}
        assert index.ids_for_entities(["fooBar"]) == set()
        # Emptied buckets disappear entirely
        assert "x" not in index.snapshot()["tag"]

    def test_remove(self, index: IndexManager):
        a = _memory(1, tags=["x"], project_id="p")
        index.on_insert(a)
        index.on_remove(a.id)
        assert index.snapshot() == {
            "project": {},
            "type": {},
            "tag": {},
            "entity": {},
            "timeline": [],
        }
        index.on_remove(a.id)  # no-op

    def test_incremental_matches_rebuild(self, tmp_path: Path):
        incremental = IndexManager(tmp_path)
        records = {}
        for n in range(1, 6):
            m = _memory(n, tags=[f"t{n % 2}"], project_id=f"p{n % 3}", entities=[f"e{n}"])
            incremental.on_insert(m)
            records[m.id] = m

        updated = copy.deepcopy(records[_memory(2).id])
        updated.tags = ["t9"]
        updated.type = MemoryType.BREAKTHROUGH
        incremental.on_update(records[updated.id], updated)
        records[updated.id] = updated

        incremental.on_remove(_memory(4).id)
        del records[_memory(4).id]

        rebuilt = IndexManager(tmp_path)
        rebuilt.rebuild(records.values())
        assert incremental.snapshot() == rebuilt.snapshot()

    def test_verify(self, index: IndexManager):
        index.rebuild([_memory(1), _memory(2)])
        index.verify([_memory(1).id, _memory(2).id])
        with pytest.raises(InconsistentIndexError) as exc:
            index.verify([_memory(1).id])
        assert exc.value.missing == [_memory(2).id]


class TestPersistence:
    def test_save_and_load_parses_timestamps(self, tmp_path: Path):
        index = IndexManager(tmp_path)
        index.rebuild([_memory(1, tags=["x"]), _memory(2, project_id="p")])
        index.save()

        loaded = IndexManager(tmp_path)
        assert loaded.load() is True
        assert loaded.snapshot() == index.snapshot()
        entry = loaded.entry(_memory(1).id)
        assert isinstance(entry.created, datetime)
        assert entry.created == T0 + timedelta(hours=1)
        # Date-range lookups need real datetimes, not strings
        assert loaded.ids_created_between(T0 + timedelta(hours=2)) == {_memory(2).id}

    def test_index_file_is_json(self, tmp_path: Path):
        index = IndexManager(tmp_path)
        index.rebuild([_memory(1, tags=["x"])])
        index.save()
        data = json.loads((tmp_path / "_index.json").read_text())
        assert data["tagIndex"] == {"x": [_memory(1).id]}
        assert data["temporalIndex"][0]["id"] == _memory(1).id

    def test_load_missing(self, index: IndexManager):
        assert index.load() is False

    def test_load_malformed(self, tmp_path: Path):
        (tmp_path / "_index.json").write_text("{not json")
        with pytest.raises(StorageError):
            IndexManager(tmp_path).load()

    def test_load_bad_timestamp(self, tmp_path: Path):
        index = IndexManager(tmp_path)
        index.rebuild([_memory(1)])
        index.save()
        data = json.loads((tmp_path / "_index.json").read_text())
        data["entries"][_memory(1).id]["created"] = "yesterday"
        (tmp_path / "_index.json").write_text(json.dumps(data))
        with pytest.raises(StorageError):
            IndexManager(tmp_path).load()


class TestStats:
    def test_compute_stats(self):
        stats = compute_stats(
            [
                _memory(1, project_id="p", relevance_score=1.0),
                _memory(2, relevance_score=0.5, archived=True),
                _memory(3, type=MemoryType.DECISION, relevance_score=0.0),
            ]
        )
        assert stats.total == 3
        assert stats.by_type == {"pattern": 2, "decision": 1}
        assert stats.by_project == {"p": 1}
        assert stats.archived == 1
        assert stats.average_relevance == pytest.approx(0.5)

    def test_stats_round_trip(self, index: IndexManager):
        stats = compute_stats([_memory(1)])
        index.save_stats(stats)
        assert index.stats_dirty is False
        loaded = index.load_stats()
        assert isinstance(loaded, MemoryStats)
        assert loaded.total == 1
        assert loaded.last_updated == stats.last_updated

    def test_writes_mark_stats_dirty(self, index: IndexManager):
        index.save_stats(MemoryStats())
        index.on_insert(_memory(1))
        assert index.stats_dirty is True
