"""Tests for the text-returning agent tools."""

from __future__ import annotations

import json
import pytest
from pathlib import Path

from memkeep.memory.service import MemoryService
from memkeep.tools.memory_tools import get_memory_tools


@pytest.fixture
def service(tmp_path: Path) -> MemoryService:
    return MemoryService(tmp_path / "memories")


@pytest.fixture
def tools(service: MemoryService) -> dict:
    return get_memory_tools(service)


async def _record(tools: dict, n: int = 1, **kwargs) -> str:
    args = dict(
        content=f"Tool note {n}: retries belong in the client",
        summary=f"Retry placement {n}",
        type="decision",
    )
    args.update(kwargs)
    text = await tools["record_memory"](**args)
    return text.split("ID: ", 1)[1].split("\n", 1)[0]


class TestRegistry:
    def test_all_tools_present(self, tools: dict):
        assert set(tools) == {
            "record_memory",
            "query_memory",
            "get_memory",
            "update_memory",
            "delete_memory",
            "memory_maintenance",
            "get_memory_chain",
            "consolidate_memories",
            "export_memories",
            "import_memories",
            "memory_analytics",
            "analyze_text_for_memory",
        }


class TestRecordAndRead:
    @pytest.mark.asyncio
    async def test_record(self, tools: dict):
        text = await tools["record_memory"](
            content="Use httpx for the client", summary="HTTP client", type="decision",
            tags=["http"], project_id="p",
        )
        assert text.startswith("Memory recorded successfully!")
        assert "Project: p" in text
        assert "Tags: http" in text

    @pytest.mark.asyncio
    async def test_duplicate_reported(self, tools: dict):
        await _record(tools)
        text = await tools["record_memory"](
            content="Tool note 1: retries belong in the client",
            summary="Retry placement 1",
            type="decision",
        )
        assert text.startswith("A similar memory already exists")
        assert "was not created" in text

    @pytest.mark.asyncio
    async def test_invalid_type_reported(self, tools: dict):
        text = await tools["record_memory"](content="x", summary="y", type="musing")
        assert text.startswith("Error recording memory:")

    @pytest.mark.asyncio
    async def test_get(self, tools: dict):
        memory_id = await _record(tools, tags=["client"])
        text = await tools["get_memory"](memory_id)
        assert f"ID: {memory_id}" in text
        assert "Access Count: 1" in text
        assert "Tags: client" in text

    @pytest.mark.asyncio
    async def test_get_missing(self, tools: dict):
        text = await tools["get_memory"]("mem_20260101T000000_abcdef")
        assert text == "Memory with ID mem_20260101T000000_abcdef not found."

    @pytest.mark.asyncio
    async def test_query(self, tools: dict):
        await _record(tools, 1, tags=["client"])
        await _record(tools, 2, tags=["server"], summary="Server note")
        text = await tools["query_memory"](filters={"tags": ["client"]})
        assert text.startswith("Found 1 memories:")
        assert "[DECISION] Retry placement 1" in text

    @pytest.mark.asyncio
    async def test_query_empty(self, tools: dict):
        assert await tools["query_memory"]() == "No memories found matching your query."


class TestUpdateDelete:
    @pytest.mark.asyncio
    async def test_update(self, tools: dict, service: MemoryService):
        memory_id = await _record(tools)
        text = await tools["update_memory"](memory_id, summary="Moved retries")
        assert "Version: 2 (incremented)" in text
        assert (await service.store.get(memory_id)).summary == "Moved retries"

    @pytest.mark.asyncio
    async def test_update_rejected_field(self, tools: dict):
        memory_id = await _record(tools)
        text = await tools["update_memory"](memory_id, version=7)
        assert text.startswith("Error updating memory:")

    @pytest.mark.asyncio
    async def test_delete(self, tools: dict):
        memory_id = await _record(tools)
        assert "successfully deleted" in await tools["delete_memory"](memory_id)
        assert "not found" in await tools["delete_memory"](memory_id)


class TestMaintenanceTools:
    @pytest.mark.asyncio
    async def test_stats(self, tools: dict):
        await _record(tools, project_id="p")
        text = await tools["memory_maintenance"]("get_stats")
        assert "Total Memories: 1" in text
        assert "  decision: 1" in text
        assert "  p: 1" in text

    @pytest.mark.asyncio
    async def test_decay(self, tools: dict):
        await _record(tools)
        text = await tools["memory_maintenance"]("decay_scores")
        assert text.startswith("Maintenance 'decay' finished: 1 processed")

    @pytest.mark.asyncio
    async def test_unknown_operation(self, tools: dict):
        text = await tools["memory_maintenance"]("shuffle")
        assert text == "Error in maintenance operation: Unknown maintenance operation: shuffle"

    @pytest.mark.asyncio
    async def test_consolidate_needs_confirm(self, tools: dict, service: MemoryService):
        await _record(tools, 1, summary="Same")
        await service.record("another wording entirely", "Same", "decision", allow_duplicate=True)

        text = await tools["consolidate_memories"]()
        assert "Memories that would be consolidated: 1" in text
        assert len(service.index) == 2

        text = await tools["consolidate_memories"](confirm=True)
        assert "Memories merged: 1" in text
        assert len(service.index) == 1

    @pytest.mark.asyncio
    async def test_chain(self, tools: dict):
        root = await _record(tools, 1)
        await _record(tools, 2, related_memories=[root])
        text = await tools["get_memory_chain"](root, depth=1)
        assert text.startswith('## Memory Chain for "Retry placement 1"')
        assert "Found 2 related memories:" in text
        assert "[ROOT]" in text and "[RELATED]" in text

    @pytest.mark.asyncio
    async def test_chain_bad_depth(self, tools: dict):
        root = await _record(tools)
        text = await tools["get_memory_chain"](root, depth=9)
        assert text.startswith("Error retrieving memory chain:")


class TestExportImportTools:
    @pytest.mark.asyncio
    async def test_export_to_file_and_import(self, tools: dict, tmp_path: Path):
        await _record(tools, 1, project_id="p")
        await _record(tools, 2, project_id="p")
        out = tmp_path / "out" / "export.json"
        text = await tools["export_memories"](output_path=str(out))
        assert text.startswith(f"Memories exported to {out}")
        assert json.loads(out.read_text())["totalMemories"] == 2

        other = get_memory_tools(MemoryService(tmp_path / "other"))
        text = await other["import_memories"](str(out), project_id="q")
        assert "Successfully imported: 2 memories" in text
        assert "All memories assigned to project: q" in text

        text = await other["import_memories"](str(out), project_id="q")
        assert "Skipped (already present): 2 memories" in text

    @pytest.mark.asyncio
    async def test_export_inline_narrative(self, tools: dict):
        await _record(tools)
        text = await tools["export_memories"](format="markdown")
        assert text.startswith("# Memory Export")

    @pytest.mark.asyncio
    async def test_import_missing_file(self, tools: dict, tmp_path: Path):
        text = await tools["import_memories"](str(tmp_path / "nope.json"))
        assert text.startswith("Error importing memories: cannot read")

    @pytest.mark.asyncio
    async def test_analytics(self, tools: dict):
        await _record(tools, tags=["client"])
        text = await tools["memory_analytics"](time_range="week")
        assert text.startswith("# Memory Analytics (week)")
        assert "- decision: 1" in text
        assert "## Insights" in text


class TestAnalyzeText:
    @pytest.mark.asyncio
    async def test_records_triggered_text(self, tools: dict, service: MemoryService):
        text = await tools["analyze_text_for_memory"](
            "We decided to keep Postgres for the job queue",
            project_id="p",
            files=["src/queue.py"],
        )
        assert text.startswith("Detected decision content (confidence 0.70)")
        [memory] = await service.query({"project_id": "p"})
        assert memory.type.value == "decision"
        assert memory.context_snapshot["files"] == ["src/queue.py"]

    @pytest.mark.asyncio
    async def test_nothing_to_record(self, tools: dict, service: MemoryService):
        text = await tools["analyze_text_for_memory"]("The weather is mild today")
        assert text == "No memory-worthy content detected."
        assert len(await service.query({})) == 0
