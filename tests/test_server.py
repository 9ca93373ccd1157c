"""Tests for the JSON HTTP surface."""

from __future__ import annotations

import json
import pytest
import pytest_asyncio
from pathlib import Path

from aiohttp import test_utils

from memkeep.config import ServerConfig
from memkeep.memory.service import MemoryService
from memkeep.server import MemoryServer


@pytest.fixture
def service(tmp_path: Path) -> MemoryService:
    return MemoryService(tmp_path / "memories")


@pytest_asyncio.fixture
async def client(service: MemoryService):
    app = MemoryServer(service, ServerConfig()).build_app()
    async with test_utils.TestClient(test_utils.TestServer(app)) as client:
        yield client


async def _create(client, n: int = 1, **fields) -> dict:
    body = {
        "content": f"HTTP note {n}: cache invalidation lives in the gateway",
        "summary": f"Gateway caching {n}",
        "type": "decision",
        **fields,
    }
    resp = await client.post("/memories", json=body)
    assert resp.status == 201
    return await resp.json()


class TestRecordAndRead:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "records": 0}

    @pytest.mark.asyncio
    async def test_create_accepts_camel_case(self, client):
        created = await _create(client, projectId="p", tags=["cache"])
        assert created["project_id"] == "p"
        assert created["version"] == 1
        assert created["tags"] == ["cache"]

    @pytest.mark.asyncio
    async def test_duplicate_conflict(self, client):
        first = await _create(client)
        resp = await client.post(
            "/memories",
            json={
                "content": "HTTP note 1: cache invalidation lives in the gateway",
                "summary": "Gateway caching 1",
                "type": "decision",
            },
        )
        assert resp.status == 409
        body = await resp.json()
        assert body["error"] == "DuplicateError"
        assert body["existing_id"] == first["id"]

    @pytest.mark.asyncio
    async def test_validation_error(self, client):
        resp = await client.post("/memories", json={"content": "x", "summary": "y"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_body_must_be_object(self, client):
        resp = await client.post("/memories", json=["not", "an", "object"])
        assert resp.status == 400
        resp = await client.post(
            "/memories", data="{oops", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_get_counts_access(self, client):
        created = await _create(client)
        resp = await client.get(f"/memories/{created['id']}")
        assert resp.status == 200
        assert (await resp.json())["access_count"] == 1

    @pytest.mark.asyncio
    async def test_get_missing(self, client):
        resp = await client.get("/memories/mem_20260101T000000_abcdef")
        assert resp.status == 404
        assert (await resp.json())["error"] == "NotFound"

    @pytest.mark.asyncio
    async def test_query(self, client):
        await _create(client, 1, tags=["cache"])
        await _create(client, 2, tags=["auth"], summary="Auth in gateway")
        resp = await client.post("/memories/query", json={"filters": {"tags": ["auth"]}})
        memories = (await resp.json())["memories"]
        assert [m["summary"] for m in memories] == ["Auth in gateway"]

    @pytest.mark.asyncio
    async def test_query_bad_limit(self, client):
        resp = await client.post("/memories/query", json={"limit": 0})
        assert resp.status == 400


class TestUpdateDelete:
    @pytest.mark.asyncio
    async def test_patch(self, client):
        created = await _create(client)
        resp = await client.patch(f"/memories/{created['id']}", json={"summary": "Renamed"})
        assert resp.status == 200
        body = await resp.json()
        assert body["version"] == 2
        assert body["summary"] == "Renamed"

    @pytest.mark.asyncio
    async def test_patch_protected_field(self, client):
        created = await _create(client)
        resp = await client.patch(f"/memories/{created['id']}", json={"id": "other"})
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_delete(self, client):
        created = await _create(client)
        resp = await client.delete(f"/memories/{created['id']}")
        assert await resp.json() == {"deleted": True}
        resp = await client.delete(f"/memories/{created['id']}")
        assert await resp.json() == {"deleted": False}


class TestChain:
    @pytest.mark.asyncio
    async def test_chain(self, client):
        root = await _create(client, 1)
        await _create(client, 2, relatedMemories=[root["id"]])
        resp = await client.get(f"/memories/{root['id']}/chain", params={"depth": "1"})
        chain = (await resp.json())["chain"]
        assert len(chain) == 2
        assert chain[0]["id"] == root["id"]

    @pytest.mark.asyncio
    async def test_bad_depth(self, client):
        root = await _create(client)
        for depth in ("abc", "9"):
            resp = await client.get(f"/memories/{root['id']}/chain", params={"depth": depth})
            assert resp.status == 400


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_alias(self, client):
        await _create(client)
        resp = await client.post("/maintenance/decay_scores")
        body = await resp.json()
        assert body["operation"] == "decay"
        assert body["processed"] == 1
        assert body["partial"] is False

    @pytest.mark.asyncio
    async def test_archive_params(self, client):
        resp = await client.post("/maintenance/archive", json={"age_days": 0, "relevance_floor": 0.5})
        assert (await resp.json())["details"] == {"age_days": 0.0, "relevance_floor": 0.5}

    @pytest.mark.asyncio
    async def test_unknown(self, client):
        resp = await client.post("/maintenance/vacuum")
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await _create(client)
        resp = await client.get("/stats")
        body = await resp.json()
        assert body["total"] == 1
        assert body["by_type"] == {"decision": 1}

    @pytest.mark.asyncio
    async def test_consolidate_dry_run(self, client, service: MemoryService):
        await _create(client, 1, summary="Same")
        await _create(client, 2, summary="same", allowDuplicate=True)
        resp = await client.post("/consolidate", json={"dry_run": True})
        body = await resp.json()
        assert body["dry_run"] is True
        assert body["merged"] == 1
        assert len(service.index) == 2


class TestExportImport:
    @pytest.mark.asyncio
    async def test_structured_round_trip(self, client, service: MemoryService):
        await _create(client, 1, projectId="p")
        resp = await client.post("/export", json={"format": "json"})
        assert resp.content_type == "application/json"
        data = await resp.read()
        assert json.loads(data)["totalMemories"] == 1

        resp = await client.post("/import", data=data)
        assert (await resp.json())["skipped"] == 1

        await service.delete((await service.query())[0].id)
        resp = await client.post("/import", data=data, params={"project_id": "q"})
        assert (await resp.json())["imported"] == 1
        assert service.index.ids_for_project("q")

    @pytest.mark.asyncio
    async def test_narrative(self, client):
        await _create(client)
        resp = await client.post("/export", json={"format": "markdown"})
        assert resp.content_type == "text/markdown"
        assert (await resp.text()).startswith("# Memory Export")

    @pytest.mark.asyncio
    async def test_import_rejects_narrative(self, client):
        resp = await client.post("/import", data="# Memory Export\n")
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unknown_export_format(self, client):
        resp = await client.post("/export", json={"format": "xml"})
        assert resp.status == 400


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_report(self, client):
        await _create(client, tags=["cache"])
        resp = await client.get("/analytics", params={"time_range": "week"})
        body = await resp.json()
        assert body["total"] == 1
        assert body["top_tags"] == [["cache", 1]]

    @pytest.mark.asyncio
    async def test_bad_range(self, client):
        resp = await client.get("/analytics", params={"time_range": "century"})
        assert resp.status == 400
