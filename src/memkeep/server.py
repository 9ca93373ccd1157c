"""JSON HTTP surface over MemoryService (aiohttp).

Store errors map onto status codes: ValidationError 400, NotFound 404,
DuplicateError 409, anything else from the store 500.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from memkeep.errors import DuplicateError, MemkeepError, NotFound, ValidationError
from memkeep.memory.backup import parse_format
from memkeep.memory.models import normalize_keys

if TYPE_CHECKING:
    from memkeep.config import ServerConfig
    from memkeep.memory.service import MemoryService

logger = logging.getLogger(__name__)

_STATUS = (
    (ValidationError, 400),
    (NotFound, 404),
    (DuplicateError, 409),
)

_RECORD_FIELDS = (
    "tags",
    "entities",
    "project_id",
    "task_id",
    "confidence",
    "related_memories",
    "context_snapshot",
    "metadata",
    "author",
    "trigger_context",
    "supersedes",
    "allow_duplicate",
)


def _error(e: MemkeepError) -> web.Response:
    status = next((code for cls, code in _STATUS if isinstance(e, cls)), 500)
    body: dict[str, Any] = {"error": type(e).__name__, "message": str(e)}
    if isinstance(e, DuplicateError):
        body["existing_id"] = e.existing.id
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except MemkeepError as e:
        if not isinstance(e, (ValidationError, NotFound, DuplicateError)):
            logger.error("%s %s failed: %s", request.method, request.path, e)
        return _error(e)


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _int_param(request: web.Request, name: str) -> int | None:
    raw = request.query.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None


def _flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").lower() in ("1", "true", "yes")


class MemoryServer:
    """Serve the memory operations to external collaborators."""

    def __init__(self, service: MemoryService, config: ServerConfig) -> None:
        self._service = service
        self._config = config
        self._runner: web.AppRunner | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/health", self._health)
        app.router.add_get("/stats", self._stats)
        app.router.add_post("/memories", self._record)
        app.router.add_post("/memories/query", self._query)
        app.router.add_get("/memories/{id}", self._get)
        app.router.add_patch("/memories/{id}", self._update)
        app.router.add_delete("/memories/{id}", self._delete)
        app.router.add_get("/memories/{id}/chain", self._chain)
        app.router.add_post("/maintenance/{operation}", self._maintenance)
        app.router.add_post("/consolidate", self._consolidate)
        app.router.add_post("/export", self._export)
        app.router.add_post("/import", self._import)
        app.router.add_get("/analytics", self._analytics)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        logger.info("Memory server listening on %s:%d", self._config.host, self._config.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    # ── Handlers ──────────────────────────────────────────────

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "records": len(self._service.index)})

    async def _stats(self, request: web.Request) -> web.Response:
        stats = await self._service.get_stats()
        return web.json_response(stats.to_dict())

    async def _record(self, request: web.Request) -> web.Response:
        body = normalize_keys(await _json_body(request))
        memory = await self._service.record(
            body.get("content", ""),
            body.get("summary", ""),
            body.get("type", ""),
            **{k: body[k] for k in _RECORD_FIELDS if k in body},
        )
        return web.json_response(memory.to_dict(), status=201)

    async def _query(self, request: web.Request) -> web.Response:
        memories = await self._service.query(await _json_body(request))
        return web.json_response({"memories": [m.to_dict() for m in memories]})

    async def _get(self, request: web.Request) -> web.Response:
        memory = await self._service.get(request.match_info["id"])
        return web.json_response(memory.to_dict())

    async def _update(self, request: web.Request) -> web.Response:
        memory = await self._service.update(request.match_info["id"], **await _json_body(request))
        return web.json_response(memory.to_dict())

    async def _delete(self, request: web.Request) -> web.Response:
        deleted = await self._service.delete(request.match_info["id"])
        return web.json_response({"deleted": deleted})

    async def _chain(self, request: web.Request) -> web.Response:
        chain = await self._service.get_chain(
            request.match_info["id"],
            _int_param(request, "depth"),
            _flag(request, "include_content"),
        )
        return web.json_response({"chain": [m.to_dict() for m in chain]})

    async def _maintenance(self, request: web.Request) -> web.Response:
        report = await self._service.maintenance(
            request.match_info["operation"], **await _json_body(request)
        )
        return web.json_response(report.to_dict())

    async def _consolidate(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        report = await self._service.consolidate(
            body.get("strategy", "summary"),
            body.get("threshold"),
            bool(body.get("dry_run", False)),
        )
        return web.json_response(report.to_dict())

    async def _export(self, request: web.Request) -> web.Response:
        body = await _json_body(request)
        fmt = parse_format(body.pop("format", "structured"))
        data = await self._service.export(body or None, fmt)
        content_type = "application/json" if fmt == "structured" else "text/markdown"
        return web.Response(body=data, content_type=content_type, charset="utf-8")

    async def _import(self, request: web.Request) -> web.Response:
        data = await request.read()
        report = await self._service.import_(
            data,
            overwrite_existing=_flag(request, "overwrite"),
            project_id=request.query.get("project_id"),
        )
        return web.json_response(report.to_dict())

    async def _analytics(self, request: web.Request) -> web.Response:
        report = await self._service.analytics(
            request.query.get("time_range", "month"),
            request.query.get("project_id"),
            _flag(request, "include_archived"),
            request.query.get("group_by", "type"),
        )
        return web.json_response(report)
