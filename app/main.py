"""FastAPI app for the tool execution engine."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time
from functools import partial

import anyio

from app.db import close_pool, get_db_stats, init_pool, reset_db_stats
from action_exec import DEFAULT_ACTION_TIMEOUT_S, execute_action
from capability_registry import default_registry
from engine_errors import EngineError
from entity_linking import dedupe_candidates, link_entities
from integration_runtime import HttpIntegrationRuntime, IntegrationRuntimes
from join_exec import execute_join
from timeline import aggregate_timeline
from workflow_runtime import resume_workflow, retry_run, run_workflow
from write_audit import WriteAuditLogger
from app.stores import (
    MemoryAuditLogStore,
    MemoryConnectionStore,
    MemoryExecutionRunStore,
    MemoryToolSpecStore,
    MemoryToolStateStore,
)
from app.stores_db import (
    DbAuditLogStore,
    DbConnectionStore,
    DbExecutionRunStore,
    DbToolSpecStore,
    DbToolStateStore,
)


app = FastAPI(title="ToolOS engine")
logger = logging.getLogger("toolos.api")
logging.basicConfig(level=logging.INFO)


USE_DB = os.getenv("USE_DB", "").strip() == "1"
ACTION_TIMEOUT_S = float(os.getenv("TOOLOS_ACTION_TIMEOUT_S", str(DEFAULT_ACTION_TIMEOUT_S)))
AUDIT_WORKERS = int(os.getenv("TOOLOS_AUDIT_WORKERS", "2"))
INTEGRATION_BASE_URL = os.getenv("TOOLOS_INTEGRATION_BASE_URL", "").strip()
REQ_SLOW_MS = float(os.getenv("TOOLOS_REQ_SLOW_MS", "1000"))

if USE_DB:
    run_store = DbExecutionRunStore()
    audit_store = DbAuditLogStore()
    connection_store = DbConnectionStore()
    state_store = DbToolStateStore()
    spec_store = DbToolSpecStore()
else:
    run_store = MemoryExecutionRunStore()
    audit_store = MemoryAuditLogStore()
    connection_store = MemoryConnectionStore()
    state_store = MemoryToolStateStore()
    spec_store = MemoryToolSpecStore()


def _build_runtimes() -> IntegrationRuntimes:
    if not INTEGRATION_BASE_URL:
        logger.warning("integration_runtime_unconfigured env=TOOLOS_INTEGRATION_BASE_URL")
        return IntegrationRuntimes()
    runtime = HttpIntegrationRuntime(INTEGRATION_BASE_URL, default_timeout=ACTION_TIMEOUT_S)
    registry = default_registry()
    integration_ids = {cap.integration_id for cap in registry.all()}
    return IntegrationRuntimes({integration_id: runtime for integration_id in integration_ids})


audit_logger = WriteAuditLogger(connection_store, audit_store, max_workers=AUDIT_WORKERS)

deps = {
    "runs": run_store,
    "registry": default_registry(),
    "runtimes": _build_runtimes(),
    "audit": audit_logger,
    "state": state_store,
    "action_timeout": ACTION_TIMEOUT_S,
}


@app.on_event("startup")
def _open_pool() -> None:
    if USE_DB:
        init_pool()


@app.on_event("shutdown")
def _drain_audit() -> None:
    audit_logger.close(wait=True)
    if USE_DB:
        close_pool()


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_stats = get_db_stats()
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        db_stats.get("total_ms", 0.0),
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning("slow_request method=%s path=%s route=%s total_ms=%.1f", request.method, request.url.path, route_name, total_ms)
    return response


_NOT_FOUND_CODES = {"RUN_NOT_FOUND", "TOOL_NOT_FOUND", "ACTION_NOT_FOUND", "WORKFLOW_NOT_FOUND"}


def _status_for(code: str | None) -> int:
    if code in _NOT_FOUND_CODES:
        return 404
    if code == "JOIN_SIZE_LIMIT":
        return 413
    if code and code.startswith("INTEGRATION_") and code != "INTEGRATION_RUNTIME_MISSING":
        return 502
    return 400


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _result_response(result: dict) -> JSONResponse:
    if result.get("ok"):
        return JSONResponse(jsonable_encoder(result), status_code=200)
    errors = result.get("errors") or []
    status = _status_for(errors[0].get("code") if errors else None)
    return JSONResponse(jsonable_encoder(result), status_code=status)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    return _error_response(exc.code, exc.message, exc.path, exc.detail, status=_status_for(exc.code))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("api_unhandled path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", status=500)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _actor(request: Request) -> tuple[str | None, str | None]:
    org_id = (request.headers.get("x-org-id") or "").strip() or None
    user_id = (request.headers.get("x-user-id") or "").strip() or None
    return org_id, user_id


async def _tool_context(request: Request, tool_id: str) -> tuple[dict | None, JSONResponse | None]:
    org_id, user_id = _actor(request)
    if not org_id:
        return None, _error_response("ORG_REQUIRED", "X-Org-Id header required", "headers.x-org-id", status=400)
    spec = await anyio.to_thread.run_sync(spec_store.get_spec, org_id, tool_id)
    if spec is None:
        return None, _error_response("TOOL_NOT_FOUND", "Tool not found", "tool_id", {"tool_id": tool_id}, status=404)
    return {"org_id": org_id, "user_id": user_id, "tool_id": tool_id, "spec": spec}, None


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/capabilities")
async def list_capabilities(integration_id: str | None = None):
    registry = deps["registry"]
    caps = registry.for_integration(integration_id) if integration_id else registry.all()
    return _ok_response({"capabilities": [cap.to_dict() for cap in caps]})


@app.post("/tools/{tool_id}/actions/{action_id}/run")
async def run_action(tool_id: str, action_id: str, request: Request):
    ctx, error = await _tool_context(request, tool_id)
    if error is not None:
        return error
    body = await _safe_json(request)
    params = dict(ctx, action_id=action_id, input=body.get("input") or {}, dry_run=bool(body.get("dry_run")))
    result = await anyio.to_thread.run_sync(execute_action, params, deps)
    return _result_response(result)


@app.post("/tools/{tool_id}/workflows/{workflow_id}/run")
async def run_workflow_route(tool_id: str, workflow_id: str, request: Request):
    ctx, error = await _tool_context(request, tool_id)
    if error is not None:
        return error
    body = await _safe_json(request)
    params = dict(ctx, workflow_id=workflow_id, input=body.get("input") or {}, dry_run=bool(body.get("dry_run")))
    result = await anyio.to_thread.run_sync(run_workflow, params, deps)
    return _result_response(result)


@app.post("/tools/{tool_id}/runs/{run_id}/retry")
async def retry_run_route(tool_id: str, run_id: str, request: Request):
    ctx, error = await _tool_context(request, tool_id)
    if error is not None:
        return error
    result = await anyio.to_thread.run_sync(retry_run, dict(ctx, run_id=run_id), deps)
    return _result_response(result)


@app.post("/tools/{tool_id}/runs/{run_id}/resume")
async def resume_run_route(tool_id: str, run_id: str, request: Request):
    ctx, error = await _tool_context(request, tool_id)
    if error is not None:
        return error
    result = await anyio.to_thread.run_sync(resume_workflow, dict(ctx, run_id=run_id), deps)
    return _result_response(result)


@app.get("/tools/{tool_id}/runs")
async def list_runs_route(tool_id: str, request: Request, limit: int = 20):
    org_id, _ = _actor(request)
    if not org_id:
        return _error_response("ORG_REQUIRED", "X-Org-Id header required", "headers.x-org-id", status=400)
    limit = max(1, min(limit, 100))
    runs = await anyio.to_thread.run_sync(partial(run_store.list_runs, org_id, tool_id, limit=limit))
    return _ok_response({"runs": runs})


@app.get("/tools/{tool_id}/timeline")
async def timeline_route(tool_id: str, request: Request):
    ctx, error = await _tool_context(request, tool_id)
    if error is not None:
        return error
    events = await anyio.to_thread.run_sync(aggregate_timeline, ctx["org_id"], tool_id, ctx["spec"], deps)
    return _ok_response({"timeline": events})


@app.post("/joins")
async def join_route(request: Request):
    body = await _safe_json(request)
    left = body.get("left") or []
    right = body.get("right") or []
    if not isinstance(left, list) or not isinstance(right, list):
        return _error_response("JOIN_INPUT_INVALID", "left and right must be lists", "$", status=400)
    result = await anyio.to_thread.run_sync(execute_join, body.get("definition") or {}, left, right)
    return _ok_response(result)


@app.post("/links")
async def link_route(request: Request):
    body = await _safe_json(request)
    source = body.get("source") or []
    target = body.get("target") or []
    source_field = body.get("source_field")
    target_field = body.get("target_field")
    if not isinstance(source, list) or not isinstance(target, list):
        return _error_response("LINK_INPUT_INVALID", "source and target must be lists", "$", status=400)
    if not isinstance(source_field, str) or not isinstance(target_field, str):
        return _error_response("LINK_INPUT_INVALID", "source_field and target_field required", "$", status=400)
    candidates = await anyio.to_thread.run_sync(link_entities, source, target, source_field, target_field)
    return _ok_response({"candidates": dedupe_candidates(candidates)})
