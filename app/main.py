"""FastAPI app exposing configuration sessions."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
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
from contextvars import ContextVar
from typing import Any, Dict

from app.catalog import DataverseCatalogClient, MemoryCatalog
from app.publisher import DataversePublisher, MemoryPublisher
from app.stores import FileSessionStore, MemorySessionStore
from event_bus import EventBus
from session_engine import ConfigurationSessionEngine


app = FastAPI(title="Cascade Configurator")
logger = logging.getLogger("cascade.api")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
DATAVERSE_URL = os.getenv("DATAVERSE_URL", "").strip()
DATAVERSE_TOKEN = os.getenv("DATAVERSE_TOKEN", "").strip()
DATAVERSE_TIMEOUT = float(os.getenv("DATAVERSE_TIMEOUT", "60"))
SESSION_DIR = os.getenv("CASCADE_SESSION_DIR", "").strip()

_APPROVALS: ContextVar[frozenset] = ContextVar("cascade_prompt_approvals", default=frozenset())


def _dataverse_headers() -> dict:
    headers = {
        "Accept": "application/json",
        "OData-MaxVersion": "4.0",
        "OData-Version": "4.0",
    }
    if DATAVERSE_TOKEN:
        headers["Authorization"] = f"Bearer {DATAVERSE_TOKEN}"
    return headers


def _build_collaborators():
    if DATAVERSE_URL:
        built_catalog = DataverseCatalogClient(DATAVERSE_URL, _dataverse_headers(), DATAVERSE_TIMEOUT)
        built_publisher = DataversePublisher(DATAVERSE_URL, _dataverse_headers(), DATAVERSE_TIMEOUT)
    else:
        built_catalog = MemoryCatalog()
        built_publisher = MemoryPublisher()
    if USE_DB:
        from app.stores_db import DbSessionStore

        built_store = DbSessionStore()
    elif SESSION_DIR:
        built_store = FileSessionStore(SESSION_DIR)
    else:
        built_store = MemorySessionStore()
    return built_catalog, built_publisher, built_store


catalog, publisher, session_store = _build_collaborators()
bus = EventBus()
_engines: Dict[str, ConfigurationSessionEngine] = {}


async def _request_prompt(kind: str, message: str) -> bool:
    approved = kind in _APPROVALS.get()
    logger.info("prompt kind=%s approved=%s message=%s", kind, approved, message)
    return approved


def reset_engines() -> None:
    for engine in _engines.values():
        engine.scheduler.cancel()
    _engines.clear()


def _get_engine(connection_id: str, create: bool = False) -> ConfigurationSessionEngine | None:
    engine = _engines.get(connection_id)
    if engine is None and create:
        engine = ConfigurationSessionEngine(catalog, publisher, session_store, bus=bus, prompt=_request_prompt)
        _engines[connection_id] = engine
    return engine


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("request_failed path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


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


def _result_response(result: dict, engine: ConfigurationSessionEngine) -> JSONResponse:
    body = {**result, "session": engine.describe()}
    return JSONResponse(jsonable_encoder(body), status_code=200 if result.get("ok") else 400)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _approvals(request: Request, body: dict) -> frozenset:
    items = list(request.query_params.getlist("approve"))
    raw = body.get("approve")
    if isinstance(raw, list):
        items.extend(str(item) for item in raw)
    return frozenset(items)


def _not_initialized(connection_id: str) -> JSONResponse:
    return _error_response(
        "SESSION_NOT_INITIALIZED",
        f"Session '{connection_id}' is not initialized",
        path="connection_id",
        status=404,
    )


@app.post("/sessions/{connection_id}/initialize")
async def initialize_session(connection_id: str) -> JSONResponse:
    engine = _get_engine(connection_id, create=True)
    await engine.initialize(connection_id)
    return _ok_response({"session": engine.describe()})


@app.get("/sessions/{connection_id}")
async def get_session(connection_id: str) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    return _ok_response({"session": engine.describe()})


@app.delete("/sessions/{connection_id}")
async def clear_session(connection_id: str) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    await engine.clear_session()
    return _ok_response({"session": engine.describe()})


@app.post("/sessions/{connection_id}/save")
async def save_session(connection_id: str) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    saved = await engine.flush_pending_save()
    if not saved:
        return _error_response("SESSION_SAVE_FAILED", "Session could not be saved", status=500)
    return _ok_response({"session": engine.describe()})


@app.get("/sessions/{connection_id}/solutions")
async def list_solutions(connection_id: str) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    items = [{"uniqueName": s.unique_name, "friendlyName": s.friendly_name} for s in engine.solutions]
    return _ok_response({"solutions": items})


@app.post("/sessions/{connection_id}/solution")
async def select_solution(connection_id: str, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    body = await _safe_json(request)
    unique_name = body.get("uniqueName")
    if not isinstance(unique_name, str) or not unique_name.strip():
        return _error_response("SOLUTION_REQUIRED", "uniqueName is required", "uniqueName")
    queued = engine.families["entities"].busy
    loaded = await engine.select_solution(unique_name.strip())
    if queued:
        return _ok_response(
            {"queued": True, "session": engine.describe()},
            warnings=[{"code": "SOLUTION_QUEUED", "message": f"Solution '{unique_name.strip()}' will load after the current load", "path": "uniqueName", "detail": None}],
            status=202,
        )
    if not loaded:
        return _error_response("SOLUTION_NOT_LOADED", engine.status or "Solution not loaded", "uniqueName")
    return _ok_response({"session": engine.describe()})


@app.post("/sessions/{connection_id}/parent")
async def select_parent(connection_id: str, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    body = await _safe_json(request)
    logical_name = body.get("logicalName")
    if not isinstance(logical_name, str) or not logical_name.strip():
        return _error_response("PARENT_REQUIRED", "logicalName is required", "logicalName")
    token = _APPROVALS.set(_approvals(request, body))
    try:
        selected = await engine.select_parent_entity(logical_name.strip())
    finally:
        _APPROVALS.reset(token)
    if not selected:
        return _error_response("PARENT_NOT_SELECTED", engine.status, "logicalName")
    return _ok_response({"session": engine.describe()})


@app.get("/sessions/{connection_id}/configurations")
async def list_configurations(connection_id: str) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    return _ok_response({"configurations": await engine.list_existing_configurations()})


@app.post("/sessions/{connection_id}/configurations/load")
async def load_configuration(connection_id: str, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    body = await _safe_json(request)
    parent_entity = body.get("parentEntity")
    if not isinstance(parent_entity, str) or not parent_entity.strip():
        return _error_response("PARENT_REQUIRED", "parentEntity is required", "parentEntity")
    token = _APPROVALS.set(_approvals(request, body))
    try:
        result = await engine.load_existing_configuration(parent_entity.strip())
    finally:
        _APPROVALS.reset(token)
    return _result_response(result, engine)


@app.get("/sessions/{connection_id}/relationships/available")
async def available_relationships(connection_id: str) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    items = [
        {
            "schemaName": r.schema_name,
            "childEntity": r.referencing_entity,
            "lookupField": r.referencing_attribute,
            "displayName": r.display_name,
        }
        for r in engine.list_available_relationships()
    ]
    return _ok_response({"relationships": items})


@app.post("/sessions/{connection_id}/relationships")
async def add_relationship(connection_id: str, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    body = await _safe_json(request)
    schema_name = body.get("schemaName")
    if not isinstance(schema_name, str) or not schema_name.strip():
        return _error_response("RELATIONSHIP_REQUIRED", "schemaName is required", "schemaName")
    tab = await engine.add_relationship(schema_name.strip())
    if tab is None:
        return _error_response("RELATIONSHIP_NOT_ADDED", engine.status, "schemaName")
    return _ok_response({"tab": tab.snapshot(), "session": engine.describe()})


@app.delete("/sessions/{connection_id}/relationships/{tab_id}")
async def remove_relationship(connection_id: str, tab_id: str, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    if engine.get_tab(tab_id) is None:
        return _error_response("TAB_NOT_FOUND", f"Tab '{tab_id}' not found", "tab_id", status=404)
    token = _APPROVALS.set(_approvals(request, {}))
    try:
        removed = await engine.remove_relationship(tab_id)
    finally:
        _APPROVALS.reset(token)
    if not removed:
        return _error_response("CONFIRMATION_REQUIRED", engine.status, "approve", status=409)
    return _ok_response({"session": engine.describe()})


@app.post("/sessions/{connection_id}/tabs/{tab_id}/select")
async def select_tab(connection_id: str, tab_id: str) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    tab = engine.select_tab(tab_id)
    if tab is None:
        return _error_response("TAB_NOT_FOUND", f"Tab '{tab_id}' not found", "tab_id", status=404)
    return _ok_response({"tab": tab.snapshot()})


def _mapping_changes(body: dict) -> dict:
    changes: Dict[str, Any] = {}
    if isinstance(body.get("sourceField"), str):
        changes["source_field"] = body["sourceField"]
    if isinstance(body.get("targetField"), str):
        changes["target_field"] = body["targetField"]
    if isinstance(body.get("isTriggerField"), bool):
        changes["is_trigger_field"] = body["isTriggerField"]
    return changes


def _filter_changes(body: dict) -> dict:
    changes: Dict[str, Any] = {}
    for key in ("field", "operator", "value"):
        if isinstance(body.get(key), str):
            changes[key] = body[key]
    return changes


@app.patch("/sessions/{connection_id}/tabs/{tab_id}/mappings/{index}")
async def set_mapping(connection_id: str, tab_id: str, index: int, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    tab = engine.get_tab(tab_id)
    if tab is None:
        return _error_response("TAB_NOT_FOUND", f"Tab '{tab_id}' not found", "tab_id", status=404)
    try:
        tab.set_mapping(index, **_mapping_changes(await _safe_json(request)))
    except IndexError as exc:
        return _error_response("ROW_NOT_FOUND", str(exc), "index", status=404)
    return _ok_response({"tab": tab.snapshot(), "json": engine.json})


@app.delete("/sessions/{connection_id}/tabs/{tab_id}/mappings/{index}")
async def remove_mapping(connection_id: str, tab_id: str, index: int) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    tab = engine.get_tab(tab_id)
    if tab is None:
        return _error_response("TAB_NOT_FOUND", f"Tab '{tab_id}' not found", "tab_id", status=404)
    if not tab.remove_mapping(index):
        return _error_response("ROW_NOT_FOUND", f"mapping row {index} cannot be removed", "index", status=404)
    return _ok_response({"tab": tab.snapshot(), "json": engine.json})


@app.patch("/sessions/{connection_id}/tabs/{tab_id}/filters/{index}")
async def set_filter(connection_id: str, tab_id: str, index: int, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    tab = engine.get_tab(tab_id)
    if tab is None:
        return _error_response("TAB_NOT_FOUND", f"Tab '{tab_id}' not found", "tab_id", status=404)
    try:
        tab.set_filter(index, **_filter_changes(await _safe_json(request)))
    except IndexError as exc:
        return _error_response("ROW_NOT_FOUND", str(exc), "index", status=404)
    return _ok_response({"tab": tab.snapshot(), "json": engine.json})


@app.delete("/sessions/{connection_id}/tabs/{tab_id}/filters/{index}")
async def remove_filter(connection_id: str, tab_id: str, index: int) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    tab = engine.get_tab(tab_id)
    if tab is None:
        return _error_response("TAB_NOT_FOUND", f"Tab '{tab_id}' not found", "tab_id", status=404)
    if not tab.remove_filter(index):
        return _error_response("ROW_NOT_FOUND", f"filter row {index} cannot be removed", "index", status=404)
    return _ok_response({"tab": tab.snapshot(), "json": engine.json})


@app.post("/sessions/{connection_id}/flags")
async def set_flags(connection_id: str, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    body = await _safe_json(request)
    is_active = body.get("isActive")
    enable_tracing = body.get("enableTracing")
    engine.set_flags(
        is_active=is_active if isinstance(is_active, bool) else None,
        enable_tracing=enable_tracing if isinstance(enable_tracing, bool) else None,
    )
    return _ok_response({"json": engine.json})


@app.post("/sessions/{connection_id}/apply")
async def apply_configuration(connection_id: str, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    body = await _safe_json(request)
    text = body.get("json")
    if not isinstance(text, str):
        return _error_response("CONFIG_EMPTY", "json must be a string", "json")
    token = _APPROVALS.set(_approvals(request, body))
    try:
        result = await engine.apply_configuration(text, mark_as_published=bool(body.get("markAsPublished")))
    finally:
        _APPROVALS.reset(token)
    return _result_response(result, engine)


@app.post("/sessions/{connection_id}/publish")
async def publish(connection_id: str, request: Request) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    body = await _safe_json(request)
    token = _APPROVALS.set(_approvals(request, body))
    try:
        result = await engine.publish()
    finally:
        _APPROVALS.reset(token)
    return _result_response(result, engine)


@app.get("/sessions/{connection_id}/json")
async def get_json(connection_id: str) -> JSONResponse:
    engine = _get_engine(connection_id)
    if engine is None:
        return _not_initialized(connection_id)
    return _ok_response({"json": engine.json, "hasUnpublishedChanges": engine.has_unpublished_changes})


@app.get("/sessions/{connection_id}/events")
async def list_events(connection_id: str, since: str | None = None, limit: int = 50) -> JSONResponse:
    if _get_engine(connection_id) is None:
        return _not_initialized(connection_id)
    return _ok_response({"events": bus.recent(connection_id, since=since, limit=limit)})
