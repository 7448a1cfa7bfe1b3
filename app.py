# app.py — logic tool service
# - JSON surface for module settings, truth-table attempts and grading
# - every request re-resolves the attempt graph from storage (no session state)

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query

import db
import grading
import module_catalog
import problem_bank
from errors import (
    AttemptClosedError,
    ConcurrencyViolation,
    ConfigurationError,
    LogicToolError,
    NotFoundError,
    ParseError,
    StorageError,
    VariableMismatchError,
)
from schemas import (
    AnswersPayload,
    AttemptGraph,
    AttemptView,
    GradeRecord,
    GradeResult,
    ModuleSettings,
    ModuleSettingsPayload,
    SubmitPayload,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        catalog = os.getenv("LOGIC_MODULE_CATALOG")
        if catalog:
            module_catalog.load_catalog(catalog)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Logic Tool", version="1.0.0", lifespan=_lifespan)

GRADE_SINK = grading.DatabaseGradeSink()

_HIDDEN_WHILE_OPEN = {"problems": {"__all__": {"rows": {"__all__": {"correct_value"}}}}}


# ---------- Helpers ----------
def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AttemptClosedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ConfigurationError, ParseError, VariableMismatchError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, NotImplementedError):
        return HTTPException(status_code=501, detail=str(exc))
    if isinstance(exc, (StorageError, ConcurrencyViolation)):
        logger.error("Logic tool internal failure: %s", exc, exc_info=exc)
        return HTTPException(status_code=500, detail="internal storage error")
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.error("Unexpected logic tool failure: %s", exc, exc_info=exc)
    return HTTPException(status_code=500, detail="internal error")


def _graph_payload(graph: AttemptGraph) -> Dict[str, Any]:
    """Serialize an attempt graph; correct values stay hidden until the attempt is closed."""
    if graph.mode == AttemptView.INITIAL:
        return graph.model_dump(mode="json", exclude=_HIDDEN_WHILE_OPEN)
    return graph.model_dump(mode="json")


def _ensure_owner(graph: AttemptGraph, user_id: str) -> None:
    if graph.attempt.user_id != user_id:
        raise HTTPException(status_code=403, detail="attempt does not belong to user")


# ---------- Modules ----------
@app.put("/modules/{module_id}", response_model=ModuleSettings)
def put_module(module_id: int, payload: ModuleSettingsPayload):
    try:
        settings = ModuleSettings(module_id=module_id, **payload.model_dump())
        return module_catalog.register_module(settings)
    except (LogicToolError, ValueError) as exc:
        raise _http_error(exc) from exc


@app.get("/modules", response_model=List[ModuleSettings])
def list_modules(course_id: Optional[int] = None):
    return module_catalog.list_modules(course_id)


@app.get("/modules/{module_id}", response_model=ModuleSettings)
def get_module(module_id: int):
    try:
        return module_catalog.get_module(module_id)
    except LogicToolError as exc:
        raise _http_error(exc) from exc


@app.delete("/modules/{module_id}")
def delete_module(module_id: int):
    if not module_catalog.delete_module(module_id):
        raise HTTPException(status_code=404, detail="module not found")
    return {"module_id": module_id, "deleted": True}


@app.get("/modules/{module_id}/grades", response_model=List[GradeRecord])
def list_grades(module_id: int):
    return [GradeRecord(**row) for row in db.list_grades(module_id)]


# ---------- Attempts ----------
@app.get("/modules/{module_id}/attempt")
def resolve_attempt(module_id: int, user_id: str = Query(..., min_length=1)):
    try:
        settings = module_catalog.get_module(module_id)
        graph = problem_bank.resolve_attempt(settings, user_id)
    except (LogicToolError, NotImplementedError) as exc:
        raise _http_error(exc) from exc
    return _graph_payload(graph)


@app.get("/attempts/{attempt_id}")
def get_attempt(attempt_id: int, user_id: str = Query(..., min_length=1)):
    try:
        graph = problem_bank.load_attempt_graph(attempt_id)
    except (LogicToolError, NotImplementedError) as exc:
        raise _http_error(exc) from exc
    _ensure_owner(graph, user_id)
    return _graph_payload(graph)


@app.post("/attempts/{attempt_id}/answers")
def save_answers(attempt_id: int, payload: AnswersPayload):
    try:
        graph = problem_bank.load_attempt_graph(attempt_id)
        _ensure_owner(graph, payload.user_id)
        updated = grading.apply_input(attempt_id, payload.answers)
        graph = problem_bank.load_attempt_graph(attempt_id)
    except (LogicToolError, NotImplementedError, ValueError) as exc:
        raise _http_error(exc) from exc
    return {"attempt_id": attempt_id, "updated": updated, "attempt": _graph_payload(graph)}


@app.post("/attempts/{attempt_id}/submit", response_model=GradeResult)
def submit_attempt(attempt_id: int, payload: SubmitPayload):
    try:
        graph = problem_bank.load_attempt_graph(attempt_id)
        _ensure_owner(graph, payload.user_id)
        return grading.submit_attempt(attempt_id, payload.answers, sink=GRADE_SINK)
    except (LogicToolError, NotImplementedError, ValueError) as exc:
        raise _http_error(exc) from exc
