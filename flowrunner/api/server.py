"""FastAPI request handlers for workflow execution.

This module provides:
- Workflow execution and validation endpoints
- Read access to recorded runs
- The model list with provider availability

Runs execute inside the request; the response carries every node result.
Serve ``flowrunner.api.server:app`` with any ASGI server.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from flowrunner import __version__
from flowrunner.core.config import EngineSettings, load_settings
from flowrunner.core.executors import ExecutorServices
from flowrunner.core.graph_engine import (
    CyclicWorkflowError,
    GraphStructureError,
    WorkflowEngine,
)
from flowrunner.core.graph_schema import Edge, Node, WorkflowGraph
from flowrunner.core.runner import InputRequiredError, RunRequest, WorkflowRunner
from flowrunner.core.state import Database
from flowrunner.core.validate import extract_todos, validate_workflow

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Flowrunner API",
    description="Execute and inspect automation workflows",
    version=__version__,
)

# Lazily created singletons
_settings: EngineSettings | None = None
_db: Database | None = None
_runner: WorkflowRunner | None = None


def get_settings() -> EngineSettings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_db() -> Database:
    """Get or create database instance."""
    global _db
    if _db is None:
        _db = Database(get_settings().database_path)
    return _db


def get_runner() -> WorkflowRunner:
    """Get or create the workflow runner, recording into the shared database."""
    global _runner
    if _runner is None:
        settings = get_settings()
        engine = WorkflowEngine(ExecutorServices(settings=settings))
        _runner = WorkflowRunner(engine, get_db())
    return _runner


# ========== API Models ==========


class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteRequest(_CamelRequest):
    """Request to execute a workflow"""

    workflow_id: str | None = None
    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)
    input: str = ""
    environment_context: dict[str, Any] | None = None


class ValidateRequest(_CamelRequest):
    """Request to validate a workflow"""

    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)


# ========== Endpoints ==========


@app.post("/api/workflows/execute")
async def execute_workflow(request: ExecuteRequest) -> Any:
    """Execute a workflow and return all node results."""
    runner = get_runner()
    run_request = RunRequest(
        graph=WorkflowGraph(nodes=request.nodes, edges=request.edges),
        input=request.input,
        workflow_id=request.workflow_id,
        environment_context=request.environment_context,
    )

    # Checks that happen before a run is recorded
    try:
        runner.check_input(run_request)
        runner.engine.check_structure(run_request.graph)
    except (InputRequiredError, GraphStructureError, CyclicWorkflowError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    run_id = await run_in_threadpool(runner.create_run, run_request)
    try:
        response = await runner.run(run_request, run_id=run_id)
    except Exception as e:
        logger.error(f"Workflow execution error: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "runId": run_id, "error": str(e) or type(e).__name__},
        )

    return response.to_json()


@app.post("/api/workflows/validate")
def validate(request: ValidateRequest) -> dict[str, Any]:
    """Validate a workflow's structure and list fields still to fill in."""
    result = validate_workflow(request.nodes, request.edges)
    payload = result.to_json()
    payload["todos"] = extract_todos(request.nodes, result)
    return payload


@app.get("/api/runs")
def list_runs(workflow_id: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    """List recent runs, newest first, without node results."""
    runs = get_db().list_runs(limit=limit, workflow_id=workflow_id)
    payload = []
    for run in runs:
        item = run.to_json()
        item.pop("nodeResults")
        payload.append(item)
    return payload


@app.get("/api/runs/{run_id}")
def get_run(run_id: str) -> dict[str, Any]:
    """Get one run with its node results."""
    run = get_db().get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.to_json()


@app.get("/api/models")
def list_models() -> dict[str, Any]:
    """Selectable models with provider availability."""
    registry = get_runner().engine.services.providers
    return {"models": registry.list_models(), "default": get_settings().default_model}
