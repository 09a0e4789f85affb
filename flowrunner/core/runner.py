"""Run orchestration: input checks, run recording and the engine call.

WorkflowRunner is what request handlers and the CLI call. It owns the
decisions the scheduler leaves to its caller: whether the run needs input,
what the run's overall status is, and which value is "the" output.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from flowrunner.core.graph_engine import WorkflowCancelledError, WorkflowEngine
from flowrunner.core.graph_schema import NodeResult, NodeStatus, WorkflowGraph
from flowrunner.core.state import RunRecorder, RunStatus

logger = logging.getLogger(__name__)


class InputRequiredError(ValueError):
    """The workflow's manual trigger needs input and none was given."""

    pass


@dataclass
class RunRequest:
    """Everything needed to execute a workflow once."""

    graph: WorkflowGraph
    input: str = ""
    workflow_id: str | None = None
    environment_context: dict[str, Any] | None = None


@dataclass
class RunResponse:
    """Outcome of a finished run."""

    run_id: str
    status: RunStatus
    results: dict[str, NodeResult] = field(default_factory=dict)
    output: Any = None
    error: str | None = None
    error_node_id: str | None = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,  # Node failures are reported per node, not as a request failure
            "runId": self.run_id,
            "status": self.status.value,
            "results": {k: v.to_json() for k, v in self.results.items()},
            "output": self.output,
        }
        if self.error:
            payload["error"] = self.error
        if self.error_node_id:
            payload["errorNodeId"] = self.error_node_id
        return payload


def summarize_failures(results: dict[str, NodeResult]) -> tuple[RunStatus, str | None, str | None]:
    """Derive (status, error_message, error_node_id) from node results."""
    failed = [node_id for node_id, r in results.items() if r.status == NodeStatus.FAILED]
    if not failed:
        return RunStatus.COMPLETED, None, None
    first = results[failed[0]]
    message = f"Failed nodes: {', '.join(failed)}"
    if first.error:
        message += f" ({failed[0]}: {first.error})"
    return RunStatus.FAILED, message, failed[0]


class WorkflowRunner:
    """Execute workflows and record each run.

    Without a recorder, runs still get an id but nothing is persisted.
    Recorder calls run in a worker thread so SQLite writes never block the
    event loop.
    """

    def __init__(self, engine: WorkflowEngine, recorder: RunRecorder | None = None):
        self.engine = engine
        self.recorder = recorder

    def create_run(self, request: RunRequest) -> str:
        """Record a new running run and return its id."""
        if self.recorder is not None:
            return self.recorder.create_run(request.workflow_id, request.input)
        return str(uuid.uuid4())

    def check_input(self, request: RunRequest) -> None:
        """Raise InputRequiredError when a manual trigger has no input."""
        if request.graph.requires_input() and not request.input:
            raise InputRequiredError("Input is required")

    async def run(
        self,
        request: RunRequest,
        cancel_event: asyncio.Event | None = None,
        run_id: str | None = None,
    ) -> RunResponse:
        """Execute a workflow and record the run.

        Raises:
            InputRequiredError: Before any run is created
            SchedulerError: Structural problem or cancellation; the run is
                recorded as failed/cancelled first when a recorder is set
        """
        self.check_input(request)
        self.engine.check_structure(request.graph)
        if run_id is None:
            run_id = await asyncio.to_thread(self.create_run, request)
        logger.info(f"Run {run_id} started (workflow={request.workflow_id})")

        async def on_result(node_id: str, result: NodeResult) -> None:
            if self.recorder is not None:
                await asyncio.to_thread(self.recorder.record_node_result, run_id, node_id, result)

        try:
            results = await self.engine.execute(
                request.graph,
                request.input,
                environment_context=request.environment_context,
                cancel_event=cancel_event,
                on_result=on_result,
            )
        except WorkflowCancelledError as e:
            logger.info(f"Run {run_id} cancelled")
            if self.recorder is not None:
                await asyncio.to_thread(
                    self.recorder.update_run, run_id, RunStatus.CANCELLED, error_message=str(e)
                )
            raise
        except Exception as e:
            logger.error(f"Run {run_id} failed: {e}")
            if self.recorder is not None:
                await asyncio.to_thread(
                    self.recorder.update_run,
                    run_id, RunStatus.FAILED, error_message=str(e) or type(e).__name__
                )
            raise

        status, error, error_node_id = summarize_failures(results)
        if self.recorder is not None:
            await asyncio.to_thread(
                self.recorder.update_run,
                run_id,
                status,
                node_results=results,
                error_message=error,
                error_node_id=error_node_id,
            )

        output_id = request.graph.output_node_id()
        output = results[output_id].output if output_id in results else None
        logger.info(f"Run {run_id} {status.value}")
        return RunResponse(
            run_id=run_id,
            status=status,
            results=results,
            output=output,
            error=error,
            error_node_id=error_node_id,
        )
