"""Core modules for the flowrunner engine."""

from flowrunner.core.graph_engine import (
    CyclicWorkflowError,
    GraphStructureError,
    SchedulerError,
    WorkflowBlockedError,
    WorkflowCancelledError,
    WorkflowEngine,
)
from flowrunner.core.graph_schema import Edge, Node, NodeKind, NodeResult, NodeStatus, WorkflowGraph
from flowrunner.core.runner import InputRequiredError, RunRequest, RunResponse, WorkflowRunner
from flowrunner.core.state import Database, Run, RunStatus

__all__ = [
    "CyclicWorkflowError",
    "Database",
    "Edge",
    "GraphStructureError",
    "InputRequiredError",
    "Node",
    "NodeKind",
    "NodeResult",
    "NodeStatus",
    "Run",
    "RunRequest",
    "RunResponse",
    "RunStatus",
    "SchedulerError",
    "WorkflowBlockedError",
    "WorkflowCancelledError",
    "WorkflowEngine",
    "WorkflowGraph",
    "WorkflowRunner",
]
