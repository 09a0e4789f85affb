"""Dependency-driven workflow scheduler.

Executes a workflow graph one node at a time in dependency order:
- Entry nodes (triggers and nodes without dependencies) seed a ready queue
- A node whose dependencies are not all settled goes to the back of the queue
- A completed condition node prunes the dependents on its untaken branch
- Skips propagate to nodes whose every incoming edge comes from a skipped node

Node failures never abort a run; they are recorded and downstream nodes
still execute. Only structural problems (unknown endpoints, cycles, a queue
that cannot make progress) and cancellation raise.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from flowrunner.core.branching import branch_taken, condition_outcome, resolve_branch
from flowrunner.core.config import EngineSettings
from flowrunner.core.executors import ExecutorServices, executor_for, utc_now
from flowrunner.core.graph_schema import (
    Branch,
    Edge,
    NodeKind,
    NodeResult,
    NodeStatus,
    WorkflowGraph,
)
from flowrunner.core.templating import output_to_text

logger = logging.getLogger(__name__)

SKIPPED_BY_CONDITION = "Overgeslagen door conditie"


class SchedulerError(Exception):
    """Error in workflow scheduling."""

    pass


class GraphStructureError(SchedulerError):
    """Graph references unknown nodes or repeats node ids."""

    pass


class CyclicWorkflowError(SchedulerError):
    """Circular dependency detected in the workflow graph."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        path = " -> ".join([*cycle, cycle[0]]) if cycle else ""
        super().__init__(f"Circular dependency detected: {path}")


class WorkflowBlockedError(SchedulerError):
    """Workflow is blocked - queued nodes can never become ready."""

    pass


class WorkflowCancelledError(SchedulerError):
    """Run was cancelled by the caller before it finished."""

    pass


@dataclass
class DependentLink:
    """Outgoing edge as seen from its source node."""

    target: str
    branch: Branch


@dataclass
class ExecutionContext:
    """Mutable bookkeeping for one run. Never shared between runs.

    ``skipped`` holds nodes skipped by branch logic, including pruned nodes
    that have no result yet. Nodes an executor reports as skipped (unknown
    kinds) are not in it: their output still flows downstream.
    """

    results: dict[str, NodeResult] = field(default_factory=dict)
    executed: set[str] = field(default_factory=set)
    skipped: set[str] = field(default_factory=set)
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    dependents: dict[str, list[DependentLink]] = field(default_factory=dict)
    incoming: dict[str, list[Edge]] = field(default_factory=dict)
    kinds: dict[str, NodeKind | None] = field(default_factory=dict)
    ready: deque[str] = field(default_factory=deque)

    @classmethod
    def build(cls, graph: WorkflowGraph) -> ExecutionContext:
        ctx = cls()
        for node in graph.nodes:
            ctx.dependencies[node.id] = []
            ctx.dependents[node.id] = []
            ctx.incoming[node.id] = []
            ctx.kinds[node.id] = node.kind
        for edge in graph.edges:
            ctx.dependencies[edge.target].append(edge.source)
            ctx.dependents[edge.source].append(DependentLink(edge.target, resolve_branch(edge)))
            ctx.incoming[edge.target].append(edge)
        return ctx

    def is_settled(self, node_id: str) -> bool:
        return node_id in self.executed or node_id in self.skipped

    def dependencies_settled(self, node_id: str) -> bool:
        return all(self.is_settled(dep) for dep in self.dependencies[node_id])

    def enqueue_dependents(self, node_id: str) -> None:
        for link in self.dependents[node_id]:
            if link.target not in self.results:
                self.ready.append(link.target)

    def previous_output(self, node_id: str) -> str:
        """Join the outputs of live dependencies; skipped ones contribute nothing."""
        outputs = [
            output_to_text(self.results[dep].output if dep in self.results else None)
            for dep in self.dependencies[node_id]
            if dep not in self.skipped
        ]
        return "\n\n".join(outputs)


ResultCallback = Callable[[str, NodeResult], Awaitable[None]]


class WorkflowEngine:
    """
    Single-run workflow scheduler.

    Holds no per-run state, so one engine can serve concurrent runs; every
    call to execute() builds its own ExecutionContext.
    """

    def __init__(
        self,
        services: ExecutorServices | None = None,
        settings: EngineSettings | None = None,
    ):
        """
        Args:
            services: Executor collaborators; their settings drive the engine too
            settings: Only for building default services. Passing settings that
                differ from ``services.settings`` raises ValueError.
        """
        if services is None:
            services = ExecutorServices(settings=settings or EngineSettings())
        elif settings is not None and settings != services.settings:
            raise ValueError("settings must match services.settings; configure them on the services")
        self.services = services

    @property
    def settings(self) -> EngineSettings:
        return self.services.settings

    def check_structure(self, graph: WorkflowGraph) -> None:
        """Reject graphs the scheduler cannot run.

        Raises:
            GraphStructureError: Unknown edge endpoints or duplicate node ids
            CyclicWorkflowError: Dependency cycle (when cycle detection is on)
        """
        errors = graph.structure_errors()
        if errors:
            raise GraphStructureError("; ".join(errors))
        if self.settings.detect_cycles:
            cycle = graph.find_cycle()
            if cycle:
                raise CyclicWorkflowError(cycle)

    async def execute(
        self,
        graph: WorkflowGraph,
        input: str,
        environment_context: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        on_result: ResultCallback | None = None,
    ) -> dict[str, NodeResult]:
        """Run every reachable node once and return the result map.

        Args:
            graph: Nodes and edges to execute
            input: Run input, emitted by trigger nodes
            environment_context: Opaque client/brand data for AI agent prompts
            cancel_event: Checked before every dequeue
            on_result: Awaited with (node_id, result) as each result is recorded

        Raises:
            GraphStructureError, CyclicWorkflowError: Before any node runs
            WorkflowBlockedError: Queued nodes can never become ready
            WorkflowCancelledError: ``cancel_event`` was set
        """
        self.check_structure(graph)
        nodes = graph.node_map()
        ctx = ExecutionContext.build(graph)

        for node in graph.nodes:
            if node.kind == NodeKind.TRIGGER or not ctx.dependencies[node.id]:
                ctx.ready.append(node.id)

        logger.info(
            f"Starting workflow: {len(graph.nodes)} nodes, {len(graph.edges)} edges, "
            f"{len(ctx.ready)} entry nodes"
        )

        async def record(node_id: str, result: NodeResult) -> None:
            ctx.results[node_id] = result
            if on_result is not None:
                await on_result(node_id, result)

        # Consecutive requeues without progress; exceeding the queue length
        # means every queued node was examined and none can run
        stalled = 0

        while ctx.ready:
            if cancel_event is not None and cancel_event.is_set():
                raise WorkflowCancelledError(
                    f"Workflow cancelled after {len(ctx.results)} of {len(nodes)} nodes"
                )

            node_id = ctx.ready.popleft()
            if node_id in ctx.results:
                continue

            if not ctx.dependencies_settled(node_id):
                ctx.ready.append(node_id)
                stalled += 1
                if stalled > len(ctx.ready):
                    waiting = sorted(set(ctx.ready))
                    raise WorkflowBlockedError(
                        f"Workflow blocked: nodes {waiting} wait on dependencies that never settle"
                    )
                continue
            stalled = 0

            if self._should_skip(node_id, ctx):
                logger.debug(f"Skipping node {node_id} (branch not taken)")
                ctx.skipped.add(node_id)
                now = utc_now()
                await record(
                    node_id,
                    NodeResult(
                        status=NodeStatus.SKIPPED,
                        output=SKIPPED_BY_CONDITION,
                        started_at=now,
                        completed_at=now,
                    ),
                )
                ctx.enqueue_dependents(node_id)
                continue

            node = nodes[node_id]
            previous_output = ctx.previous_output(node_id)
            logger.debug(f"Executing node {node_id} ({node.type})")
            result = await executor_for(node, self.services).execute(
                node, input, previous_output, ctx.results, environment_context
            )
            ctx.executed.add(node_id)
            await record(node_id, result)

            if result.status == NodeStatus.FAILED:
                logger.warning(f"Node {node_id} failed: {result.error}")

            outcome = condition_outcome(result) if node.kind == NodeKind.CONDITION else None
            if outcome is None:
                ctx.enqueue_dependents(node_id)
                continue

            logger.debug(f"Condition {node_id} evaluated to {outcome}")
            for link in ctx.dependents[node_id]:
                if link.target in ctx.results:
                    continue
                if not branch_taken(link.branch, outcome):
                    # Pruned now, recorded as skipped when dequeued
                    ctx.skipped.add(link.target)
                ctx.ready.append(link.target)

        # Pruned nodes the queue never reached
        for node_id in ctx.skipped:
            if node_id not in ctx.results:
                now = utc_now()
                await record(
                    node_id,
                    NodeResult(
                        status=NodeStatus.SKIPPED,
                        output=SKIPPED_BY_CONDITION,
                        started_at=now,
                        completed_at=now,
                    ),
                )

        unreached = [n for n in nodes if n not in ctx.results]
        if unreached:
            logger.warning(f"Nodes never reached from an entry point: {unreached}")

        totals = Counter(r.status.value for r in ctx.results.values())
        logger.info(f"Workflow finished: {dict(totals)}")
        return ctx.results

    def _should_skip(self, node_id: str, ctx: ExecutionContext) -> bool:
        """Branch propagation check for a node whose dependencies are settled.

        Skip when the node was pruned by a condition, when every incoming edge
        comes from a skipped node, or when an incoming branch edge contradicts
        its source condition's outcome.
        """
        if node_id in ctx.skipped:
            return True

        incoming = ctx.incoming[node_id]
        if incoming and all(edge.source in ctx.skipped for edge in incoming):
            return True

        for edge in incoming:
            branch = resolve_branch(edge)
            if branch == Branch.DEFAULT:
                continue
            if ctx.kinds.get(edge.source) != NodeKind.CONDITION:
                continue
            outcome = condition_outcome(ctx.results.get(edge.source))
            if outcome is not None and not branch_taken(branch, outcome):
                return True
        return False

