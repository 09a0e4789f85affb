"""Tests for the dependency-driven workflow scheduler."""

import asyncio
from dataclasses import replace

import pytest

from flowrunner.core.config import EngineSettings
from flowrunner.core.executors import ConditionExecutor
from flowrunner.core.graph_engine import (
    SKIPPED_BY_CONDITION,
    CyclicWorkflowError,
    GraphStructureError,
    WorkflowBlockedError,
    WorkflowCancelledError,
    WorkflowEngine,
)
from flowrunner.core.graph_schema import NodeStatus


class TestLinearWorkflows:
    @pytest.mark.asyncio
    async def test_output_passes_trigger_input_through(self, engine, node, edge, graph):
        g = graph([node("t", "trigger"), node("o", "output")], [edge("t", "o")])
        results = await engine.execute(g, "hello world")
        assert results["o"].status == NodeStatus.COMPLETED
        assert results["o"].output == "hello world"

    @pytest.mark.asyncio
    async def test_ai_agent_output_reaches_output_node(self, engine, node, edge, graph, fake_adapter):
        fake_adapter.content = "Bonjour"
        g = graph(
            [node("t", "trigger"), node("ai", "aiAgent", prompt="{{input}}"), node("o", "output")],
            [edge("t", "ai"), edge("ai", "o")],
        )
        results = await engine.execute(g, "hello")
        assert results["ai"].status == NodeStatus.COMPLETED
        assert results["ai"].output == "Bonjour"
        assert results["ai"].tokens_used == 15
        assert results["o"].output == results["ai"].output
        assert fake_adapter.calls[0].user_prompt == "hello"

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_run(self, engine, node, edge, graph):
        g = graph(
            [node("t", "trigger"), node("w", "webhook"), node("o", "output")],
            [edge("t", "w"), edge("w", "o")],
        )
        results = await engine.execute(g, "x")
        assert results["w"].status == NodeStatus.FAILED
        assert results["o"].status == NodeStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_kind_passes_data_downstream(self, engine, node, edge, graph):
        g = graph(
            [node("t", "trigger"), node("u", "spreadsheet"), node("o", "output")],
            [edge("t", "u"), edge("u", "o")],
        )
        results = await engine.execute(g, "rows")
        assert results["u"].status == NodeStatus.SKIPPED
        assert results["o"].status == NodeStatus.COMPLETED
        assert results["o"].output == "rows"

    @pytest.mark.asyncio
    async def test_nodes_without_dependencies_are_entry_points(self, engine, node, graph):
        results = await engine.execute(graph([node("d", "delay"), node("o", "output")]), "x")
        assert results["d"].status == NodeStatus.COMPLETED
        assert results["o"].output == ""


class TestFanIn:
    @pytest.mark.asyncio
    async def test_each_node_executed_once(self, engine, node, edge, graph):
        g = graph(
            [node("t", "trigger"), node("a", "delay"), node("b", "delay"), node("o", "output")],
            [edge("t", "a"), edge("t", "b"), edge("a", "o"), edge("b", "o")],
        )
        recorded = []

        async def on_result(node_id, result):
            recorded.append(node_id)

        results = await engine.execute(g, "in", on_result=on_result)

        assert sorted(recorded) == ["a", "b", "o", "t"]
        assert set(results) == {"t", "a", "b", "o"}
        assert results["o"].output == "in\n\nin"

    @pytest.mark.asyncio
    async def test_waits_for_slower_dependency_order(self, engine, node, edge, graph):
        # "o" is listed first and depends on a chain; it must still run last
        g = graph(
            [node("o", "output"), node("t", "trigger"), node("a", "delay"), node("b", "delay")],
            [edge("t", "a"), edge("a", "b"), edge("b", "o"), edge("t", "o")],
        )
        order = []

        async def on_result(node_id, result):
            order.append(node_id)

        await engine.execute(g, "v", on_result=on_result)
        assert order.index("o") == len(order) - 1


class TestConditionBranching:
    def _branching_graph(self, node, edge, graph):
        return graph(
            [
                node("t", "trigger"),
                node("c", "condition", condition="yes", mode="contains"),
                node("e", "email", to="team@example.com"),
                node("w", "webhook", url="https://hooks.example.com/in"),
            ],
            [edge("t", "c"), edge("c", "e", handle="true"), edge("c", "w", handle="false")],
        )

    @pytest.mark.asyncio
    async def test_true_branch_runs_false_branch_skipped(self, engine, node, edge, graph, email_sender):
        results = await engine.execute(self._branching_graph(node, edge, graph), "yes please")

        assert results["c"].output["result"] is True
        assert results["e"].status == NodeStatus.COMPLETED
        assert results["w"].status == NodeStatus.SKIPPED
        assert results["w"].output == SKIPPED_BY_CONDITION
        email_sender.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_false_branch(self, engine, node, edge, graph, email_sender):
        g = self._branching_graph(node, edge, graph)
        # Webhook still needs a transport; drop it for a delay on the false branch
        g.nodes[3] = node("w", "delay")
        results = await engine.execute(g, "no thanks")

        assert results["c"].output["result"] is False
        assert results["e"].status == NodeStatus.SKIPPED
        assert results["w"].status == NodeStatus.COMPLETED
        email_sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_branch_from_edge_data(self, engine, node, edge, graph):
        g = graph(
            [node("t", "trigger"), node("c", "condition", condition="yes"), node("a", "delay")],
            [edge("t", "c"), edge("c", "a", branch="false")],
        )
        results = await engine.execute(g, "yes")
        assert results["a"].status == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_skip_propagates_transitively(self, engine, node, edge, graph):
        g = graph(
            [
                node("t", "trigger"),
                node("c", "condition", condition="yes"),
                node("a", "delay"),
                node("b", "delay"),
                node("o", "output"),
            ],
            [edge("t", "c"), edge("c", "a", handle="false"), edge("a", "b"), edge("b", "o")],
        )
        results = await engine.execute(g, "yes")
        assert results["a"].status == NodeStatus.SKIPPED
        assert results["b"].status == NodeStatus.SKIPPED
        assert results["o"].status == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_skipped_dependency_contributes_nothing(self, engine, node, edge, graph):
        g = graph(
            [
                node("t", "trigger"),
                node("c", "condition", condition="X"),
                node("a", "delay"),
                node("m", "output"),
            ],
            [edge("t", "c"), edge("c", "a", handle="false"), edge("a", "m"), edge("t", "m")],
        )
        results = await engine.execute(g, "X")
        assert results["a"].status == NodeStatus.SKIPPED
        assert results["m"].status == NodeStatus.COMPLETED
        assert results["m"].output == "X"

    @pytest.mark.asyncio
    async def test_merge_after_branches_runs_with_live_side(self, engine, node, edge, graph):
        g = graph(
            [
                node("t", "trigger"),
                node("c", "condition", condition="go"),
                node("yes", "delay"),
                node("no", "delay"),
                node("o", "output"),
            ],
            [
                edge("t", "c"),
                edge("c", "yes", handle="true"),
                edge("c", "no", handle="false"),
                edge("yes", "o"),
                edge("no", "o"),
            ],
        )
        results = await engine.execute(g, "go")
        assert results["no"].status == NodeStatus.SKIPPED
        assert results["o"].status == NodeStatus.COMPLETED
        assert '"result": true' in results["o"].output

    @pytest.mark.asyncio
    async def test_null_condition_config_still_prunes(self, engine, node, edge, graph):
        g = graph(
            [
                node("t", "trigger"),
                node("c", "condition", condition=None, mode=None, caseSensitive=None),
                node("a", "delay"),
                node("b", "delay"),
            ],
            [edge("t", "c"), edge("c", "a", handle="true"), edge("c", "b", handle="false")],
        )
        results = await engine.execute(g, "anything")

        assert results["c"].status == NodeStatus.COMPLETED
        assert results["c"].output["result"] is True
        assert results["a"].status == NodeStatus.COMPLETED
        assert results["b"].status == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_failed_condition_runs_all_dependents(self, engine, node, edge, graph, monkeypatch):
        async def explode(self, *args):
            raise RuntimeError("condition crashed")

        monkeypatch.setattr(ConditionExecutor, "run", explode)
        g = graph(
            [node("t", "trigger"), node("c", "condition"), node("a", "delay"), node("b", "delay")],
            [edge("t", "c"), edge("c", "a", handle="true"), edge("c", "b", handle="false")],
        )
        results = await engine.execute(g, "x")
        assert results["c"].status == NodeStatus.FAILED
        assert results["a"].status == NodeStatus.COMPLETED
        assert results["b"].status == NodeStatus.COMPLETED


class TestStructuralErrors:
    @pytest.mark.asyncio
    async def test_cycle_rejected_before_execution(self, engine, node, edge, graph, fake_adapter):
        g = graph(
            [node("t", "trigger"), node("a", "aiAgent"), node("b", "aiAgent")],
            [edge("t", "a"), edge("a", "b"), edge("b", "a")],
        )
        with pytest.raises(CyclicWorkflowError) as exc_info:
            await engine.execute(g, "x")
        assert set(exc_info.value.cycle) == {"a", "b"}
        assert "Circular dependency detected" in str(exc_info.value)
        assert fake_adapter.calls == []

    @pytest.mark.asyncio
    async def test_cycle_without_detection_is_blocked(self, services, node, edge, graph):
        engine = WorkflowEngine(replace(services, settings=EngineSettings(detect_cycles=False)))
        g = graph(
            [node("t", "trigger"), node("a", "delay"), node("b", "delay")],
            [edge("t", "a"), edge("a", "b"), edge("b", "a")],
        )
        with pytest.raises(WorkflowBlockedError, match="Workflow blocked"):
            await engine.execute(g, "x")

    @pytest.mark.asyncio
    async def test_unknown_edge_endpoint(self, engine, node, edge, graph):
        g = graph([node("t", "trigger")], [edge("t", "ghost")])
        with pytest.raises(GraphStructureError, match="target 'ghost' not found"):
            await engine.execute(g, "x")

    @pytest.mark.asyncio
    async def test_duplicate_node_ids(self, engine, node, graph):
        g = graph([node("t", "trigger"), node("t", "output")])
        with pytest.raises(GraphStructureError, match="Duplicate node ID"):
            await engine.execute(g, "x")


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self, engine, node, edge, graph):
        cancel = asyncio.Event()
        cancel.set()
        g = graph([node("t", "trigger"), node("o", "output")], [edge("t", "o")])
        with pytest.raises(WorkflowCancelledError):
            await engine.execute(g, "x", cancel_event=cancel)

    @pytest.mark.asyncio
    async def test_cancel_between_nodes(self, engine, node, edge, graph):
        cancel = asyncio.Event()
        recorded = []

        async def on_result(node_id, result):
            recorded.append(node_id)
            cancel.set()

        g = graph([node("t", "trigger"), node("o", "output")], [edge("t", "o")])
        with pytest.raises(WorkflowCancelledError, match="after 1 of 2 nodes"):
            await engine.execute(g, "x", cancel_event=cancel, on_result=on_result)
        assert recorded == ["t"]


class TestEngineSettings:
    def test_settings_come_from_services(self, services):
        engine = WorkflowEngine(services, settings=services.settings)
        assert engine.settings is services.settings

    def test_conflicting_settings_rejected(self, services):
        with pytest.raises(ValueError, match="settings must match services.settings"):
            WorkflowEngine(services, settings=EngineSettings(detect_cycles=False))

    def test_settings_build_default_services(self):
        settings = EngineSettings(delay_cap_seconds=5)
        engine = WorkflowEngine(settings=settings)
        assert engine.services.settings is settings
        assert engine.settings.delay_cap_seconds == 5
