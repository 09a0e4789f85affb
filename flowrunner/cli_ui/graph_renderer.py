"""Terminal rendering of workflow graphs and run results using Rich."""

from collections.abc import Mapping

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from flowrunner.core.branching import resolve_branch
from flowrunner.core.graph_schema import (
    Branch,
    Edge,
    Node,
    NodeKind,
    NodeResult,
    NodeStatus,
    WorkflowGraph,
)
from flowrunner.core.templating import output_to_text

# Node kind symbols and colors
NODE_STYLES = {
    NodeKind.TRIGGER: ("[>]", "green"),
    NodeKind.AI_AGENT: ("[AI]", "cyan"),
    NodeKind.CONDITION: ("[?]", "magenta"),
    NodeKind.WEBHOOK: ("[W]", "blue"),
    NodeKind.DELAY: ("[D]", "yellow"),
    NodeKind.EMAIL: ("[@]", "cyan"),
    NodeKind.OUTPUT: ("[O]", "green"),
}

STATUS_COLORS = {
    "pending": "dim",
    "completed": "green",
    "failed": "red bold",
    "skipped": "dim strikethrough",
}


def _normalize_status(status: NodeStatus | str | None) -> str:
    """Normalize status to string for consistent lookup."""
    if isinstance(status, NodeStatus):
        return status.value
    return str(status) if status else "pending"


class TerminalGraphRenderer:
    """
    Renders workflow graphs as a Rich tree, starting from the entry nodes.

    Nodes reachable along several paths appear under each parent; branch
    edges are labelled with their true/false tag.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_as_tree(
        self,
        graph: WorkflowGraph,
        statuses: Mapping[str, NodeStatus | str] | None = None,
        title: str = "Workflow",
        max_depth: int = 50,
    ) -> Tree:
        tree = Tree(f"[bold]{escape(title)}[/]")
        node_map = graph.node_map()
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in graph.nodes}
        has_incoming = set()
        for edge in graph.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
            has_incoming.add(edge.target)

        entries = [n for n in graph.nodes if n.kind == NodeKind.TRIGGER or n.id not in has_incoming]
        if not entries:
            tree.add("[red]Error: no entry node found[/]")
            return tree

        for entry in entries:
            self._add_node_to_tree(tree, entry, statuses, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: Node,
        statuses: Mapping[str, NodeStatus | str] | None,
        node_map: dict[str, Node],
        edge_map: dict[str, list[Edge]],
        visited: set,
        depth: int,
        max_depth: int,
    ):
        """Recursively add nodes to tree with depth limiting."""
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        # SECURITY: Escape node labels to prevent Rich markup injection
        safe_label = escape(node.label)
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (loop)[/]")
            return
        visited.add(node.id)

        symbol, color = NODE_STYLES.get(node.kind, ("[ ]", "white"))
        status = _normalize_status(statuses.get(node.id)) if statuses else None
        if status and status != "pending":
            indicator = {"completed": " ✓", "failed": " ✗", "skipped": " ⊘"}.get(status, "")
            node_text = f"[{STATUS_COLORS.get(status, 'white')}]{escape(symbol)} {safe_label}{indicator}[/]"
        else:
            node_text = f"[{color}]{escape(symbol)} {safe_label}[/]"

        branch = parent.add(node_text)
        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                continue
            tag = resolve_branch(edge)
            target_parent = branch.add(f"[dim]({tag.value})[/]") if tag != Branch.DEFAULT else branch
            self._add_node_to_tree(
                target_parent,
                child,
                statuses,
                node_map,
                edge_map,
                visited.copy(),
                depth + 1,
                max_depth,
            )


class StatusTableRenderer:
    """Renders node results of a run as a Rich table.

    SECURITY: All user-controlled strings (node labels, outputs, run id) are escaped
    to prevent Rich markup injection.
    """

    def __init__(self, console: Console | None = None, max_output: int = 60):
        self.console = console or Console()
        self.max_output = max_output

    def render_status_table(
        self,
        graph: WorkflowGraph | None,
        run_id: str,
        results: Mapping[str, NodeResult],
    ) -> Table:
        """Render one row per node; nodes without a result show as pending."""
        table = Table(title=f"Run: {escape(run_id[:8])}...")
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output / Error", max_width=self.max_output)
        table.add_column("Tokens", justify="right")

        if graph is not None:
            rows = [(n.id, n.label, n.type) for n in graph.nodes]
        else:
            rows = [(node_id, node_id, "") for node_id in results]

        for node_id, label, node_type in rows:
            result = results.get(node_id)
            status = _normalize_status(result.status if result else None)
            if status == "completed":
                status_text = "[green]✓ Completed[/]"
            elif status == "failed":
                status_text = "[red]✗ Failed[/]"
            elif status == "skipped":
                status_text = "[dim]⊘ Skipped[/]"
            else:
                status_text = "[dim]○ Pending[/]"

            if result is None:
                detail = ""
            elif result.status == NodeStatus.FAILED:
                detail = result.error or ""
            else:
                detail = output_to_text(result.output)
            if len(detail) > self.max_output:
                detail = detail[: self.max_output - 3] + "..."
            detail = escape(detail)

            tokens = str(result.tokens_used) if result and result.tokens_used else ""
            table.add_row(escape(label), escape(node_type), status_text, detail, tokens)

        return table
