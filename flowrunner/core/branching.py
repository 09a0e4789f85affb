"""Branch resolution for edges leaving condition nodes."""

from flowrunner.core.graph_schema import Branch, Edge, NodeResult, NodeStatus


def resolve_branch(edge: Edge) -> Branch:
    """Classify an edge as a true, false or default (unconditional) branch.

    Priority: explicit ``data.branch``, then ``sourceHandle`` ("true"/"false"),
    otherwise default.
    """
    if edge.data is not None and edge.data.branch is not None:
        return edge.data.branch
    if edge.source_handle == "true":
        return Branch.TRUE
    if edge.source_handle == "false":
        return Branch.FALSE
    return Branch.DEFAULT


def condition_outcome(result: NodeResult | None) -> bool | None:
    """Boolean outcome of a condition node, or None if it has none.

    Only a completed evaluation carries an outcome; failed or missing
    results never prune branches.
    """
    if result is None or result.status != NodeStatus.COMPLETED:
        return None
    output = result.output
    if isinstance(output, dict):
        return bool(output.get("result"))
    if isinstance(output, bool):
        return output
    if isinstance(output, str):
        return output == "true"
    return None


def branch_taken(branch: Branch, outcome: bool) -> bool:
    """Whether an edge with this branch tag is live for the given outcome."""
    if branch == Branch.TRUE:
        return outcome
    if branch == Branch.FALSE:
        return not outcome
    return True
