"""Structural validation of workflow graphs.

Used by the editor-facing API and the ``validate`` command before a
workflow is saved or run. Errors make a workflow unusable; warnings point
at configuration the author still has to fill in.
"""

from enum import Enum

import networkx as nx
from pydantic import BaseModel, Field

from flowrunner.core.graph_schema import Edge, Node, NodeKind

# Config fields a node kind cannot do without
REQUIRED_FIELDS: dict[NodeKind, tuple[str, ...]] = {
    NodeKind.AI_AGENT: ("prompt",),
    NodeKind.EMAIL: ("to", "subject"),
    NodeKind.WEBHOOK: ("url",),
    NodeKind.CONDITION: ("condition",),
}


class ValidationErrorType(str, Enum):
    MISSING_TRIGGER = "missing_trigger"
    MISSING_OUTPUT = "missing_output"
    DISCONNECTED_NODE = "disconnected_node"
    INVALID_NODE_TYPE = "invalid_node_type"
    CYCLE_DETECTED = "cycle_detected"
    INVALID_EDGE = "invalid_edge"


class ValidationWarningType(str, Enum):
    MISSING_FIELD = "missing_field"
    UNREACHABLE_NODE = "unreachable_node"


class ValidationIssue(BaseModel):
    type: ValidationErrorType | ValidationWarningType
    message: str
    node_id: str | None = Field(default=None, serialization_alias="nodeId")
    field: str | None = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _label(node: Node) -> str:
    return node.data.label or node.id


def validate_workflow(nodes: list[Node], edges: list[Edge]) -> ValidationResult:
    """Check a workflow for structural problems and missing configuration."""
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    if not any(n.kind == NodeKind.TRIGGER for n in nodes):
        errors.append(
            ValidationIssue(
                type=ValidationErrorType.MISSING_TRIGGER,
                message="Workflow moet minimaal één Start Trigger hebben",
            )
        )
    if not any(n.kind == NodeKind.OUTPUT for n in nodes):
        errors.append(
            ValidationIssue(
                type=ValidationErrorType.MISSING_OUTPUT,
                message="Workflow moet minimaal één Output node hebben",
            )
        )

    for node in nodes:
        if node.kind is None:
            errors.append(
                ValidationIssue(
                    type=ValidationErrorType.INVALID_NODE_TYPE,
                    message=f"Ongeldig node type: {node.type}",
                    node_id=node.id,
                )
            )

    node_ids = {n.id for n in nodes}
    for edge in edges:
        if edge.source not in node_ids:
            errors.append(
                ValidationIssue(
                    type=ValidationErrorType.INVALID_EDGE,
                    message=f"Edge verwijst naar onbekende source node: {edge.source}",
                )
            )
        if edge.target not in node_ids:
            errors.append(
                ValidationIssue(
                    type=ValidationErrorType.INVALID_EDGE,
                    message=f"Edge verwijst naar onbekende target node: {edge.target}",
                )
            )

    sources = {e.source for e in edges}
    targets = {e.target for e in edges}
    for node in nodes:
        has_incoming = node.id in targets
        has_outgoing = node.id in sources
        if node.kind == NodeKind.TRIGGER:
            if not has_outgoing:
                warnings.append(
                    ValidationIssue(
                        type=ValidationWarningType.UNREACHABLE_NODE,
                        message="Start Trigger is niet verbonden met andere nodes",
                        node_id=node.id,
                    )
                )
        elif node.kind == NodeKind.OUTPUT:
            if not has_incoming:
                warnings.append(
                    ValidationIssue(
                        type=ValidationWarningType.UNREACHABLE_NODE,
                        message="Output node ontvangt geen input",
                        node_id=node.id,
                    )
                )
        elif not has_incoming and not has_outgoing:
            errors.append(
                ValidationIssue(
                    type=ValidationErrorType.DISCONNECTED_NODE,
                    message=f'Node "{_label(node)}" is niet verbonden',
                    node_id=node.id,
                )
            )

    G = nx.DiGraph()
    G.add_nodes_from(node_ids)
    G.add_edges_from((e.source, e.target) for e in edges)
    if not nx.is_directed_acyclic_graph(G):
        errors.append(
            ValidationIssue(
                type=ValidationErrorType.CYCLE_DETECTED,
                message="Workflow bevat een oneindige loop",
            )
        )

    for node in nodes:
        config = node.data.config or {}
        for field in REQUIRED_FIELDS.get(node.kind, ()):
            if not config.get(field):
                warnings.append(
                    ValidationIssue(
                        type=ValidationWarningType.MISSING_FIELD,
                        message=f'"{_label(node)}" mist verplicht veld: {field}',
                        node_id=node.id,
                        field=field,
                    )
                )

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def extract_todos(nodes: list[Node], validation: ValidationResult) -> list[dict[str, str]]:
    """Turn missing-field warnings into a to-do list for the workflow author."""
    labels = {n.id: _label(n) for n in nodes}
    return [
        {
            "nodeId": warning.node_id,
            "field": warning.field,
            "reason": warning.message,
            "nodeLabel": labels.get(warning.node_id, warning.node_id),
        }
        for warning in validation.warnings
        if warning.type == ValidationWarningType.MISSING_FIELD
        and warning.node_id
        and warning.field
    ]
