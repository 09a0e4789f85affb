"""Graph workflow schema definitions using Pydantic models.

Workflows are user-authored automation graphs: typed nodes (trigger, AI agent,
condition, webhook, delay, email, output) connected by directed edges. An edge
means "target depends on source" and may carry a branch tag when it leaves a
condition node.

The JSON shape follows the visual editor: camelCase keys (``sourceHandle``,
``startedAt``) are accepted and emitted, snake_case works from Python.
"""

from datetime import datetime
from enum import Enum
from typing import Any

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeKind(str, Enum):
    """Node kinds the engine knows how to execute"""

    TRIGGER = "trigger"  # Entry point, emits the run input
    AI_AGENT = "aiAgent"  # Text generation through a model provider
    CONDITION = "condition"  # Boolean test selecting the true/false branch
    WEBHOOK = "webhook"  # Outbound HTTP call
    DELAY = "delay"  # Bounded pause, passes data through
    EMAIL = "email"  # Send the output by email
    OUTPUT = "output"  # Final result of the run


_KIND_LOOKUP = {kind.value.lower(): kind for kind in NodeKind}


def parse_node_kind(node_type: str | None) -> NodeKind | None:
    """Map a node type string to a NodeKind, or None when unknown.

    Accepts the editor names (``triggerNode``, ``aiAgentNode``), the short
    names (``trigger``, ``aiAgent``) and dashed/underscored spellings
    (``ai-agent``, ``ai_agent``).
    """
    if not node_type:
        return None
    key = node_type.removesuffix("Node").replace("-", "").replace("_", "").lower()
    return _KIND_LOOKUP.get(key)


class NodeStatus(str, Enum):
    """Terminal status of a node within one run"""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Skipped due to branch conditions or unknown kind


class Branch(str, Enum):
    """Branch tag carried by an edge"""

    TRUE = "true"
    FALSE = "false"
    DEFAULT = "default"  # Unconditional


# --- Per-kind configuration ---
# Editor payloads may carry explicit nulls; executors treat null as the default.


class TriggerConfig(_CamelModel):
    """Configuration for trigger nodes"""

    model_config = ConfigDict(extra="allow")

    trigger_type: str | None = "manual"  # manual, schedule, webhook
    input_required: bool | None = None
    input_placeholder: str | None = None


class AIAgentConfig(_CamelModel):
    """Configuration for AI agent nodes"""

    model_config = ConfigDict(extra="allow")

    model: str | None = None  # Registry id, e.g. "claude-sonnet"
    prompt: str | None = ""
    temperature: float | None = None
    max_tokens: int | None = None


class ConditionConfig(_CamelModel):
    """Configuration for condition nodes"""

    model_config = ConfigDict(extra="allow")

    condition: str | None = ""
    mode: str | None = "contains"  # contains, equals, not_equals, regex
    case_sensitive: bool | None = False
    true_label: str | None = None
    false_label: str | None = None


class WebhookConfig(_CamelModel):
    """Configuration for webhook nodes"""

    model_config = ConfigDict(extra="allow")

    url: str | None = None
    method: str | None = "POST"
    headers: dict[str, str] | None = Field(default_factory=dict)
    body_template: str | None = None


class DelayConfig(_CamelModel):
    """Configuration for delay nodes.

    ``unit`` is kept for the editor but the duration is always read as seconds.
    """

    model_config = ConfigDict(extra="allow")

    duration: float | None = None
    unit: str | None = "seconds"


class EmailConfig(_CamelModel):
    """Configuration for email nodes"""

    model_config = ConfigDict(extra="allow")

    to: str | None = None
    subject: str | None = None
    template: str | None = None


# --- Graph ---


class NodeData(BaseModel):
    """Editor payload of a node: display label and kind-specific config"""

    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)


class Node(BaseModel):
    """Graph node. ``type`` stays a free string so unknown kinds survive parsing."""

    id: str
    type: str
    data: NodeData = Field(default_factory=NodeData)

    @property
    def kind(self) -> NodeKind | None:
        return parse_node_kind(self.type)

    @property
    def label(self) -> str:
        return self.data.label or self.id

    def config_as(self, config_cls: type[BaseModel]) -> Any:
        """Validate this node's raw config against a kind-specific model."""
        return config_cls.model_validate(self.data.config or {})


class EdgeData(BaseModel):
    """Optional edge payload"""

    branch: Branch | None = None


class Edge(_CamelModel):
    """Directed edge: ``target`` depends on ``source``"""

    id: str | None = None
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    data: EdgeData | None = None


class NodeResult(_CamelModel):
    """Terminal outcome recorded for one node in one run"""

    status: NodeStatus
    output: Any = None  # str or structured (JSON-compatible) value
    error: str | None = None
    started_at: datetime
    completed_at: datetime
    tokens_used: int | None = None

    def to_json(self) -> dict[str, Any]:
        """Serialize with editor-facing camelCase keys, dropping unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class WorkflowGraph(BaseModel):
    """A set of nodes and the edges between them"""

    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)

    def node_map(self) -> dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def structure_errors(self) -> list[str]:
        """Problems that make the graph impossible to schedule."""
        errors = []
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen.add(node.id)
        for edge in self.edges:
            if edge.source not in seen:
                errors.append(f"Edge {edge.source} -> {edge.target}: source '{edge.source}' not found")
            if edge.target not in seen:
                errors.append(f"Edge {edge.source} -> {edge.target}: target '{edge.target}' not found")
        return errors

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    def find_cycle(self) -> list[str] | None:
        """Return the node ids of one dependency cycle, or None for a DAG."""
        try:
            cycle = nx.find_cycle(self.to_networkx())
        except nx.NetworkXNoCycle:
            return None
        return [edge[0] for edge in cycle]

    def trigger_node(self) -> Node | None:
        return next((n for n in self.nodes if n.kind == NodeKind.TRIGGER), None)

    def output_node_id(self) -> str | None:
        """The first output-kind node, treated as the run's final result."""
        node = next((n for n in self.nodes if n.kind == NodeKind.OUTPUT), None)
        return node.id if node else None

    def requires_input(self) -> bool:
        """Manual triggers need input unless explicitly marked optional."""
        trigger = self.trigger_node()
        config = trigger.config_as(TriggerConfig) if trigger else TriggerConfig()
        trigger_type = config.trigger_type or "manual"
        return trigger_type == "manual" and config.input_required is not False
