"""
Graph Model - Immutable description of a graph run's nodes and edges.

A graph is a flat DAG:
1. Nodes are LLM-backed units of work (input, llm, router)
2. Edges connect a source node to a target node
3. Routing on a node decides which outgoing edges stay live

The model carries no behavior beyond traversal helpers. Acyclicity is
assumed, not checked.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NodeType(StrEnum):
    """Kind of node."""

    INPUT = "input"  # Collects input from a human
    LLM = "llm"
    ROUTER = "router"


class RoutingMode(StrEnum):
    """How a node forwards its output downstream."""

    BROADCAST = "broadcast"  # Every outgoing edge stays live
    LLM_SWITCH = "llm-switch"  # The model picks the live route(s)


class RouteDef(BaseModel):
    """A named route a switching node may select."""

    id: str
    description: str = ""
    targets: list[str] = Field(
        default_factory=list,
        description="Edge targets selected by this route. Empty means the target named like the route.",
    )

    model_config = ConfigDict(frozen=True)

    def selects(self, target: str) -> bool:
        if self.targets:
            return target in self.targets
        return target == self.id


class NodeRouting(BaseModel):
    """Routing configuration of a node."""

    mode: RoutingMode = RoutingMode.LLM_SWITCH
    routes: list[RouteDef] = Field(default_factory=list)
    allow_multiple: bool = Field(default=False, alias="allowMultiple")
    required: bool = True

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ToolSetting(BaseModel):
    """A fixed value and/or a default for one tool setting."""

    value: Any = None
    default: Any = None

    model_config = ConfigDict(frozen=True)


class NodeToolConfig(BaseModel):
    """A configured tool attached to a node."""

    type: str
    name: str | None = None
    description: str | None = None
    settings: dict[str, ToolSetting] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class NodeModelConfig(BaseModel):
    """Model name plus generation arguments for a node. Without a name the default model is used."""

    name: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class Node(BaseModel):
    """
    A unit of work in the graph.

    Example:
        Node(
            id="classify",
            type=NodeType.ROUTER,
            name="Classify",
            intent="Decide whether the number is even or odd",
            output_schema={"type": "object", "properties": {"n": {"type": "integer"}}},
            routing=NodeRouting(mode=RoutingMode.LLM_SWITCH),
        )
    """

    id: str
    type: NodeType = NodeType.LLM
    name: str = ""
    intent: str | None = None
    instructions: list[str] | None = Field(
        default=None,
        description="Templated prompt lines; the first one is the system message",
    )
    output_schema: dict[str, Any] | None = None
    tools: list[str | NodeToolConfig] = Field(default_factory=list)
    model: str | NodeModelConfig | None = None
    routing: NodeRouting | None = None

    model_config = ConfigDict(frozen=True, extra="allow")

    @property
    def model_name(self) -> str | None:
        if isinstance(self.model, NodeModelConfig):
            return self.model.name
        return self.model

    @property
    def model_args(self) -> dict[str, Any]:
        if isinstance(self.model, NodeModelConfig):
            return dict(self.model.args)
        return {}


class Edge(BaseModel):
    """A dependency: ``target`` runs after ``source`` resolved."""

    source: str = Field(alias="from")
    target: str = Field(alias="to")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Graph(BaseModel):
    """The immutable input to a run."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="allow")

    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming(self, node_id: str) -> list[Edge]:
        """Edges ending at a node, in declaration order."""
        return [e for e in self.edges if e.target == node_id]

    def outgoing(self, node_id: str) -> list[Edge]:
        """Edges leaving a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def predecessors(self, node_id: str) -> list[str]:
        return [e.source for e in self.incoming(node_id)]

    def successors(self, node_id: str) -> list[str]:
        return [e.target for e in self.outgoing(node_id)]

    def upstream(self, node_id: str) -> set[str]:
        """Transitive predecessors of a node (exclusive)."""
        found: set[str] = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            for source in self.predecessors(current):
                if source not in found:
                    found.add(source)
                    stack.append(source)
        return found

    def downstream(self, node_id: str) -> set[str]:
        """Transitive successors of a node, including the node itself."""
        found: set[str] = {node_id}
        stack = [node_id]
        while stack:
            current = stack.pop()
            for target in self.successors(current):
                if target not in found:
                    found.add(target)
                    stack.append(target)
        return found

    def validate(self) -> list[str]:
        """
        Check structural consistency.

        Returns:
            List of error messages (empty if the graph is usable)
        """
        errors = []
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        for edge in self.edges:
            if edge.source not in seen:
                errors.append(f"Edge source '{edge.source}' not found")
            if edge.target not in seen:
                errors.append(f"Edge target '{edge.target}' not found")

        return errors
