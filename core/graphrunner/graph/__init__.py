"""Graph structures: nodes, edges, run state, transcripts and templating."""

from graphrunner.graph.input_broker import (
    InputKey,
    NeededInput,
    NeededInputBroker,
    ProvidedInput,
)
from graphrunner.graph.messages import (
    Message,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from graphrunner.graph.model import (
    Edge,
    Graph,
    Node,
    NodeModelConfig,
    NodeRouting,
    NodeToolConfig,
    NodeType,
    RouteDef,
    RoutingMode,
    ToolSetting,
)
from graphrunner.graph.run_state import (
    FileKind,
    FileRef,
    InvalidInputError,
    NodeStatus,
    RunState,
    init_run_state,
)
from graphrunner.graph.templating import TemplateError, evaluate_expression, evaluate_template

__all__ = [
    # Model
    "Edge",
    "Graph",
    "Node",
    "NodeModelConfig",
    "NodeRouting",
    "NodeToolConfig",
    "NodeType",
    "RouteDef",
    "RoutingMode",
    "ToolSetting",
    # Transcripts
    "Message",
    "Role",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    # Run state
    "FileKind",
    "FileRef",
    "InvalidInputError",
    "NodeStatus",
    "RunState",
    "init_run_state",
    # Human input
    "InputKey",
    "NeededInput",
    "NeededInputBroker",
    "ProvidedInput",
    # Templates
    "TemplateError",
    "evaluate_expression",
    "evaluate_template",
]
