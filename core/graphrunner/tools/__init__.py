"""
Node tools: the catalog of supported tools and the registry that
configures them per node.

- ``collectUserInput`` and ``resolveOutput`` are handled by the node executor
- ``writeFile`` (alias ``createFile``) and ``readFile`` run inside the model step
- ``fetchUrl``, ``extractUrlText`` and ``generateImage`` run as separate tool calls
"""

from graphrunner.tools.catalog import (
    COLLECT_USER_INPUT,
    RESOLVE_OUTPUT,
    SUPPORTED_TOOLS,
    ToolError,
    ToolKind,
    ToolSpec,
    get_tool_spec,
)
from graphrunner.tools.files import FileStore
from graphrunner.tools.registry import (
    ConfiguredTool,
    ToolContext,
    build_tool_definition,
    execute_tool_call,
    format_tool_name,
    get_node_tools,
    prepare_tool_input,
    resolve_output_definition,
)

__all__ = [
    "COLLECT_USER_INPUT",
    "RESOLVE_OUTPUT",
    "SUPPORTED_TOOLS",
    "ToolError",
    "ToolKind",
    "ToolSpec",
    "get_tool_spec",
    "FileStore",
    "ConfiguredTool",
    "ToolContext",
    "build_tool_definition",
    "execute_tool_call",
    "format_tool_name",
    "get_node_tools",
    "prepare_tool_input",
    "resolve_output_definition",
]
