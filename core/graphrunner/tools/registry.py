"""
Tool Registry - turns a node's tool configs into callable tools.

Per node the registry produces a name -> ConfiguredTool mapping:
1. Every configured tool (plus any extra tools), named after its config
2. ``resolveOutput``, always present, shaped by the node's output schema
   and routing

A tool only carries an executor where it may run: inside a model step
only the tools marked ``execute_in_node_step`` do; ``collectUserInput``
and ``resolveOutput`` never do, the node executor handles them.
"""

import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from graphrunner.graph.messages import ToolCallPart
from graphrunner.graph.model import Edge, Node, NodeToolConfig, RoutingMode
from graphrunner.graph.run_state import FileRef
from graphrunner.graph.templating import evaluate_template
from graphrunner.llm.provider import ImageModel, ToolDefinition
from graphrunner.tools.catalog import (
    RESOLVE_OUTPUT,
    ToolError,
    ToolKind,
    ToolSpec,
    build_settings_schema,
    get_tool_spec,
)
from graphrunner.tools.fetch import DEFAULT_TIMEOUT, fetch_url
from graphrunner.tools.files import FileStore
from graphrunner.tools.images import generate_and_save_image
from graphrunner.tools.web import extract_url_text

logger = logging.getLogger(__name__)

ImageModelFactory = Callable[[str], ImageModel]

_NON_WORD = re.compile(r"\W")


@dataclass
class ToolContext:
    """
    What a tool can see and use while it runs.

    ``created`` collects the FileRefs of files written during the call so
    the activity can report them.
    """

    run_id: str
    node: Node
    inputs: dict[str, Any] = field(default_factory=dict)
    outgoing: list[Edge] = field(default_factory=list)
    files: dict[str, FileRef] = field(default_factory=dict)
    prompt: Any = None
    image_model_kind: str | None = None
    file_store: FileStore = field(default_factory=FileStore)
    image_model: ImageModel | ImageModelFactory | None = None
    http_client: httpx.AsyncClient | None = None
    created: list[FileRef] = field(default_factory=list)

    def template_context(self) -> dict[str, Any]:
        """Variables visible to templated setting values."""
        return {
            "run_id": self.run_id,
            "node": self.node.model_dump(mode="json", by_alias=True, exclude_none=True),
            "inputs": self.inputs,
            "outgoing": [e.model_dump(mode="json", by_alias=True) for e in self.outgoing],
            "files": {fid: ref.model_dump(mode="json") for fid, ref in self.files.items()},
            "prompt": self.prompt or None,
        }

    def resolve_image_model(self) -> ImageModel | None:
        if self.image_model is None or isinstance(self.image_model, ImageModel):
            return self.image_model
        return self.image_model(self.image_model_kind or "ai")


ToolExecutor = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class ConfiguredTool:
    """A tool as offered to the model for one node."""

    name: str
    definition: ToolDefinition
    spec: ToolSpec | None = None
    config: NodeToolConfig | None = None
    execute: ToolExecutor | None = None


def format_tool_name(config: NodeToolConfig | str, differentiate: bool = False) -> str:
    """
    The name a configured tool is offered under.

    A configured ``name`` is camel-cased ("web search" -> "webSearch").
    When differentiating, the tool type is suffixed with the configured
    setting values, each abbreviated to its initials if it has several words.
    """
    if isinstance(config, str):
        return config
    name = config.type
    if config.name:
        pieces = [p for p in _NON_WORD.split(config.name) if p]
        name = "".join(p if i == 0 else p[:1].upper() + p[1:] for i, p in enumerate(pieces))
    elif differentiate and config.settings:
        values = [str(s.value) for s in config.settings.values() if s.value is not None]
        abbreviated = []
        for value in values:
            words = _NON_WORD.split(value)
            abbreviated.append(words[0] if len(words) == 1 else "".join(w[:1] for w in words))
        name += "_" + "_".join(abbreviated)
    return name


def prepare_tool_input(
    input: dict[str, Any],
    config: NodeToolConfig | None,
    context: dict[str, Any],
    schema: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    The arguments a tool executes with.

    Defaults (schema, then configured) fill in missing arguments; fixed
    setting values override the model's arguments, string values being
    evaluated as templates against ``context``.
    """
    settings = config.settings if config else {}
    merged: dict[str, Any] = {}
    for key, prop in (schema or {}).get("properties", {}).items():
        if "default" in prop:
            merged[key] = prop["default"]
    for key, setting in settings.items():
        if setting.default is not None:
            merged[key] = setting.default
    merged.update(input)

    for key, setting in settings.items():
        if isinstance(setting.value, str):
            merged[key] = evaluate_template(setting.value, context)
        elif setting.value is not None:
            merged[key] = setting.value
    return merged


def build_tool_definition(name: str, spec: ToolSpec, config: NodeToolConfig | str | None) -> ToolDefinition:
    """
    The model-facing definition of a configured tool.

    Settings with a fixed value and settings other settings depend on are
    hidden from the model; a configured default replaces the schema's.
    """
    schema = build_settings_schema(spec, config)
    settings = config.settings if isinstance(config, NodeToolConfig) else {}

    properties: dict[str, Any] = {}
    required: list[str] = []
    for key, prop in schema["properties"].items():
        setting = settings.get(key)
        if setting is not None and setting.value is not None:
            continue
        if key in spec.dependent_settings:
            continue
        prop = dict(prop)
        if setting is not None and setting.default is not None:
            prop["default"] = setting.default
        properties[key] = prop
        if key in schema["required"] and "default" not in prop:
            required.append(key)

    description = spec.description
    if isinstance(config, NodeToolConfig) and config.description is not None:
        description = config.description
    return ToolDefinition(
        name=name,
        description=description,
        parameters={"type": "object", "properties": properties, "required": required},
    )


def resolve_output_definition(node: Node, outgoing: list[Edge]) -> ToolDefinition:
    """
    The ``resolveOutput`` tool of a node.

    ``data`` follows the node's output schema. A switching node also picks
    its route(s): declared route ids, or else the outgoing edge targets.
    """
    properties: dict[str, Any] = {
        "message": {
            "type": "string",
            "description": "Human readable message summarizing the work done by the node",
        },
        "data": dict(node.output_schema) if node.output_schema else {},
    }
    required = ["message"]
    if node.output_schema:
        required.append("data")

    routing = node.routing
    if routing is not None and routing.mode == RoutingMode.LLM_SWITCH:
        if routing.routes:
            options = [r.id for r in routing.routes]
            described = "; ".join(f"{r.id}: {r.description}" for r in routing.routes if r.description)
        else:
            options = list(dict.fromkeys(e.target for e in outgoing))
            described = ""
        if options:
            choice: dict[str, Any] = {"type": "string", "enum": options}
            if described:
                choice["description"] = described
            key = "route"
            if routing.allow_multiple:
                key = "routes"
                choice = {"type": "array", "items": choice}
            properties[key] = choice
            if routing.required:
                required.append(key)

    return ToolDefinition(
        name=RESOLVE_OUTPUT,
        description="Resolve the final output once the work is done",
        parameters={"type": "object", "properties": properties, "required": required},
    )


@asynccontextmanager
async def _http_client(ctx: ToolContext) -> AsyncIterator[httpx.AsyncClient]:
    if ctx.http_client is not None:
        yield ctx.http_client
        return
    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
        yield client


async def _write_file(ctx: ToolContext, params: dict[str, Any]) -> Any:
    ref = await ctx.file_store.write_text(
        ctx.run_id,
        ctx.node.id,
        str(params.get("content", "")),
        filename=str(params.get("filename") or "file.txt"),
        media_type=str(params.get("mediaType") or "text/plain"),
    )
    ctx.created.append(ref)
    return ref.model_dump(mode="json")


async def _read_file(ctx: ToolContext, params: dict[str, Any]) -> Any:
    file_id = params.get("fileId")
    ref = ctx.files.get(file_id) if file_id else None
    if ref is None:
        raise ToolError(f"File not found: {file_id}")
    return await ctx.file_store.read_text(ref)


async def _fetch_url(ctx: ToolContext, params: dict[str, Any]) -> Any:
    async with _http_client(ctx) as client:
        return await fetch_url(client, str(params["url"]), format=params.get("format", "text"))


async def _extract_url_text(ctx: ToolContext, params: dict[str, Any]) -> Any:
    async with _http_client(ctx) as client:
        return await extract_url_text(
            client,
            str(params["url"]),
            include_images=bool(params.get("include_images", True)),
            include_favicon=bool(params.get("include_favicon", True)),
            format=params.get("format", "markdown"),
        )


async def _generate_image(ctx: ToolContext, params: dict[str, Any]) -> Any:
    image_model = ctx.resolve_image_model()
    if image_model is None:
        raise ToolError(f"Could not resolve image model for node {ctx.node.id}")
    options = {k: params[k] for k in ("style", "quality", "steps") if k in params}
    ref = await generate_and_save_image(
        image_model,
        ctx.file_store,
        ctx.run_id,
        ctx.node.id,
        str(params["prompt"]),
        filename=str(params.get("filename") or "generated-image.png"),
        model=params.get("model"),
        size=params.get("size"),
        **options,
    )
    ctx.created.append(ref)
    return ref.model_dump(mode="json")


_EXECUTORS: dict[str, Callable[[ToolContext, dict[str, Any]], Awaitable[Any]]] = {
    ToolKind.WRITE_FILE: _write_file,
    ToolKind.READ_FILE: _read_file,
    ToolKind.FETCH_URL: _fetch_url,
    ToolKind.EXTRACT_URL_TEXT: _extract_url_text,
    ToolKind.GENERATE_IMAGE: _generate_image,
}


def _configure_tool(config: NodeToolConfig | str, ctx: ToolContext, is_node_step: bool) -> ConfiguredTool:
    tool_config = NodeToolConfig(type=config) if isinstance(config, str) else config
    spec = get_tool_spec(tool_config.type)
    if spec is None:
        label = f" ({tool_config.name})" if tool_config.name else ""
        raise ToolError(f'Tool "{tool_config.type}"{label} not supported')

    name = format_tool_name(config)
    definition = build_tool_definition(name, spec, tool_config)

    execute = None
    executor = _EXECUTORS.get(spec.id)
    if executor is not None and (spec.execute_in_node_step or not is_node_step):
        schema = build_settings_schema(spec, tool_config)

        async def execute(input: dict[str, Any]) -> Any:
            params = prepare_tool_input(input, tool_config, ctx.template_context(), schema)
            return await executor(ctx, params)

    return ConfiguredTool(name=name, definition=definition, spec=spec, config=tool_config, execute=execute)


def get_node_tools(
    ctx: ToolContext,
    is_node_step: bool,
    extra_tools: list[str] | None = None,
) -> dict[str, ConfiguredTool]:
    """
    The tools of ``ctx.node`` by name, ``resolveOutput`` last.

    Raises:
        ToolError: For an unsupported tool type, or when two configs end up
            with the same name even after differentiation
    """
    configured_types = {t if isinstance(t, str) else t.type for t in ctx.node.tools}
    configs = list(ctx.node.tools) + [t for t in (extra_tools or []) if t not in configured_types]

    tools: dict[str, ConfiguredTool] = {}
    for config in configs:
        tool = _configure_tool(config, ctx, is_node_step)
        name = tool.name
        if name in tools:
            name = format_tool_name(config, differentiate=True)
        if name in tools:
            raise ToolError(f'Tool "{name}" already defined')
        if name != tool.name:
            tool = replace(tool, name=name, definition=replace(tool.definition, name=name))
        tools[name] = tool

    tools[RESOLVE_OUTPUT] = ConfiguredTool(
        name=RESOLVE_OUTPUT, definition=resolve_output_definition(ctx.node, ctx.outgoing)
    )
    return tools


async def execute_tool_call(ctx: ToolContext, call: ToolCallPart) -> Any:
    """
    Execute a tool call outside a model step.

    Raises:
        ToolError: If the tool is unknown, cannot execute, or yields no value
    """
    tool = get_node_tools(ctx, is_node_step=False).get(call.tool_name)
    value = None
    if tool is not None and tool.execute is not None:
        value = await tool.execute(call.input)
    if value is None:
        raise ToolError(f'Unimplemented tool call "{call.tool_name}"')
    return value

