"""
Tool catalog - the tools a node may be configured with.

Each entry describes the parameters it accepts as JSON-Schema properties
("settings"). A node's tool config can fix a setting's value (the model
never sees it) or change its default. Some settings depend on another
setting's resolved value, e.g. the sizes offered by ``generateImage``
depend on the image model.
"""

import copy
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from graphrunner.graph.model import NodeToolConfig

COLLECT_USER_INPUT = "collectUserInput"
RESOLVE_OUTPUT = "resolveOutput"


class ToolError(Exception):
    """A tool is unknown, misconfigured, or failed to produce a value."""


class ToolKind(StrEnum):
    COLLECT_USER_INPUT = "collectUserInput"
    GENERATE_IMAGE = "generateImage"
    WRITE_FILE = "writeFile"
    READ_FILE = "readFile"
    FETCH_URL = "fetchUrl"
    EXTRACT_URL_TEXT = "extractUrlText"


# Older graphs name writeFile this way
TOOL_ALIASES = {"createFile": ToolKind.WRITE_FILE}


@dataclass(frozen=True)
class ToolSpec:
    """
    A catalog entry.

    Attributes:
        id: Tool type as used in node configs
        description: Shown to the model unless the node config overrides it
        settings: JSON-Schema property per parameter
        required: Parameters the model must provide
        dependent_settings: setting -> value -> extra settings offered for that value
        execute_in_node_step: Run inside the model step instead of a separate tool call
    """

    id: str
    description: str
    settings: dict[str, dict[str, Any]] = field(default_factory=dict)
    required: tuple[str, ...] = ()
    dependent_settings: dict[str, dict[str, dict[str, dict[str, Any]]]] = field(default_factory=dict)
    execute_in_node_step: bool = False


DEFAULT_IMAGE_MODEL = "dall-e-3"

IMAGE_MODEL_SETTINGS: dict[str, dict[str, dict[str, Any]]] = {
    "dall-e-3": {
        "size": {
            "type": "string",
            "enum": ["1024x1024", "1792x1024", "1024x1792"],
            "description": "The size of the generated image",
            "default": "1024x1024",
        },
        "style": {
            "type": "string",
            "enum": ["vivid", "natural"],
            "description": (
                "The style of the image: vivid (hyper-real and dramatic) or natural (more natural, less hyper-real)"
            ),
            "default": "vivid",
        },
        "quality": {
            "type": "string",
            "enum": ["standard", "hd"],
            "description": "The quality of the image",
            "default": "standard",
        },
    },
    "dall-e-2": {
        "size": {
            "type": "string",
            "enum": ["256x256", "512x512", "1024x1024"],
            "description": "The size of the generated image",
            "default": "512x512",
        },
    },
}

SUPPORTED_TOOLS: dict[str, ToolSpec] = {
    spec.id: spec
    for spec in [
        ToolSpec(
            id=ToolKind.COLLECT_USER_INPUT,
            description="Prompt the user for an input",
            settings={
                "name": {"type": "string", "description": "The internal name of the input"},
                "prompt": {"type": "string", "description": "The prompt to ask the user for the input"},
                "default": {"type": "string", "description": "The default value for the input"},
            },
            required=("name", "prompt"),
        ),
        ToolSpec(
            id=ToolKind.GENERATE_IMAGE,
            description="Generate an image using AI based on a text prompt",
            settings={
                "model": {
                    "type": "string",
                    "enum": list(IMAGE_MODEL_SETTINGS),
                    "description": "The model to use for image generation",
                    "default": DEFAULT_IMAGE_MODEL,
                },
                "prompt": {"type": "string", "description": "A detailed description of the image to generate"},
                "filename": {
                    "type": "string",
                    "description": "The user-facing name of the image file",
                    "default": "generated-image.png",
                },
            },
            required=("prompt",),
            dependent_settings={"model": IMAGE_MODEL_SETTINGS},
        ),
        ToolSpec(
            id=ToolKind.WRITE_FILE,
            description="Create a file",
            settings={
                "filename": {"type": "string", "description": "The user-facing name of the file"},
                "mediaType": {
                    "type": "string",
                    "description": "The media type of the file",
                    "default": "text/plain",
                },
                "content": {"type": "string", "description": "The content of the file"},
            },
            required=("filename", "content"),
            execute_in_node_step=True,
        ),
        ToolSpec(
            id=ToolKind.READ_FILE,
            description="Read a file as text.",
            settings={"fileId": {"type": "string", "description": "The id of the file to read"}},
            required=("fileId",),
            execute_in_node_step=True,
        ),
        ToolSpec(
            id=ToolKind.FETCH_URL,
            description="Fetch the content of a URL",
            settings={
                "url": {"type": "string", "description": "The URL to fetch"},
                "format": {
                    "type": "string",
                    "enum": ["text", "json"],
                    "description": "How to read the response body",
                    "default": "text",
                },
            },
            required=("url",),
        ),
        ToolSpec(
            id=ToolKind.EXTRACT_URL_TEXT,
            description="Extract text from a URL",
            settings={
                "url": {"type": "string", "description": "The URL to extract text from"},
                "include_images": {
                    "type": "boolean",
                    "description": "Include a list of images extracted from the URLs in the response",
                    "default": True,
                },
                "include_favicon": {
                    "type": "boolean",
                    "description": "Whether to include the favicon URL for each result",
                    "default": True,
                },
                "format": {
                    "type": "string",
                    "enum": ["markdown", "text"],
                    "description": "The format of the extracted text",
                    "default": "markdown",
                },
            },
            required=("url",),
        ),
    ]
}


def get_tool_spec(tool_type: str) -> ToolSpec | None:
    return SUPPORTED_TOOLS.get(TOOL_ALIASES.get(tool_type, tool_type))


def _settings_of(config: NodeToolConfig | str | None) -> dict[str, Any]:
    if isinstance(config, NodeToolConfig):
        return config.settings
    return {}


def build_settings_schema(spec: ToolSpec, config: NodeToolConfig | str | None) -> dict[str, Any]:
    """
    The settings of a tool as a JSON-Schema object, with dependent
    settings expanded for the resolved value (configured value, else
    configured default, else schema default) of the setting they hang on.
    """
    configured = _settings_of(config)
    properties = copy.deepcopy(spec.settings)
    required = list(spec.required)

    for prop, by_value in spec.dependent_settings.items():
        setting = configured.get(prop)
        resolved = None
        if setting is not None:
            resolved = setting.value if setting.value is not None else setting.default
        if resolved is None:
            resolved = spec.settings.get(prop, {}).get("default")
        properties.update(copy.deepcopy(by_value.get(resolved, {})))

    return {"type": "object", "properties": properties, "required": required}
