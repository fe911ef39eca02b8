"""Model abstractions and backends."""

from graphrunner.llm.provider import (
    GeneratedImage,
    ImageModel,
    LanguageModel,
    ModelResponse,
    ModelWithArgs,
    ToolDefinition,
)

__all__ = [
    "GeneratedImage",
    "ImageModel",
    "LanguageModel",
    "ModelResponse",
    "ModelWithArgs",
    "ToolDefinition",
]
