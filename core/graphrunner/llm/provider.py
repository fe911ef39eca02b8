"""Model abstractions for pluggable language and image backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from graphrunner.graph.messages import Message, ToolCallPart


@dataclass
class ToolDefinition:
    """A tool offered to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """
    Response from a model call.

    ``finish_reason`` uses the run's vocabulary (``stop``, ``tool-calls``,
    ``length``, ...). ``error`` is set when the model produced a tool call
    that could not be decoded.
    """

    content: str
    model: str
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    finish_reason: str = "unknown"
    input_tokens: int = 0
    output_tokens: int = 0
    error: str | None = None
    raw_response: Any = None


@dataclass
class GeneratedImage:
    """Image bytes returned by an image model."""

    data: bytes
    model: str
    media_type: str = "image/png"
    revised_prompt: str | None = None
    warnings: list[str] = field(default_factory=list)


class LanguageModel(ABC):
    """
    Abstract language model - plug in any chat backend.

    Implementations should handle:
    - Request/response formatting of transcripts and tools
    - Mapping the backend's finish reason
    - Authentication
    """

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
        **args: Any,
    ) -> ModelResponse:
        """
        Generate the next assistant turn.

        Args:
            messages: Transcript so far
            tools: Tools the model may call
            tool_choice: ``auto``, ``required`` or ``none``
            **args: Generation arguments (temperature, max_tokens, ...)

        Returns:
            ModelResponse with text, tool calls and metadata
        """


class ImageModel(ABC):
    """Abstract text-to-image model."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        model: str | None = None,
        size: str | None = None,
        **options: Any,
    ) -> GeneratedImage:
        """Generate one image for a prompt. ``model`` overrides the default model name."""


@dataclass
class ModelWithArgs:
    """A model together with the generation arguments to call it with."""

    model: LanguageModel
    args: dict[str, Any] = field(default_factory=dict)
