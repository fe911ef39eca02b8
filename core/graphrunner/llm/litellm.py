"""
LiteLLM-backed models.

LiteLLM gives one OpenAI-style interface over many providers, so model
names like ``gpt-4o-mini``, ``anthropic/claude-sonnet-4-20250514`` or
``ollama/llama3`` all work. Transcripts and tool definitions are mapped to
the OpenAI chat format here and responses are mapped back.
"""

import base64
import json
import logging
import time
from typing import Any

import httpx
import litellm

from graphrunner.config import DEFAULT_MAX_TOKENS, DEFAULT_MODEL, DEFAULT_TEMPERATURE
from graphrunner.graph.messages import (
    Message,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from graphrunner.graph.model import Node
from graphrunner.llm.provider import (
    GeneratedImage,
    ImageModel,
    LanguageModel,
    ModelResponse,
    ModelWithArgs,
    ToolDefinition,
)
from graphrunner.tools.catalog import DEFAULT_IMAGE_MODEL

logger = logging.getLogger(__name__)

DEFAULT_ARGS = {"temperature": DEFAULT_TEMPERATURE, "max_tokens": DEFAULT_MAX_TOKENS}

_FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "length": "length",
    "content_filter": "content-filter",
}


def _json(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, default=str)


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Map a transcript to OpenAI chat messages (one message per tool result)."""
    result: list[dict[str, Any]] = []
    for message in messages:
        parts = message.parts()
        if message.role == Role.SYSTEM:
            result.append({"role": "system", "content": "\n".join(p.text for p in parts if isinstance(p, TextPart))})
        elif message.role == Role.USER:
            result.append(
                {
                    "role": "user",
                    "content": [{"type": "text", "text": p.text} for p in parts if isinstance(p, TextPart)],
                }
            )
        elif message.role == Role.ASSISTANT:
            text = "".join(p.text for p in parts if isinstance(p, TextPart))
            entry: dict[str, Any] = {"role": "assistant", "content": text or None}
            calls = [p for p in parts if isinstance(p, ToolCallPart)]
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": call.tool_call_id,
                        "type": "function",
                        "function": {"name": call.tool_name, "arguments": json.dumps(call.input)},
                    }
                    for call in calls
                ]
            result.append(entry)
        else:
            for part in parts:
                if isinstance(part, ToolResultPart):
                    result.append(
                        {
                            "role": "tool",
                            "tool_call_id": part.tool_call_id,
                            "content": _json(part.output),
                        }
                    )
    return result


def to_openai_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def map_finish_reason(reason: str | None, has_tool_calls: bool) -> str:
    # Forced tool use reports "stop" on some providers
    if has_tool_calls and reason in (None, "stop", "tool_calls", "function_call"):
        return "tool-calls"
    if reason is None:
        return "unknown"
    return _FINISH_REASONS.get(reason, "other")


class LiteLLMModel(LanguageModel):
    """
    Language model served through ``litellm.acompletion``.

    Example:
        model = LiteLLMModel("gpt-4o-mini", temperature=0.2)
        response = await model.generate(messages, tools=tools, tool_choice="required")
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        api_base: str | None = None,
        **default_args: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.default_args = default_args

    async def generate(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        tool_choice: str | None = None,
        **args: Any,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(messages),
            **self.default_args,
            **args,
        }
        if tools:
            kwargs["tools"] = to_openai_tools(tools)
            if tool_choice:
                kwargs["tool_choice"] = tool_choice
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        start = time.monotonic()
        response = await litellm.acompletion(**kwargs)
        latency_ms = round((time.monotonic() - start) * 1000)

        choice = response.choices[0]
        message = choice.message
        tool_calls: list[ToolCallPart] = []
        errors: list[str] = []
        for call in getattr(message, "tool_calls", None) or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError as e:
                errors.append(f"Invalid arguments for tool '{call.function.name}': {e}")
                continue
            tool_calls.append(
                ToolCallPart(tool_call_id=call.id, tool_name=call.function.name, input=arguments)
            )

        usage = getattr(response, "usage", None)
        logger.debug(
            f"Model {self.model} answered with {len(tool_calls)} tool call(s)",
            extra={"model": self.model, "latency_ms": latency_ms},
        )
        return ModelResponse(
            content=message.content or "",
            model=getattr(response, "model", None) or self.model,
            tool_calls=tool_calls,
            finish_reason=map_finish_reason(choice.finish_reason, bool(tool_calls)),
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            error="; ".join(errors) or None,
            raw_response=response,
        )


class LiteLLMImageModel(ImageModel):
    """Image model served through ``litellm.aimage_generation``."""

    def __init__(self, model: str = DEFAULT_IMAGE_MODEL, api_key: str | None = None, timeout: float = 120.0):
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    async def generate(
        self,
        prompt: str,
        model: str | None = None,
        size: str | None = None,
        **options: Any,
    ) -> GeneratedImage:
        model_name = model or self.model
        kwargs: dict[str, Any] = {
            "model": model_name,
            "prompt": prompt,
            "n": 1,
            "response_format": "b64_json",
            "timeout": self.timeout,
            **options,
        }
        if size:
            kwargs["size"] = size
        if self.api_key:
            kwargs["api_key"] = self.api_key

        response = await litellm.aimage_generation(**kwargs)
        image = response.data[0]
        encoded = getattr(image, "b64_json", None)
        if encoded:
            data = base64.b64decode(encoded)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                download = await client.get(image.url)
                download.raise_for_status()
                data = download.content

        return GeneratedImage(
            data=data,
            model=model_name,
            revised_prompt=getattr(image, "revised_prompt", None),
        )


def model_for_node(
    node: Node,
    default_model: str = DEFAULT_MODEL,
    default_args: dict[str, Any] | None = None,
    api_key: str | None = None,
    api_base: str | None = None,
) -> ModelWithArgs:
    """The node's model (or the default one) with default args overridden by the node's."""
    args = dict(DEFAULT_ARGS if default_args is None else default_args)
    args.update(node.model_args)
    return ModelWithArgs(
        model=LiteLLMModel(node.model_name or default_model, api_key=api_key, api_base=api_base),
        args=args,
    )
