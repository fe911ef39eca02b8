"""
Model Step Activities - the activity contract backed by a language model.

One model step:
1. Resolve the model (and generation args) for the node
2. Offer the node's tools with ``tool_choice="required"``
3. Execute the node-step tools (``writeFile``, ``readFile``) right away
4. Return the assistant message, plus a ``tool`` message holding the
   results of the calls already executed

Every other tool call is left to the node executor, which runs it through
``make_tool_call`` (or handles it itself for ``collectUserInput`` and
``resolveOutput``).
"""

import logging
from collections.abc import Callable
from typing import Any

import httpx

from graphrunner.graph.messages import Message, Role, TextPart, ToolCallPart, ToolResultPart
from graphrunner.graph.model import NodeType
from graphrunner.graph.run_state import FileRef
from graphrunner.llm.provider import ImageModel, LanguageModel, ModelWithArgs
from graphrunner.runtime.activities import (
    Activities,
    NodeStepInput,
    NodeStepResult,
    ToolCallInput,
    ToolCallResult,
)
from graphrunner.tools.catalog import COLLECT_USER_INPUT, ToolError
from graphrunner.tools.files import FileStore
from graphrunner.tools.registry import (
    ImageModelFactory,
    ToolContext,
    execute_tool_call,
    get_node_tools,
)

logger = logging.getLogger(__name__)

ModelFactory = Callable[[str, NodeStepInput], LanguageModel | ModelWithArgs]


class ModelStepActivities(Activities):
    """
    Activities over a language model and the tool registry.

    Args:
        model: A model, a model with generation args, or a factory called with
            the run's model kind (``"ai"`` if unset) and the step input.
            Defaults to a LiteLLM model chosen from the node's ``model``.
        image_model: An image model, or a factory called with the image model kind
        file_store: Where tools write run files
        http_client: Shared client for web tools (one per call when unset)

    Example:
        activities = ModelStepActivities(
            model=ModelWithArgs(LiteLLMModel("gpt-4o-mini"), {"temperature": 0.2}),
            image_model=LiteLLMImageModel("dall-e-3"),
        )
    """

    def __init__(
        self,
        model: LanguageModel | ModelWithArgs | ModelFactory | None = None,
        image_model: ImageModel | ImageModelFactory | None = None,
        file_store: FileStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.image_model = image_model
        self.file_store = file_store or FileStore()
        self.http_client = http_client

    def _resolve_model(self, input: NodeStepInput) -> tuple[LanguageModel, dict[str, Any]]:
        configured = self.model
        if configured is None:
            from graphrunner.llm.litellm import model_for_node

            configured = model_for_node(input.node)
        elif not isinstance(configured, (LanguageModel, ModelWithArgs)):
            configured = configured(input.model_kind or "ai", input)

        if isinstance(configured, ModelWithArgs):
            return configured.model, dict(configured.args)
        return configured, {}

    def _tool_context(self, input: NodeStepInput | ToolCallInput, created: list[FileRef]) -> ToolContext:
        return ToolContext(
            run_id=input.run_id,
            node=input.node,
            inputs=input.inputs,
            outgoing=getattr(input, "outgoing", []),
            files=input.files,
            prompt=getattr(input, "prompt", None),
            image_model_kind=input.image_model_kind,
            file_store=self.file_store,
            image_model=self.image_model,
            http_client=self.http_client,
            created=created,
        )

    async def take_first_step(self, input: NodeStepInput) -> NodeStepResult:
        return await self._take_step(input)

    async def take_followup_step(self, input: NodeStepInput) -> NodeStepResult:
        return await self._take_step(input)

    async def _take_step(self, input: NodeStepInput) -> NodeStepResult:
        created: list[FileRef] = []
        ctx = self._tool_context(input, created)
        model, args = self._resolve_model(input)
        extra_tools = [COLLECT_USER_INPUT] if input.node.type == NodeType.INPUT else None
        tools = get_node_tools(ctx, is_node_step=True, extra_tools=extra_tools)

        try:
            response = await model.generate(
                input.transcript,
                tools=[tool.definition for tool in tools.values()],
                tool_choice="required",
                **args,
            )
            # Malformed tool calls
            if response.error:
                raise ToolError(f"Error in model output: {response.error}")

            results: list[ToolResultPart] = []
            for call in response.tool_calls:
                tool = tools.get(call.tool_name)
                if tool is None:
                    raise ToolError(f'Model called unknown tool "{call.tool_name}"')
                if tool.execute is None:
                    continue
                output = await tool.execute(call.input)
                results.append(
                    ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=output)
                )
        except Exception as e:
            logger.error(f"Error in model step of node '{input.node.id}': {e}", extra={"node_id": input.node.id})
            raise

        content: list[TextPart | ToolCallPart] = []
        if response.content:
            content.append(TextPart(text=response.content))
        content.extend(response.tool_calls)

        messages = []
        if content:
            messages.append(Message(role=Role.ASSISTANT, content=content))
        if results:
            messages.append(Message.tool(results))

        logger.info(
            f"Node '{input.node.id}' step {input.step}: {response.finish_reason}, "
            f"{len(response.tool_calls)} call(s), {len(results)} executed",
            extra={"model": response.model},
        )
        return NodeStepResult(finish_reason=response.finish_reason, messages=messages, files=created)

    async def make_tool_call(self, input: ToolCallInput) -> ToolCallResult:
        created: list[FileRef] = []
        ctx = self._tool_context(input, created)
        call = input.tool_call
        value = await execute_tool_call(ctx, call)
        return ToolCallResult(
            tool_result=ToolResultPart(tool_call_id=call.tool_call_id, tool_name=call.tool_name, output=value),
            files=created,
        )
